"""Connection model - one upstream credential scoped to a single institution login."""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, String
from sqlalchemy.orm import relationship

from database import Base
from models.utils import generate_uuid

# Credential sentinel for hand-entered institutions that never sync upstream
MANUAL_ACCESS_TOKEN = "manual"

PROVIDER_PLAID = "plaid"
PROVIDER_COINBASE = "coinbase"

STATUS_ACTIVE = "active"
STATUS_DISCONNECTED = "disconnected"


class Connection(Base):
    """A linked institution login (a Plaid Item or a Coinbase OAuth grant).

    Rows are never deleted: revocation, provider-confirmed invalidation and
    merge-driven redundancy all flip ``status`` to ``disconnected`` so the
    audit trail survives.
    """

    __tablename__ = "connections"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    item_id = Column(String, unique=True, index=True, nullable=False)
    access_token = Column(String, nullable=False)
    institution_id = Column(String, index=True, nullable=True)
    institution_name = Column(String, nullable=True)
    provider = Column(String, nullable=False, default=PROVIDER_PLAID)
    status = Column(String, nullable=False, default=STATUS_ACTIVE)
    error_code = Column(String, nullable=True)  # last provider error, e.g. ITEM_LOGIN_REQUIRED
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    accounts = relationship("Account", back_populates="connection")

    @property
    def is_manual(self) -> bool:
        """True when the credential is the manual sentinel."""
        return self.access_token == MANUAL_ACCESS_TOKEN

    @property
    def is_active(self) -> bool:
        return self.status == STATUS_ACTIVE
