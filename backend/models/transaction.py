"""Transaction model - a provider-reported transaction mirrored locally."""

from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, Date, DateTime, ForeignKey, Numeric, String, UniqueConstraint
from sqlalchemy.orm import relationship

from database import Base
from models.utils import generate_uuid


class Transaction(Base):
    """A transaction owned by an account.

    Keyed by ``(account_id, external_id)`` so re-processing the same
    provider transaction updates the existing row instead of duplicating it.
    """

    __tablename__ = "transactions"
    __table_args__ = (
        UniqueConstraint("account_id", "external_id", name="uix_account_transaction_external_id"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    account_id = Column(String(36), ForeignKey("accounts.id"), nullable=False, index=True)
    external_id = Column(String, nullable=False)
    date = Column(Date, nullable=False, index=True)
    name = Column(String, nullable=False)
    amount = Column(Numeric(18, 4), nullable=False)
    category = Column(String, nullable=True)
    merchant_name = Column(String, nullable=True)
    pending = Column(Boolean, default=False, nullable=False)
    iso_currency_code = Column(String, nullable=True)
    payment_channel = Column(String, nullable=True)
    personal_finance_category = Column(String, nullable=True)
    extra = Column(JSON, nullable=True)  # location, payment_meta, investment details
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    account = relationship("Account", back_populates="transactions")
