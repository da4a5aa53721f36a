"""Account model - an externally-held account mirrored from an upstream provider."""

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Numeric, String, UniqueConstraint
from sqlalchemy.orm import relationship

from database import Base
from models.utils import generate_uuid


class Account(Base):
    """An account belonging to exactly one Connection.

    ``external_id`` is the provider's account id. It is unique within a
    connection but not across connections: re-linking the same login under
    a new connection yields a second row with the same identity, which the
    duplicate resolution service later merges.
    """

    __tablename__ = "accounts"
    __table_args__ = (
        UniqueConstraint("connection_id", "external_id", name="uix_connection_external_id"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    connection_id = Column(String(36), ForeignKey("connections.id"), nullable=False, index=True)
    external_id = Column(String, nullable=False)
    name = Column(String, nullable=False)
    type = Column(String, nullable=False)  # e.g. "depository", "credit", "loan", "investment"
    subtype = Column(String, nullable=True)  # e.g. "checking", "credit card", "mortgage"
    mask = Column(String, nullable=True)  # last digits of the account number
    hidden = Column(Boolean, default=False, nullable=False)
    archived = Column(Boolean, default=False, nullable=False)
    invert_transactions = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # Transaction sync tracking
    last_sync_time = Column(DateTime, nullable=True)
    sync_cursor = Column(String, nullable=True)

    # Liability summary (credit and loan accounts only)
    last_statement_balance = Column(Numeric(18, 4), nullable=True)
    minimum_payment_amount = Column(Numeric(18, 4), nullable=True)
    next_payment_due_date = Column(Date, nullable=True)
    last_payment_date = Column(Date, nullable=True)
    last_payment_amount = Column(Numeric(18, 4), nullable=True)
    next_monthly_payment = Column(Numeric(18, 4), nullable=True)
    origination_date = Column(Date, nullable=True)
    origination_principal_amount = Column(Numeric(18, 4), nullable=True)

    # Relationships
    connection = relationship("Connection", back_populates="accounts")
    balance_snapshots = relationship("BalanceSnapshot", back_populates="account")
    transactions = relationship("Transaction", back_populates="account")
    download_logs = relationship("DownloadLog", back_populates="account")
