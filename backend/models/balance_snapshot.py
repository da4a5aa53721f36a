"""BalanceSnapshot model - an immutable, timestamped balance reading."""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Index, Numeric, String
from sqlalchemy.orm import relationship

from database import Base
from models.utils import generate_uuid


class BalanceSnapshot(Base):
    """A balance captured for an account during a refresh.

    Append-only; the latest balance is the snapshot with the greatest
    ``captured_at``.
    """

    __tablename__ = "balance_snapshots"
    __table_args__ = (
        Index("ix_balance_snapshots_account_captured", "account_id", "captured_at"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    account_id = Column(String(36), ForeignKey("accounts.id"), nullable=False)
    current = Column(Numeric(18, 4), nullable=False, default=0)
    available = Column(Numeric(18, 4), nullable=True)
    limit = Column(Numeric(18, 4), nullable=True)
    captured_at = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))

    account = relationship("Account", back_populates="balance_snapshots")
