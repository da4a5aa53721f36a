"""EmergencyFundAccount model - membership of an account in the emergency fund."""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, String, UniqueConstraint

from database import Base
from models.utils import generate_uuid


class EmergencyFundAccount(Base):
    """Marks an account as counted towards a user's emergency fund total."""

    __tablename__ = "emergency_fund_accounts"
    __table_args__ = (
        UniqueConstraint("user_id", "account_id", name="uix_emergency_fund_user_account"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String, nullable=False)
    account_id = Column(String(36), ForeignKey("accounts.id"), nullable=False, index=True)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
