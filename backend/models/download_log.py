"""DownloadLog model - audit record of a transaction sync attempt."""

from datetime import datetime, timezone

from sqlalchemy import Column, Date, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from database import Base
from models.utils import generate_uuid


class DownloadLog(Base):
    """One row per transaction sync attempt for an account."""

    __tablename__ = "download_logs"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    account_id = Column(String(36), ForeignKey("accounts.id"), nullable=False, index=True)
    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)
    num_transactions = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False)  # "success" | "error"
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))

    account = relationship("Account", back_populates="download_logs")
