"""UpstreamCallLog model - one row per provider API call for usage audits."""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String, Text

from database import Base
from models.utils import generate_uuid


class UpstreamCallLog(Base):
    """Records an upstream call (endpoint, outcome, latency).

    Plaid bills per call for several products, so these rows back the
    admin usage summary.
    """

    __tablename__ = "upstream_call_logs"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    timestamp = Column(DateTime, nullable=False, index=True, default=lambda: datetime.now(timezone.utc))
    provider = Column(String, nullable=False)
    endpoint = Column(String, nullable=False, index=True)
    response_status = Column(Integer, nullable=False)
    connection_id = Column(String(36), nullable=True)
    institution_id = Column(String, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
