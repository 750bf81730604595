"""UsageCounter model: per-account, per-day weighted usage."""

import uuid

from sqlalchemy import Column, Date, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.sql import func

from database import Base


class UsageCounter(Base):
    """Net weighted usage for one account on one calendar day (UTC)."""

    __tablename__ = "usage_counters"
    __table_args__ = (
        UniqueConstraint("account_id", "usage_date", name="uq_usage_counters_account_date"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, nullable=False, index=True)
    usage_date = Column(Date, nullable=False)
    text_count = Column(Integer, nullable=False, default=0)
    image_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now())
