"""CreditBalance model: authoritative spendable credits per account."""

import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class CreditBalance(Base):
    """Cached per-account balance; mutated only under a row lock."""

    __tablename__ = "credit_balances"
    __table_args__ = (
        CheckConstraint("subscription_credits >= 0", name="ck_credit_balances_subscription_non_negative"),
        CheckConstraint("extra_credits_remaining >= 0", name="ck_credit_balances_extra_non_negative"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, nullable=False, unique=True, index=True)
    subscription_credits = Column(Integer, nullable=False, default=0)
    subscription_monthly_allocation = Column(Integer, nullable=False, default=0)
    subscription_resets_at = Column(DateTime(timezone=True), nullable=True)
    extra_credits_remaining = Column(Integer, nullable=False, default=0)
    last_updated = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    @property
    def total_credits(self) -> int:
        return int(self.subscription_credits or 0) + int(self.extra_credits_remaining or 0)
