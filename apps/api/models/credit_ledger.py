"""CreditLedgerEntry model: append-only, idempotent credit grant log."""

import uuid

from sqlalchemy import Column, DateTime, Index, Integer, JSON, String, Text, text
from sqlalchemy.sql import func

from database import Base


EVENT_PURCHASE = "purchase"
EVENT_WELCOME_BONUS = "welcome_bonus"
EVENT_ADJUSTMENT = "adjustment"
EVENT_SUBSCRIPTION_GRANT = "subscription_grant"

EVENT_TYPES = (EVENT_PURCHASE, EVENT_WELCOME_BONUS, EVENT_ADJUSTMENT, EVENT_SUBSCRIPTION_GRANT)

# Entries whose remaining credits make up the never-expiring extra pool.
EXTRA_CREDIT_EVENT_TYPES = (EVENT_PURCHASE, EVENT_WELCOME_BONUS, EVENT_ADJUSTMENT)


class CreditLedgerEntry(Base):
    """Immutable credit grant; only ``consumed`` and revocation fields change."""

    __tablename__ = "credit_ledger"
    __table_args__ = (
        Index("ix_credit_ledger_account_occurred", "account_id", "occurred_at"),
        Index("ix_credit_ledger_bonus_identity", "provider", "provider_user_id"),
        Index(
            "uq_credit_ledger_welcome_bonus_device",
            "device_id",
            unique=True,
            postgresql_where=text("event_type = 'welcome_bonus'"),
            sqlite_where=text("event_type = 'welcome_bonus'"),
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, nullable=False, index=True)
    event_type = Column(String, nullable=False, index=True)
    idempotency_key = Column(String, nullable=False, unique=True)
    original_transaction_id = Column(String, nullable=True, index=True)
    product_id = Column(String, nullable=True)
    platform = Column(String, nullable=True)
    amount = Column(Integer, nullable=False)
    consumed = Column(Integer, nullable=False, default=0)
    occurred_at = Column(DateTime(timezone=True), nullable=False)
    verified_at = Column(DateTime(timezone=True), nullable=False)
    receipt_data = Column(Text, nullable=True)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    revoked_reason = Column(String, nullable=True)
    device_id = Column(String, nullable=True)
    provider = Column(String, nullable=True)
    provider_user_id = Column(String, nullable=True)
    entry_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    @property
    def remaining(self) -> int:
        return int(self.amount or 0) - int(self.consumed or 0)

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None
