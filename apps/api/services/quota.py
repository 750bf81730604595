"""Quota arbiter: atomic debit and refund of weighted operation costs."""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from models.credit_balance import CreditBalance
from models.credit_ledger import EVENT_ADJUSTMENT
from services import usage
from services.errors import ConflictError, QuotaExceededError
from services.ledger_store import (
    as_utc,
    consume_extra_credits,
    insert_entry_if_absent,
    lock_balance_for_update,
    renew_subscription_if_due,
    transaction,
    utcnow,
)
from services.operations import OperationType, resolve_tier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaStatus:
    account_id: str
    operation: str
    cost: int
    subscription_credits: int
    subscription_monthly_allocation: int
    subscription_resets_at: Optional[datetime]
    extra_credits_remaining: int

    @property
    def total_credits(self) -> int:
        return self.subscription_credits + self.extra_credits_remaining

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "operation": self.operation,
            "cost": self.cost,
            "subscription_credits": self.subscription_credits,
            "subscription_monthly_allocation": self.subscription_monthly_allocation,
            "subscription_resets_at": self.subscription_resets_at.isoformat() if self.subscription_resets_at else None,
            "extra_credits_remaining": self.extra_credits_remaining,
            "total_credits": self.total_credits,
        }


def _status(balance: CreditBalance, operation: OperationType) -> QuotaStatus:
    return QuotaStatus(
        account_id=balance.account_id,
        operation=operation.value,
        cost=operation.cost,
        subscription_credits=int(balance.subscription_credits or 0),
        subscription_monthly_allocation=int(balance.subscription_monthly_allocation or 0),
        subscription_resets_at=as_utc(balance.subscription_resets_at) if balance.subscription_resets_at else None,
        extra_credits_remaining=int(balance.extra_credits_remaining or 0),
    )


async def debit(
    db: AsyncSession,
    account_id: str,
    tier,
    operation,
    *,
    now: Optional[datetime] = None,
) -> QuotaStatus:
    """Charge ``operation``'s cost, subscription credits first, then extra credits.

    Raises ``QuotaExceededError`` (after rollback) when the account cannot
    afford the operation.
    """
    operation = OperationType(operation)
    tier = resolve_tier(tier)
    cost = operation.cost
    current = now or utcnow()

    async with transaction(db):
        balance = await lock_balance_for_update(db, account_id, tier)
        await renew_subscription_if_due(db, balance, tier, now=current)

        subscription_credits = int(balance.subscription_credits or 0)
        extra_credits = int(balance.extra_credits_remaining or 0)
        if subscription_credits + extra_credits < cost:
            logger.info(
                "Quota exceeded for account %s: %s needs %s, has %s",
                account_id,
                operation.value,
                cost,
                subscription_credits + extra_credits,
            )
            raise QuotaExceededError(
                required=cost,
                subscription_credits=subscription_credits,
                extra_credits=extra_credits,
            )

        from_subscription = min(cost, subscription_credits)
        from_extra = cost - from_subscription
        balance.subscription_credits = subscription_credits - from_subscription
        balance.extra_credits_remaining = extra_credits - from_extra
        balance.last_updated = current
        if from_extra:
            await consume_extra_credits(db, account_id, from_extra)

        await usage.increment(db, account_id, current.date(), operation.operation_class, cost)
        status = _status(balance, operation)

    logger.info(
        "Debited %s credits for %s from account %s (subscription=%s extra=%s remaining=%s)",
        cost,
        operation.value,
        account_id,
        from_subscription,
        from_extra,
        status.total_credits,
    )
    return status


async def refund(
    db: AsyncSession,
    account_id: str,
    tier,
    operation,
    *,
    idempotency_key: Optional[str] = None,
    now: Optional[datetime] = None,
) -> QuotaStatus:
    """Return ``operation``'s cost to the extra pool after a failed operation.

    Refunds never restore subscription credits. A refund without a prior
    debit still succeeds; usage counters are floored at zero. When
    ``idempotency_key`` is given, a repeated refund with the same key is a no-op.
    """
    operation = OperationType(operation)
    tier = resolve_tier(tier)
    cost = operation.cost
    current = now or utcnow()
    key = idempotency_key or f"refund:{account_id}:{uuid.uuid4()}"

    async with transaction(db):
        balance = await lock_balance_for_update(db, account_id, tier)
        entry, created = await insert_entry_if_absent(
            db,
            account_id=account_id,
            event_type=EVENT_ADJUSTMENT,
            idempotency_key=key,
            amount=cost,
            occurred_at=current,
            verified_at=current,
            metadata={"reason": "operation_refund", "operation": operation.value},
        )
        if entry.account_id != account_id or entry.event_type != EVENT_ADJUSTMENT:
            raise ConflictError(
                f"Idempotency key {key} is already used by another ledger entry.",
                details={"idempotency_key": key},
            )
        if not created:
            logger.warning("Refund %s already applied to account %s; skipping", key, account_id)
            return _status(balance, operation)

        balance.extra_credits_remaining = int(balance.extra_credits_remaining or 0) + cost
        balance.last_updated = current
        await usage.decrement_floored(db, account_id, current.date(), operation.operation_class, cost)
        status = _status(balance, operation)

    logger.info(
        "Refunded %s credits for %s to account %s (extra=%s)",
        cost,
        operation.value,
        account_id,
        status.extra_credits_remaining,
    )
    return status


@asynccontextmanager
async def metered_operation(
    db: AsyncSession,
    account_id: str,
    tier,
    operation,
) -> AsyncIterator[QuotaStatus]:
    """Debit before a costed action and refund it if the action raises."""
    status = await debit(db, account_id, tier, operation)
    try:
        yield status
    except Exception:
        logger.warning("Operation %s failed for account %s; refunding", status.operation, account_id)
        if db.in_transaction():
            await db.rollback()
        await refund(db, account_id, tier, operation)
        raise
