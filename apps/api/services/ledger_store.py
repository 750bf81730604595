"""Balance store and ledger data access shared by the credit services.

Every mutation of a ``CreditBalance`` row happens while the row is locked by
``lock_balance_for_update`` inside a ``transaction`` block. Postgres takes a
``SELECT ... FOR UPDATE`` row lock; SQLite engines built by
``database.build_engine`` serialize writers at ``BEGIN IMMEDIATE`` instead.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import Table, func, insert
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import monthly_allocation_for, settings
from models.credit_balance import CreditBalance
from models.credit_ledger import (
    EVENT_PURCHASE,
    EVENT_SUBSCRIPTION_GRANT,
    EXTRA_CREDIT_EVENT_TYPES,
    CreditLedgerEntry,
)
from services.errors import LedgerError, StoreFailureError

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite hands timestamps back without tzinfo; they were written as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@asynccontextmanager
async def transaction(db: AsyncSession) -> AsyncIterator[AsyncSession]:
    """Commit on success; roll back everything on any error or cancellation."""
    try:
        yield db
        await db.commit()
    except LedgerError:
        await db.rollback()
        raise
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.warning("Credit store transaction rolled back: %s", exc)
        raise StoreFailureError("Credit store transaction failed.") from exc
    except BaseException:
        await db.rollback()
        raise


async def insert_if_absent(
    db: AsyncSession,
    table: Table,
    values: Dict[str, Any],
    conflict_columns: Sequence[str],
) -> None:
    """INSERT that silently does nothing when ``conflict_columns`` already exist.

    Callers must re-read the row afterwards: the persisted row is authoritative
    whether this call or a concurrent one inserted it.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(table).values(**values).on_conflict_do_nothing(index_elements=list(conflict_columns))
        await db.execute(stmt)
        return
    if dialect == "sqlite":
        stmt = sqlite.insert(table).values(**values).on_conflict_do_nothing(index_elements=list(conflict_columns))
        await db.execute(stmt)
        return

    try:
        async with db.begin_nested():
            await db.execute(insert(table).values(**values))
    except IntegrityError:
        logger.debug("insert_if_absent: %s row already present for %s", table.name, conflict_columns)


# --- Ledger -----------------------------------------------------------------


async def get_entry_by_key(db: AsyncSession, idempotency_key: str) -> Optional[CreditLedgerEntry]:
    result = await db.execute(
        select(CreditLedgerEntry)
        .where(CreditLedgerEntry.idempotency_key == idempotency_key)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def insert_entry_if_absent(
    db: AsyncSession,
    *,
    account_id: str,
    event_type: str,
    idempotency_key: str,
    amount: int,
    occurred_at: Optional[datetime] = None,
    verified_at: Optional[datetime] = None,
    product_id: Optional[str] = None,
    platform: Optional[str] = None,
    original_transaction_id: Optional[str] = None,
    receipt_data: Optional[str] = None,
    device_id: Optional[str] = None,
    provider: Optional[str] = None,
    provider_user_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Tuple[CreditLedgerEntry, bool]:
    """Insert a ledger entry keyed by ``idempotency_key`` unless one exists.

    Returns the persisted entry and whether it is the row this call wrote.
    """
    now = utcnow()
    entry_id = str(uuid.uuid4())
    await insert_if_absent(
        db,
        CreditLedgerEntry.__table__,
        {
            "id": entry_id,
            "account_id": account_id,
            "event_type": event_type,
            "idempotency_key": idempotency_key,
            "original_transaction_id": original_transaction_id,
            "product_id": product_id,
            "platform": platform,
            "amount": int(amount),
            "consumed": 0,
            "occurred_at": occurred_at or now,
            "verified_at": verified_at or now,
            "receipt_data": receipt_data,
            "device_id": device_id,
            "provider": provider,
            "provider_user_id": provider_user_id,
            "metadata": metadata,
            "created_at": now,
        },
        ["idempotency_key"],
    )
    entry = await get_entry_by_key(db, idempotency_key)
    if entry is None:
        raise StoreFailureError(f"Ledger entry {idempotency_key!r} missing after insert.")
    return entry, entry.id == entry_id


async def sum_extra_remaining(db: AsyncSession, account_id: str) -> int:
    """Remaining never-expiring credits derived from non-revoked ledger entries."""
    result = await db.execute(
        select(func.coalesce(func.sum(CreditLedgerEntry.amount - CreditLedgerEntry.consumed), 0)).where(
            CreditLedgerEntry.account_id == account_id,
            CreditLedgerEntry.revoked_at.is_(None),
            CreditLedgerEntry.event_type.in_(EXTRA_CREDIT_EVENT_TYPES),
        )
    )
    return max(int(result.scalar() or 0), 0)


async def consume_extra_credits(db: AsyncSession, account_id: str, amount: int) -> int:
    """Mark ``amount`` credits consumed on the oldest entries with credits left."""
    outstanding = max(int(amount), 0)
    if outstanding == 0:
        return 0

    result = await db.execute(
        select(CreditLedgerEntry)
        .where(
            CreditLedgerEntry.account_id == account_id,
            CreditLedgerEntry.revoked_at.is_(None),
            CreditLedgerEntry.event_type.in_(EXTRA_CREDIT_EVENT_TYPES),
            CreditLedgerEntry.consumed < CreditLedgerEntry.amount,
        )
        .order_by(CreditLedgerEntry.occurred_at.asc(), CreditLedgerEntry.created_at.asc())
        .execution_options(populate_existing=True)
    )
    for entry in result.scalars().all():
        take = min(entry.remaining, outstanding)
        entry.consumed = int(entry.consumed or 0) + take
        outstanding -= take
        if outstanding == 0:
            break

    if outstanding:
        logger.warning(
            "Ledger drift for account %s: %s extra credits spent without a backing entry",
            account_id,
            outstanding,
        )
    await db.flush()
    return int(amount) - outstanding


async def list_purchases(db: AsyncSession, account_id: str) -> List[CreditLedgerEntry]:
    result = await db.execute(
        select(CreditLedgerEntry)
        .where(
            CreditLedgerEntry.account_id == account_id,
            CreditLedgerEntry.event_type == EVENT_PURCHASE,
            CreditLedgerEntry.revoked_at.is_(None),
        )
        .order_by(CreditLedgerEntry.occurred_at.asc())
    )
    return list(result.scalars().all())


# --- Balance store ----------------------------------------------------------


async def _find_balance(db: AsyncSession, account_id: str, *, for_update: bool) -> Optional[CreditBalance]:
    query = (
        select(CreditBalance)
        .where(CreditBalance.account_id == account_id)
        .execution_options(populate_existing=True)
    )
    if for_update:
        query = query.with_for_update()
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def _insert_default_balance(db: AsyncSession, account_id: str, tier) -> None:
    now = utcnow()
    allocation = monthly_allocation_for(tier)
    # Credits granted before the first quota check are already on the ledger.
    extra = await sum_extra_remaining(db, account_id)
    await insert_if_absent(
        db,
        CreditBalance.__table__,
        {
            "id": str(uuid.uuid4()),
            "account_id": account_id,
            "subscription_credits": allocation,
            "subscription_monthly_allocation": allocation,
            "subscription_resets_at": now + timedelta(days=int(settings.SUBSCRIPTION_PERIOD_DAYS)),
            "extra_credits_remaining": extra,
            "last_updated": now,
            "created_at": now,
        },
        ["account_id"],
    )


async def _get_or_create(db: AsyncSession, account_id: str, tier, *, for_update: bool) -> CreditBalance:
    balance = await _find_balance(db, account_id, for_update=for_update)
    if balance is not None:
        return balance

    await _insert_default_balance(db, account_id, tier)
    balance = await _find_balance(db, account_id, for_update=for_update)
    if balance is None:
        raise StoreFailureError(f"Failed to create or lock credit balance for account {account_id}.")
    logger.info("Created credit balance for account %s (tier=%s)", account_id, getattr(tier, "value", tier))
    return balance


async def get_balance(db: AsyncSession, account_id: str) -> Optional[CreditBalance]:
    return await _find_balance(db, account_id, for_update=False)


async def get_or_create_balance(db: AsyncSession, account_id: str, tier) -> CreditBalance:
    """Return the balance row, creating it with tier defaults when absent."""
    return await _get_or_create(db, account_id, tier, for_update=False)


async def lock_balance_for_update(db: AsyncSession, account_id: str, tier) -> CreditBalance:
    """Like ``get_or_create_balance`` but holds an exclusive lock until commit/rollback."""
    return await _get_or_create(db, account_id, tier, for_update=True)


async def reconcile_extra_credits(db: AsyncSession, balance: CreditBalance) -> int:
    """Rewrite the locked balance's extra pool from the ledger; returns the new total."""
    total = await sum_extra_remaining(db, balance.account_id)
    if total != int(balance.extra_credits_remaining or 0):
        logger.info(
            "Reconciled extra credits for account %s: %s -> %s",
            balance.account_id,
            balance.extra_credits_remaining,
            total,
        )
    balance.extra_credits_remaining = total
    balance.last_updated = utcnow()
    await db.flush()
    return total


async def renew_subscription_if_due(
    db: AsyncSession,
    balance: CreditBalance,
    tier,
    now: Optional[datetime] = None,
) -> bool:
    """Reset the locked balance's subscription bucket once its period has ended."""
    if balance.subscription_resets_at is None:
        return False
    current = now or utcnow()
    resets_at = as_utc(balance.subscription_resets_at)
    if current < resets_at:
        return False

    allocation = monthly_allocation_for(tier)
    await insert_entry_if_absent(
        db,
        account_id=balance.account_id,
        event_type=EVENT_SUBSCRIPTION_GRANT,
        idempotency_key=f"subscription-grant:{balance.account_id}:{resets_at.strftime('%Y%m%dT%H%M%SZ')}",
        amount=allocation,
        occurred_at=current,
        verified_at=current,
        metadata={
            "tier": getattr(tier, "value", tier),
            "previous_subscription_credits": int(balance.subscription_credits or 0),
        },
    )
    balance.subscription_credits = allocation
    balance.subscription_monthly_allocation = allocation
    balance.subscription_resets_at = current + timedelta(days=int(settings.SUBSCRIPTION_PERIOD_DAYS))
    balance.last_updated = current
    await db.flush()
    logger.info("Reset subscription credits for account %s to %s", balance.account_id, allocation)
    return True
