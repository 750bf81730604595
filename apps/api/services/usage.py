"""Per-day usage counters, updated inside balance-mutating transactions."""

from __future__ import annotations

import uuid
from datetime import date
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.usage_counter import UsageCounter
from services.errors import StoreFailureError
from services.ledger_store import insert_if_absent, utcnow
from services.operations import OperationClass


_COUNTER_COLUMNS = {
    OperationClass.TEXT: "text_count",
    OperationClass.IMAGE: "image_count",
}


def _counter_column(operation_class) -> str:
    return _COUNTER_COLUMNS[OperationClass(operation_class)]


def _require_open_transaction(db: AsyncSession) -> None:
    if not db.in_transaction():
        raise RuntimeError("Usage counters may only change inside an open balance transaction.")


async def _find_counter(db: AsyncSession, account_id: str, day: date, *, for_update: bool) -> Optional[UsageCounter]:
    query = (
        select(UsageCounter)
        .where(UsageCounter.account_id == account_id, UsageCounter.usage_date == day)
        .execution_options(populate_existing=True)
    )
    if for_update:
        query = query.with_for_update()
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def _lock_counter(db: AsyncSession, account_id: str, day: date) -> UsageCounter:
    counter = await _find_counter(db, account_id, day, for_update=True)
    if counter is not None:
        return counter

    now = utcnow()
    await insert_if_absent(
        db,
        UsageCounter.__table__,
        {
            "id": str(uuid.uuid4()),
            "account_id": account_id,
            "usage_date": day,
            "text_count": 0,
            "image_count": 0,
            "created_at": now,
            "updated_at": now,
        },
        ["account_id", "usage_date"],
    )
    counter = await _find_counter(db, account_id, day, for_update=True)
    if counter is None:
        raise StoreFailureError(f"Failed to create or lock usage counter for account {account_id}.")
    return counter


async def increment(db: AsyncSession, account_id: str, day: date, operation_class, weight: int) -> UsageCounter:
    _require_open_transaction(db)
    column = _counter_column(operation_class)
    counter = await _lock_counter(db, account_id, day)
    setattr(counter, column, int(getattr(counter, column) or 0) + max(int(weight), 0))
    counter.updated_at = utcnow()
    await db.flush()
    return counter


async def decrement_floored(db: AsyncSession, account_id: str, day: date, operation_class, weight: int) -> UsageCounter:
    """Subtract ``weight`` but never below zero, even without a matching increment."""
    _require_open_transaction(db)
    column = _counter_column(operation_class)
    counter = await _lock_counter(db, account_id, day)
    setattr(counter, column, max(int(getattr(counter, column) or 0) - max(int(weight), 0), 0))
    counter.updated_at = utcnow()
    await db.flush()
    return counter


async def get_usage(db: AsyncSession, account_id: str, day: date) -> Optional[UsageCounter]:
    return await _find_counter(db, account_id, day, for_update=False)
