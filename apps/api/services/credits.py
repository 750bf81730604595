"""Purchase ingestion, revocation and credit summaries."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, NamedTuple, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.credit_balance import CreditBalance
from models.credit_ledger import EVENT_PURCHASE
from services.errors import BadRequestError, ConflictError, NotFoundError
from services.ledger_store import (
    as_utc,
    get_balance,
    get_entry_by_key,
    insert_entry_if_absent,
    list_purchases,
    lock_balance_for_update,
    reconcile_extra_credits,
    renew_subscription_if_due,
    transaction,
    utcnow,
)
from services.operations import AccountTier, resolve_tier

logger = logging.getLogger(__name__)


class RecordedPurchase(NamedTuple):
    entry_id: str
    extra_credits_total: int
    newly_recorded: bool


class RevokedPurchase(NamedTuple):
    entry_id: str
    account_id: str
    extra_credits_total: int
    newly_revoked: bool


def credits_for_product(product_id: str) -> int:
    """Resolve how many extra credits a store product grants."""
    amount = settings.CREDIT_PRODUCTS.get((product_id or "").strip())
    if not amount or int(amount) <= 0:
        raise BadRequestError(f"Invalid product_id: {product_id}")
    return int(amount)


async def record_purchase(
    db: AsyncSession,
    account_id: str,
    *,
    idempotency_key: str,
    product_id: str,
    platform: str,
    amount: int,
    occurred_at: Optional[datetime] = None,
    receipt_data: Optional[str] = None,
    original_transaction_id: Optional[str] = None,
    tier=AccountTier.FREE,
) -> RecordedPurchase:
    """Record a verified purchase exactly once per ``idempotency_key``.

    Retries, sequential or concurrent, return the original entry id and the
    reconciled extra-credit total without applying credits twice.
    """
    key = (idempotency_key or "").strip()
    if not key:
        raise BadRequestError("idempotency_key is required")
    grant = int(amount)
    if grant <= 0:
        raise BadRequestError("amount must be greater than 0")

    async with transaction(db):
        balance = await lock_balance_for_update(db, account_id, resolve_tier(tier))
        entry, created = await insert_entry_if_absent(
            db,
            account_id=account_id,
            event_type=EVENT_PURCHASE,
            idempotency_key=key,
            amount=grant,
            occurred_at=as_utc(occurred_at) if occurred_at else None,
            product_id=product_id,
            platform=platform,
            original_transaction_id=original_transaction_id,
            receipt_data=receipt_data,
        )
        if entry.account_id != account_id:
            raise ConflictError(
                f"Transaction {key} is already recorded for a different account.",
                details={"transaction_id": key, "previously_granted_at": as_utc(entry.verified_at).isoformat()},
            )
        if not created:
            logger.warning(
                "Duplicate purchase submission account=%s transaction=%s entry=%s",
                account_id,
                key,
                entry.id,
            )
            if entry.amount != grant or entry.event_type != EVENT_PURCHASE:
                logger.warning(
                    "Duplicate transaction %s carries a different payload (stored amount=%s type=%s, got amount=%s)",
                    key,
                    entry.amount,
                    entry.event_type,
                    grant,
                )
        total_extra = await reconcile_extra_credits(db, balance)
        result = RecordedPurchase(entry_id=entry.id, extra_credits_total=total_extra, newly_recorded=created)

    logger.info(
        "Recorded credit purchase: account=%s transaction=%s amount=%s total_extra=%s new=%s",
        account_id,
        key,
        grant,
        total_extra,
        created,
    )
    return result


async def revoke_purchase(
    db: AsyncSession,
    idempotency_key: str,
    *,
    reason: str,
    account_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> RevokedPurchase:
    """Soft-revoke a purchase entry and reconcile its owner's extra credits."""
    existing = await get_entry_by_key(db, idempotency_key)
    if (
        existing is None
        or existing.event_type != EVENT_PURCHASE
        or (account_id is not None and existing.account_id != account_id)
    ):
        raise NotFoundError(f"No purchase recorded for transaction {idempotency_key}.")
    owner = existing.account_id

    async with transaction(db):
        balance = await lock_balance_for_update(db, owner, AccountTier.FREE)
        entry = await get_entry_by_key(db, idempotency_key)
        newly_revoked = entry.revoked_at is None
        if newly_revoked:
            entry.revoked_at = now or utcnow()
            entry.revoked_reason = (reason or "").strip() or "revoked"
        total_extra = await reconcile_extra_credits(db, balance)
        result = RevokedPurchase(
            entry_id=entry.id,
            account_id=owner,
            extra_credits_total=total_extra,
            newly_revoked=newly_revoked,
        )

    if newly_revoked:
        logger.info("Revoked ledger entry %s for account %s: %s", result.entry_id, owner, reason)
    return result


async def ensure_credit_balance(db: AsyncSession, account_id: str, tier) -> CreditBalance:
    """Create the balance with tier defaults if needed and apply any due renewal."""
    tier = resolve_tier(tier)
    async with transaction(db):
        balance = await lock_balance_for_update(db, account_id, tier)
        await renew_subscription_if_due(db, balance, tier)
    return balance


def _summary(balance: CreditBalance) -> Dict[str, Any]:
    subscription_credits = int(balance.subscription_credits or 0)
    extra_credits = int(balance.extra_credits_remaining or 0)
    resets_at = as_utc(balance.subscription_resets_at) if balance.subscription_resets_at else None
    return {
        "subscription_credits": subscription_credits,
        "subscription_monthly_allocation": int(balance.subscription_monthly_allocation or 0),
        "resets_at": resets_at.isoformat() if resets_at else None,
        "extra_credits_total": extra_credits,
        "total_credits": subscription_credits + extra_credits,
    }


async def get_summary(db: AsyncSession, account_id: str) -> Dict[str, Any]:
    balance = await get_balance(db, account_id)
    if balance is None:
        raise NotFoundError(f"No credit balance for account {account_id}.")
    return _summary(balance)


async def get_credit_details(db: AsyncSession, account_id: str) -> Dict[str, Any]:
    summary = await get_summary(db, account_id)
    purchases = await list_purchases(db, account_id)
    summary["purchases"] = [
        {
            "transaction_id": entry.idempotency_key,
            "product_id": entry.product_id or "",
            "platform": entry.platform,
            "amount": entry.amount,
            "consumed": entry.consumed,
            "remaining": entry.remaining,
            "purchase_date": as_utc(entry.occurred_at).isoformat() if entry.occurred_at else None,
        }
        for entry in purchases
    ]
    return summary
