"""Welcome bonus policy: one bonus per provider identity and per device."""

from __future__ import annotations

import logging
from typing import NamedTuple, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_ledger import EVENT_WELCOME_BONUS, CreditLedgerEntry
from services.errors import BadRequestError
from services.ledger_store import (
    get_entry_by_key,
    insert_entry_if_absent,
    lock_balance_for_update,
    reconcile_extra_credits,
    transaction,
)
from services.operations import AccountTier, resolve_tier

logger = logging.getLogger(__name__)

WELCOME_BONUS_PRODUCT_ID = "com.talevonia.welcome.bonus"


class BonusGrant(NamedTuple):
    entry_id: Optional[str]
    granted: bool
    extra_credits_total: int


def welcome_bonus_key(provider: str, provider_user_id: str) -> str:
    return f"welcome-bonus:{provider.strip().lower()}:{provider_user_id.strip()}"


async def _count_bonuses(db: AsyncSession, *conditions) -> int:
    result = await db.execute(
        select(func.count(CreditLedgerEntry.id)).where(
            CreditLedgerEntry.event_type == EVENT_WELCOME_BONUS,
            *conditions,
        )
    )
    return int(result.scalar() or 0)


async def check_eligibility(db: AsyncSession, device_id: str, provider: str, provider_user_id: str) -> bool:
    """True only for a known device that has never produced a bonus, for an identity that never got one."""
    device = (device_id or "").strip()
    if not device:
        logger.info("Welcome bonus denied: device_id not provided")
        return False

    identity_bonuses = await _count_bonuses(
        db,
        CreditLedgerEntry.provider == provider.strip().lower(),
        CreditLedgerEntry.provider_user_id == provider_user_id.strip(),
    )
    if identity_bonuses:
        logger.info(
            "Welcome bonus denied: provider account %s/%s already received bonus",
            provider,
            provider_user_id,
        )
        return False

    if await _count_bonuses(db, CreditLedgerEntry.device_id == device):
        logger.info("Welcome bonus denied: device %s already produced a bonus", device)
        return False

    return True


async def grant_welcome_bonus(
    db: AsyncSession,
    account_id: str,
    *,
    device_id: str,
    provider: str,
    provider_user_id: str,
    amount: Optional[int] = None,
    tier=AccountTier.FREE,
) -> BonusGrant:
    """Grant the welcome bonus once; repeated calls are no-op successes."""
    device = (device_id or "").strip()
    if not device:
        raise BadRequestError("device_id is required for the welcome bonus")
    if not (provider or "").strip() or not (provider_user_id or "").strip():
        raise BadRequestError("provider and provider_user_id are required for the welcome bonus")
    bonus = int(settings.WELCOME_BONUS_CREDITS if amount is None else amount)
    if bonus <= 0:
        raise BadRequestError("amount must be greater than 0")

    key = welcome_bonus_key(provider, provider_user_id)
    async with transaction(db):
        balance = await lock_balance_for_update(db, account_id, resolve_tier(tier))

        existing = await get_entry_by_key(db, key)
        if existing is not None:
            logger.warning("Welcome bonus already granted for %s (entry %s)", key, existing.id)
            return BonusGrant(existing.id, False, int(balance.extra_credits_remaining or 0))

        if await _count_bonuses(db, CreditLedgerEntry.device_id == device):
            logger.info("Welcome bonus not granted to %s: device %s already used", account_id, device)
            return BonusGrant(None, False, int(balance.extra_credits_remaining or 0))

        try:
            async with db.begin_nested():
                entry, created = await insert_entry_if_absent(
                    db,
                    account_id=account_id,
                    event_type=EVENT_WELCOME_BONUS,
                    idempotency_key=key,
                    amount=bonus,
                    product_id=WELCOME_BONUS_PRODUCT_ID,
                    platform=provider.strip().lower(),
                    device_id=device,
                    provider=provider.strip().lower(),
                    provider_user_id=provider_user_id.strip(),
                    metadata={"reason": "new_user"},
                )
        except IntegrityError:
            # Another account claimed this device concurrently.
            logger.warning("Welcome bonus for %s lost device race on %s", account_id, device)
            return BonusGrant(None, False, int(balance.extra_credits_remaining or 0))

        total_extra = await reconcile_extra_credits(db, balance)

    if created:
        logger.info("Welcome bonus granted: account=%s amount=%s entry=%s", account_id, bonus, entry.id)
    return BonusGrant(entry.id, created, total_extra)
