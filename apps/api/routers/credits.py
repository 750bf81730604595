"""Credits router: balance summaries, purchase ingestion and welcome bonus."""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.credits import (
    credits_for_product,
    ensure_credit_balance,
    get_credit_details,
    get_summary,
    record_purchase,
    revoke_purchase,
)
from services.ledger_store import utcnow
from services.usage import get_usage
from services.welcome_bonus import check_eligibility, grant_welcome_bonus

router = APIRouter()
logger = logging.getLogger(__name__)


class CreditPurchaseRequest(BaseModel):
    transaction_id: str = Field(min_length=1, max_length=255)
    original_transaction_id: Optional[str] = Field(default=None, max_length=255)
    product_id: str = Field(min_length=1, max_length=100)
    platform: Literal["apple", "google"]
    purchase_date: datetime
    receipt: Optional[str] = Field(default=None, max_length=100000)


class PurchaseRevokeRequest(BaseModel):
    transaction_id: str = Field(min_length=1, max_length=255)
    reason: str = Field(default="store_refund", max_length=255)


class WelcomeBonusRequest(BaseModel):
    device_id: str = Field(default="", max_length=255)
    provider: str = Field(min_length=1, max_length=50)
    provider_user_id: str = Field(min_length=1, max_length=255)


@router.get("/quota")
async def credits_quota(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await ensure_credit_balance(db, auth.account_id, auth.tier)
    summary = await get_summary(db, auth.account_id)
    return {"account_tier": auth.tier.value, **summary}


@router.get("/history")
async def credits_history(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await ensure_credit_balance(db, auth.account_id, auth.tier)
    details = await get_credit_details(db, auth.account_id)
    return {"account_tier": auth.tier.value, **details}


@router.get("/usage")
async def credits_usage(
    day: Optional[date] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    usage_day = day or utcnow().date()
    counter = await get_usage(db, auth.account_id, usage_day)
    return {
        "date": usage_day.isoformat(),
        "text_count": int(counter.text_count) if counter else 0,
        "image_count": int(counter.image_count) if counter else 0,
    }


@router.post("/purchase")
async def purchase_credits(
    request: CreditPurchaseRequest,
    _rate_limit: None = Depends(rate_limit("credits_purchase", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    amount = credits_for_product(request.product_id)
    recorded = await record_purchase(
        db,
        auth.account_id,
        idempotency_key=request.transaction_id,
        product_id=request.product_id,
        platform=request.platform,
        amount=amount,
        occurred_at=request.purchase_date,
        receipt_data=request.receipt,
        original_transaction_id=request.original_transaction_id,
        tier=auth.tier,
    )
    return {
        "purchase_id": recorded.entry_id,
        "credits_added": amount if recorded.newly_recorded else 0,
        "duplicate": not recorded.newly_recorded,
        "total_extra_credits": recorded.extra_credits_total,
        "quota": await get_summary(db, auth.account_id),
    }


@router.post("/purchase/revoke")
async def revoke_credit_purchase(
    request: PurchaseRevokeRequest,
    _rate_limit: None = Depends(rate_limit("credits_revoke", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    revoked = await revoke_purchase(
        db,
        request.transaction_id,
        reason=request.reason,
        account_id=auth.account_id,
    )
    return {
        "purchase_id": revoked.entry_id,
        "revoked": revoked.newly_revoked,
        "total_extra_credits": revoked.extra_credits_total,
    }


@router.post("/welcome-bonus")
async def claim_welcome_bonus(
    request: WelcomeBonusRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    if not settings.WELCOME_BONUS_ENABLED:
        raise HTTPException(status_code=503, detail="Welcome bonus is disabled.")

    eligible = await check_eligibility(db, request.device_id, request.provider, request.provider_user_id)
    if not eligible:
        return {"granted": False, "amount": 0}

    grant = await grant_welcome_bonus(
        db,
        auth.account_id,
        device_id=request.device_id,
        provider=request.provider,
        provider_user_id=request.provider_user_id,
        tier=auth.tier,
    )
    if grant.granted:
        logger.info("Welcome bonus claimed by account %s", auth.account_id)
    return {
        "granted": grant.granted,
        "amount": int(settings.WELCOME_BONUS_CREDITS) if grant.granted else 0,
        "total_extra_credits": grant.extra_credits_total,
    }
