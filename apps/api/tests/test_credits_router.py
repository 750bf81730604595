import json

import pytest
import pytest_asyncio
from fastapi import Request
from httpx import ASGITransport, AsyncClient

from config import settings
from database import get_db
from main import app, ledger_error_handler
from services.errors import QuotaExceededError
from services.operations import AccountTier, OperationType
from services.quota import debit
from services.session_token import create_session_token


TEST_ACCOUNT_ID = "router-account"
TEST_AUTH_HEADER = {"Authorization": f"Bearer {create_session_token(TEST_ACCOUNT_ID)['token']}"}
PRO_AUTH_HEADER = {"Authorization": f"Bearer {create_session_token('router-pro', 'pro')['token']}"}


@pytest_asyncio.fixture
async def credits_client(session_maker):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.pop(get_db, None)


def _purchase_payload(transaction_id="router-txn-1", product_id="com.talevonia.tale.credits.100"):
    return {
        "transaction_id": transaction_id,
        "original_transaction_id": transaction_id,
        "product_id": product_id,
        "platform": "apple",
        "purchase_date": "2026-03-01T10:00:00Z",
        "receipt": "signed-receipt",
    }


@pytest.mark.asyncio
async def test_quota_requires_session_token(credits_client):
    response = await credits_client.get("/credits/quota")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_quota_creates_balance_with_tier_defaults(credits_client):
    response = await credits_client.get("/credits/quota", headers=TEST_AUTH_HEADER)
    assert response.status_code == 200
    payload = response.json()
    assert payload["account_tier"] == "free"
    assert payload["subscription_credits"] == 15
    assert payload["subscription_monthly_allocation"] == 15
    assert payload["extra_credits_total"] == 0
    assert payload["total_credits"] == 15
    assert payload["resets_at"]

    pro = await credits_client.get("/credits/quota", headers=PRO_AUTH_HEADER)
    assert pro.json()["account_tier"] == "pro"
    assert pro.json()["subscription_credits"] == 5000


@pytest.mark.asyncio
async def test_purchase_is_idempotent_over_http(credits_client):
    first = await credits_client.post("/credits/purchase", json=_purchase_payload(), headers=TEST_AUTH_HEADER)
    assert first.status_code == 200
    first_body = first.json()
    assert first_body["credits_added"] == 100
    assert first_body["duplicate"] is False
    assert first_body["total_extra_credits"] == 100
    assert first_body["quota"]["total_credits"] == 115

    retry = await credits_client.post("/credits/purchase", json=_purchase_payload(), headers=TEST_AUTH_HEADER)
    assert retry.status_code == 200
    retry_body = retry.json()
    assert retry_body["purchase_id"] == first_body["purchase_id"]
    assert retry_body["credits_added"] == 0
    assert retry_body["duplicate"] is True
    assert retry_body["total_extra_credits"] == 100

    history = await credits_client.get("/credits/history", headers=TEST_AUTH_HEADER)
    assert history.status_code == 200
    purchases = history.json()["purchases"]
    assert len(purchases) == 1
    assert purchases[0]["transaction_id"] == "router-txn-1"
    assert purchases[0]["remaining"] == 100


@pytest.mark.asyncio
async def test_purchase_errors_use_error_envelope(credits_client):
    unknown = await credits_client.post(
        "/credits/purchase",
        json=_purchase_payload(product_id="com.example.bogus"),
        headers=TEST_AUTH_HEADER,
    )
    assert unknown.status_code == 422
    assert unknown.json() == {
        "success": False,
        "error": {"code": "BAD_REQUEST", "message": "Invalid product_id: com.example.bogus", "details": {}},
    }

    await credits_client.post("/credits/purchase", json=_purchase_payload("shared"), headers=PRO_AUTH_HEADER)
    conflict = await credits_client.post("/credits/purchase", json=_purchase_payload("shared"), headers=TEST_AUTH_HEADER)
    assert conflict.status_code == 409
    assert conflict.json()["error"]["code"] == "CONFLICT"


@pytest.mark.asyncio
async def test_revoke_purchase_over_http(credits_client):
    await credits_client.post("/credits/purchase", json=_purchase_payload(), headers=TEST_AUTH_HEADER)

    response = await credits_client.post(
        "/credits/purchase/revoke",
        json={"transaction_id": "router-txn-1", "reason": "store_refund"},
        headers=TEST_AUTH_HEADER,
    )
    assert response.status_code == 200
    assert response.json()["revoked"] is True
    assert response.json()["total_extra_credits"] == 0

    missing = await credits_client.post(
        "/credits/purchase/revoke",
        json={"transaction_id": "never-seen"},
        headers=TEST_AUTH_HEADER,
    )
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_quota_exceeded_maps_to_429(session_maker):
    async with session_maker() as session:
        await debit(session, TEST_ACCOUNT_ID, AccountTier.FREE, OperationType.IMAGE_GENERATE)
    async with session_maker() as session:
        with pytest.raises(QuotaExceededError) as exc_info:
            await debit(session, TEST_ACCOUNT_ID, AccountTier.FREE, OperationType.IMAGE_GENERATE)

    request = Request({"type": "http", "method": "POST", "path": "/generate", "headers": []})
    response = await ledger_error_handler(request, exc_info.value)

    assert response.status_code == 429
    error = json.loads(response.body)["error"]
    assert error["code"] == "QUOTA_EXCEEDED"
    assert error["details"]["required"] == 10
    assert error["details"]["available"] == 5
    assert error["details"]["shortfall"] == 5


@pytest.mark.asyncio
async def test_usage_endpoint_reports_today(credits_client, session_maker):
    async with session_maker() as session:
        await debit(session, TEST_ACCOUNT_ID, AccountTier.FREE, OperationType.EDIT_EXPAND)

    response = await credits_client.get("/credits/usage", headers=TEST_AUTH_HEADER)
    assert response.status_code == 200
    assert response.json()["text_count"] == 2
    assert response.json()["image_count"] == 0


@pytest.mark.asyncio
async def test_welcome_bonus_claim_over_http(credits_client):
    body = {"device_id": "router-device", "provider": "apple", "provider_user_id": "apple-77"}

    first = await credits_client.post("/credits/welcome-bonus", json=body, headers=TEST_AUTH_HEADER)
    assert first.status_code == 200
    assert first.json()["granted"] is True
    assert first.json()["amount"] == settings.WELCOME_BONUS_CREDITS

    second = await credits_client.post("/credits/welcome-bonus", json=body, headers=TEST_AUTH_HEADER)
    assert second.status_code == 200
    assert second.json() == {"granted": False, "amount": 0}

    quota = await credits_client.get("/credits/quota", headers=TEST_AUTH_HEADER)
    assert quota.json()["extra_credits_total"] == settings.WELCOME_BONUS_CREDITS


@pytest.mark.asyncio
async def test_welcome_bonus_disabled_returns_503(credits_client, monkeypatch):
    monkeypatch.setattr(settings, "WELCOME_BONUS_ENABLED", False)
    response = await credits_client.post(
        "/credits/welcome-bonus",
        json={"device_id": "d", "provider": "apple", "provider_user_id": "u"},
        headers=TEST_AUTH_HEADER,
    )
    assert response.status_code == 503
