import time

import pytest
from fastapi import HTTPException
from redis.exceptions import ConnectionError as RedisConnectionError

from main import app
from routers import rate_limit
from routers.auth_scope import AuthContext


class _FakeState:
    disable_rate_limits = False


class _FakeApp:
    state = _FakeState()


class _FakeRequest:
    app = _FakeApp()


@pytest.mark.asyncio
async def test_local_window_counts_per_key():
    assert await rate_limit._hit_local_window("ledger:rate:test:a", 60) == 1
    assert await rate_limit._hit_local_window("ledger:rate:test:a", 60) == 2
    assert await rate_limit._hit_local_window("ledger:rate:test:b", 60) == 1


@pytest.mark.asyncio
async def test_limiter_falls_back_to_local_window_when_redis_is_down(monkeypatch):
    async def _redis_down(key, window_seconds):
        raise RedisConnectionError("connection refused")

    monkeypatch.setattr(rate_limit, "_hit_redis_window", _redis_down)
    dependency = rate_limit.rate_limit("credits_purchase", limit=2, window_seconds=60)
    auth = AuthContext(account_id="limited-account")

    await dependency(_FakeRequest(), auth)
    await dependency(_FakeRequest(), auth)
    with pytest.raises(HTTPException) as exc_info:
        await dependency(_FakeRequest(), auth)

    assert exc_info.value.status_code == 429
    assert exc_info.value.detail["code"] == "RATE_LIMIT_EXCEEDED"


@pytest.mark.asyncio
async def test_limiter_respects_disable_flag(monkeypatch):
    async def _unexpected(key, window_seconds):
        raise AssertionError("limiter should be bypassed")

    monkeypatch.setattr(rate_limit, "_hit_redis_window", _unexpected)
    dependency = rate_limit.rate_limit("credits_purchase", limit=1, window_seconds=60)

    class _Request:
        app = app

    await dependency(_Request(), AuthContext(account_id="any-account"))


@pytest.mark.asyncio
async def test_local_window_drops_expired_entries():
    rate_limit._local_windows["ledger:rate:test:gone"] = (5, time.monotonic() - 1)
    rate_limit._local_windows["ledger:rate:test:live"] = (1, time.monotonic() + 60)

    assert await rate_limit._hit_local_window("ledger:rate:test:new", 60) == 1

    assert "ledger:rate:test:gone" not in rate_limit._local_windows
    assert rate_limit._local_windows["ledger:rate:test:live"][0] == 1
    assert rate_limit._local_windows["ledger:rate:test:new"][0] == 1
