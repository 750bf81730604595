"""Per-account rate limiting for credit endpoints.

Counts live in Redis (fixed window per account and scope). When Redis is
unreachable the limiter degrades to a per-process window so purchase
endpoints stay protected.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Tuple

from fastapi import Depends, HTTPException, Request
import redis.asyncio as redis
from redis.exceptions import RedisError

from config import settings
from routers.auth_scope import AuthContext, get_auth_context

logger = logging.getLogger(__name__)

_local_windows: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()


async def _hit_local_window(key: str, window_seconds: int) -> int:
    now = time.monotonic()
    async with _local_lock:
        for stale_key in [k for k, (_, end) in _local_windows.items() if now >= end]:
            del _local_windows[stale_key]
        count, window_end = _local_windows.get(key, (0, now + window_seconds))
        count += 1
        _local_windows[key] = (count, window_end)
        return count


async def _hit_redis_window(key: str, window_seconds: int) -> int:
    client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        count = await client.incr(key)
        if count == 1:
            await client.expire(key, window_seconds)
    finally:
        await client.aclose()
    return int(count)


def rate_limit(scope: str, limit: int, window_seconds: int) -> Callable:
    """Return a FastAPI dependency allowing ``limit`` calls per account per window."""

    async def _dependency(request: Request, auth: AuthContext = Depends(get_auth_context)) -> None:
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        key = f"ledger:rate:{scope}:{auth.account_id}"
        try:
            count = await _hit_redis_window(key, window_seconds)
        except (RedisError, OSError) as exc:
            logger.debug("Rate limiter falling back to local window for %s: %s", scope, exc)
            count = await _hit_local_window(key, window_seconds)

        if count > limit:
            raise HTTPException(
                status_code=429,
                detail={
                    "code": "RATE_LIMIT_EXCEEDED",
                    "message": f"Too many {scope} requests. Try again later.",
                },
            )

    return _dependency
