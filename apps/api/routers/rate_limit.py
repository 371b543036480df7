"""Fixed-window request quotas for session, credit and checkout endpoints."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Tuple

from fastapi import HTTPException, Request
import redis.asyncio as redis

from config import settings
from services.errors import TokenError
from services.session_token import verify_token

logger = logging.getLogger(__name__)

# key -> (hits, window reset time); used while Redis is unreachable
_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()


def quota_subject(request: Request) -> str:
    """Quotas follow the account when the bearer token verifies, else the caller's address."""
    scheme, _, token = (request.headers.get("authorization") or "").partition(" ")
    if scheme.lower() == "bearer" and token:
        try:
            return f"account:{verify_token(token).account_id}"
        except TokenError:
            pass
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return f"ip:{forwarded.split(',')[0].strip()}"
    if request.client and request.client.host:
        return f"ip:{request.client.host}"
    return "ip:unknown"


async def _hit_local_window(key: str, window_seconds: int) -> Tuple[int, int]:
    now = time.time()
    async with _local_lock:
        hits, reset_at = _local_counters.get(key, (0, now + window_seconds))
        if now >= reset_at:
            hits, reset_at = 0, now + window_seconds
        hits += 1
        _local_counters[key] = (hits, reset_at)
    return hits, max(int(reset_at - now), 1)


async def _hit_redis_window(key: str, window_seconds: int) -> Tuple[int, int]:
    client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        hits = await client.incr(key)
        if hits == 1:
            await client.expire(key, window_seconds)
        ttl = await client.ttl(key)
    finally:
        await client.aclose()
    return int(hits), int(ttl) if ttl and ttl > 0 else window_seconds


def rate_limit(prefix: str, limit: int, window_seconds: int) -> Callable[[], None]:
    """Dependency allowing ``limit`` calls per ``window_seconds`` for each account or address.

    Counters live in Redis so every API process shares them; without Redis
    each process counts on its own.
    """

    async def _dependency(request: Request):
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        subject = quota_subject(request)
        key = f"ledger:rate:{prefix}:{subject}"
        try:
            hits, retry_after = await _hit_redis_window(key, window_seconds)
        except redis.RedisError as exc:
            logger.debug("Rate limit for %s counted locally: %s", prefix, exc)
            hits, retry_after = await _hit_local_window(key, window_seconds)

        if hits > limit:
            logger.info("Rate limit %s exceeded by %s", prefix, subject)
            raise HTTPException(
                status_code=429,
                detail=f"Too many {prefix.replace('_', ' ')} requests. Retry in {retry_after}s.",
                headers={"Retry-After": str(retry_after)},
            )

    return _dependency
