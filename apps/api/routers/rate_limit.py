"""Fixed-window request quotas shared through Redis, with an in-process fallback."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Tuple

from fastapi import HTTPException, Request
import redis.asyncio as redis

from config import settings

logger = logging.getLogger(__name__)

_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()


def _client_identifier(request: Request) -> str:
    # Deployed behind a proxy; the first hop is the real caller.
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


async def _consume_local_quota(key: str, limit: int, window_seconds: int) -> Tuple[bool, int]:
    now = time.time()
    async with _local_lock:
        count, reset_at = _local_counters.get(key, (0, now + window_seconds))
        if now >= reset_at:
            count = 0
            reset_at = now + window_seconds
        count += 1
        _local_counters[key] = (count, reset_at)
        return count <= limit, max(int(reset_at - now), 1)


async def _consume_shared_quota(key: str, limit: int, window_seconds: int) -> Tuple[bool, int]:
    window_index = int(time.time() // window_seconds)
    bucket = f"{key}:{window_index}"
    client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        async with client.pipeline(transaction=True) as pipe:
            pipe.incr(bucket)
            pipe.expire(bucket, window_seconds)
            current, _ = await pipe.execute()
    finally:
        await client.aclose()
    retry_after = max(int((window_index + 1) * window_seconds - time.time()), 1)
    return int(current) <= limit, retry_after


def rate_limit(prefix: str, limit: int, window_seconds: int) -> Callable[[Request], None]:
    """Dependency factory enforcing ``limit`` calls per client per window on one route group."""

    async def _dependency(request: Request):
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        key = f"resolver:rate:{prefix}:{_client_identifier(request)}"
        try:
            allowed, retry_after = await _consume_shared_quota(key, limit, window_seconds)
        except Exception as exc:
            logger.debug("Redis quota check unavailable (%s); counting in-process", exc)
            allowed, retry_after = await _consume_local_quota(key, limit, window_seconds)

        if not allowed:
            raise HTTPException(
                status_code=429,
                detail=f"Too many {prefix} requests; retry in {retry_after}s.",
                headers={"Retry-After": str(retry_after)},
            )

    return _dependency
