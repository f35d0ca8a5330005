"""Engine heartbeat writes and the liveness view built on them."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.future import select

from config import settings
from models.engine_heartbeat import ENGINE_HEARTBEAT_ID, EngineHeartbeat
from services.time_utils import as_utc, isoformat, utc_now
from services.work_queue import QUEUE_PENDING, QUEUE_PROCESSING, queue_counts

logger = logging.getLogger(__name__)

HEARTBEAT_RUNNING = "running"
HEARTBEAT_IDLE = "idle"
HEARTBEAT_ERROR = "error"


async def write_heartbeat(
    session_maker: async_sessionmaker,
    status: str,
    details: str = "",
    *,
    source: str = "cron",
) -> None:
    """Upsert the singleton heartbeat row. Failures are logged, never raised."""
    try:
        now = utc_now()
        async with session_maker() as db:
            result = await db.execute(select(EngineHeartbeat).where(EngineHeartbeat.id == ENGINE_HEARTBEAT_ID))
            heartbeat = result.scalar_one_or_none()
            if heartbeat is None:
                heartbeat = EngineHeartbeat(id=ENGINE_HEARTBEAT_ID)
                db.add(heartbeat)
            heartbeat.status = status
            heartbeat.details = details
            heartbeat.source = source
            heartbeat.last_run_at = now
            heartbeat.updated_at = now
            await db.commit()
    except Exception:
        logger.exception("Failed to write %s heartbeat", status)


def describe_age(last_run_at: Optional[datetime], now: Optional[datetime] = None) -> str:
    if last_run_at is None:
        return "unknown"
    seconds = max(int(((now or utc_now()) - as_utc(last_run_at)).total_seconds()), 0)
    if seconds < 60:
        return f"{seconds}s ago"
    if seconds < 3600:
        return f"{seconds // 60}m ago"
    if seconds < 86400:
        return f"{seconds // 3600}h ago"
    return f"{seconds // 86400}d ago"


async def engine_status(session_maker: async_sessionmaker, now: Optional[datetime] = None) -> Dict[str, Any]:
    """ONLINE iff the last run is within the freshness window."""
    now = now or utc_now()
    async with session_maker() as db:
        result = await db.execute(select(EngineHeartbeat).where(EngineHeartbeat.id == ENGINE_HEARTBEAT_ID))
        heartbeat = result.scalar_one_or_none()
    counts = await queue_counts(session_maker)
    pending = counts[QUEUE_PENDING]
    processing = counts[QUEUE_PROCESSING]

    if heartbeat is None:
        return {
            "status": "unknown",
            "signal": "OFFLINE",
            "last_run_at": None,
            "time_since": "unknown",
            "details": "No heartbeat recorded yet",
            "source": None,
            "pending_count": pending,
            "processing_count": processing,
            "background_active": False,
        }

    last_run_at = as_utc(heartbeat.last_run_at)
    freshness = timedelta(minutes=int(settings.HEARTBEAT_FRESHNESS_MINUTES))
    online = last_run_at is not None and now - last_run_at <= freshness
    return {
        "status": heartbeat.status,
        "signal": "ONLINE" if online else "OFFLINE",
        "last_run_at": isoformat(last_run_at),
        "time_since": describe_age(last_run_at, now),
        "details": heartbeat.details or "",
        "source": heartbeat.source,
        "pending_count": pending,
        "processing_count": processing,
        "background_active": bool(online and (pending or processing)),
    }
