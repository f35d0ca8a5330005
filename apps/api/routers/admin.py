"""Operator endpoints: forced recovery and cache maintenance."""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import async_sessionmaker

from database import get_session_maker
from routers.auth_scope import require_admin_key
from services.heartbeat import HEARTBEAT_IDLE, write_heartbeat
from services.link_cache import LinkCache
from services.live_stream import active_task_ids
from services.recovery import run_recovery

router = APIRouter(dependencies=[Depends(require_admin_key)])


class ResetStuckRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    force_all: bool = Field(default=False, alias="forceAll")
    threshold_minutes: Optional[float] = Field(default=None, alias="thresholdMinutes", ge=0)


class MarkBrokenRequest(BaseModel):
    url: str = Field(min_length=8, max_length=2000)


@router.post("/reset-stuck")
async def reset_stuck(
    request: Optional[ResetStuckRequest] = None,
    session_maker: async_sessionmaker = Depends(get_session_maker),
) -> Dict[str, Any]:
    """Run stuck-work recovery now; ``forceAll`` ignores the age threshold."""
    request = request or ResetStuckRequest()
    threshold = 0.0 if request.force_all else request.threshold_minutes
    report = await run_recovery(session_maker, threshold_minutes=threshold, skip_task_ids=active_task_ids())
    swept = await LinkCache(session_maker).sweep_expired()
    details = (
        f"Admin reset: {report.tasks_recovered + report.tasks_finalized} tasks, "
        f"{report.queue_requeued + report.queue_parked + report.queue_completed} queue items recovered"
    )
    await write_heartbeat(session_maker, HEARTBEAT_IDLE, details, source="admin")
    payload = report.to_dict()
    payload.update({"force_all": request.force_all, "cache_swept": swept})
    return payload


@router.get("/cache/stats")
async def cache_stats(session_maker: async_sessionmaker = Depends(get_session_maker)) -> Dict[str, int]:
    return await LinkCache(session_maker).stats()


@router.post("/cache/broken")
async def mark_cache_broken(
    request: MarkBrokenRequest,
    session_maker: async_sessionmaker = Depends(get_session_maker),
) -> Dict[str, Any]:
    marked = await LinkCache(session_maker).mark_broken(request.url.strip())
    if not marked:
        raise HTTPException(status_code=404, detail="No cache entry for this URL")
    return {"url": request.url.strip(), "status": "broken"}
