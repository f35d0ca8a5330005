"""Live NDJSON solving channel."""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import async_sessionmaker

from database import get_session_maker
from routers.engine_deps import get_processor_opener
from routers.rate_limit import rate_limit
from services import task_store
from services.live_stream import stream_task_events

router = APIRouter()


class StreamSolveRequest(BaseModel):
    task_id: str
    link_ids: Optional[List[int]] = None


@router.post("/solve")
async def stream_solve(
    request: StreamSolveRequest,
    _rate_limit: None = Depends(rate_limit("stream_solve", limit=120, window_seconds=3600)),
    session_maker: async_sessionmaker = Depends(get_session_maker),
    open_processor=Depends(get_processor_opener),
):
    """Drive a task's unfinished links and stream one JSON event per line."""
    task = await task_store.get_task(session_maker, request.task_id)
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found")

    events = stream_task_events(
        session_maker,
        task.id,
        open_processor,
        link_ids=request.link_ids,
    )
    return StreamingResponse(
        events,
        media_type="application/x-ndjson",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
