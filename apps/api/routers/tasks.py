"""Task intake, read and background-solve router."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import async_sessionmaker

from database import get_session_maker
from routers.engine_deps import get_engine_opener
from routers.rate_limit import rate_limit
from services import task_store, work_queue
from services.intake import TaskInFlightError, submit_url
from services.job_queue import enqueue_task_solve_job
from services.live_stream import is_streaming

logger = logging.getLogger(__name__)

router = APIRouter()


class SubmitTaskRequest(BaseModel):
    url: str = Field(min_length=8, max_length=2000)


class BulkImportRequest(BaseModel):
    urls: List[str] = Field(default_factory=list)
    media_kind: Literal["movie", "series"] = "movie"


class BulkImportResponse(BaseModel):
    added: int
    duplicates: int
    skipped: int
    total: int
    media_kind: str
    ids: List[str] = Field(default_factory=list)


class SolveJobResponse(BaseModel):
    task_id: str
    job_id: str
    status: str = "queued"


@router.post("")
async def submit_task(
    request: SubmitTaskRequest,
    _rate_limit: None = Depends(rate_limit("task_submit", limit=60, window_seconds=60)),
    session_maker: async_sessionmaker = Depends(get_session_maker),
    open_engine=Depends(get_engine_opener),
) -> Dict[str, Any]:
    """Create a task for a page URL, or return/merge the existing one."""
    url = request.url.strip()
    if not url.lower().startswith(("http://", "https://")):
        raise HTTPException(status_code=400, detail="url must be an absolute http(s) URL")

    try:
        async with open_engine(session_maker, extracted_by="Browser/Live") as parts:
            result = await submit_url(session_maker, parts.discoverer, url)
    except TaskInFlightError as exc:
        raise HTTPException(
            status_code=409,
            detail={"message": "Task is still processing", "task_id": exc.task_id},
        ) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    payload = task_store.serialize_task(result.task)
    payload.update(
        {
            "created": result.created,
            "duplicate": result.duplicate,
            "appended": result.appended,
        }
    )
    return payload


@router.get("")
async def list_tasks(
    limit: int = Query(default=20, ge=1, le=100),
    session_maker: async_sessionmaker = Depends(get_session_maker),
) -> List[Dict[str, Any]]:
    tasks = await task_store.list_recent_tasks(session_maker, limit=limit)
    return [task_store.serialize_task(task) for task in tasks]


@router.post("/bulk", response_model=BulkImportResponse)
async def bulk_import(
    request: BulkImportRequest,
    _rate_limit: None = Depends(rate_limit("task_bulk", limit=20, window_seconds=3600)),
    session_maker: async_sessionmaker = Depends(get_session_maker),
):
    """Queue up to the configured maximum of page URLs for unattended processing."""
    if not request.urls:
        raise HTTPException(status_code=400, detail="urls must be a non-empty list")
    try:
        result = await work_queue.bulk_enqueue(session_maker, request.urls, media_kind=request.media_kind)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return BulkImportResponse(**result)


@router.get("/{task_id}")
async def get_task(
    task_id: str,
    session_maker: async_sessionmaker = Depends(get_session_maker),
) -> Dict[str, Any]:
    task = await task_store.get_task(session_maker, task_id)
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found")
    return task_store.serialize_task(task)


@router.delete("/{task_id}")
async def delete_task(
    task_id: str,
    session_maker: async_sessionmaker = Depends(get_session_maker),
) -> Dict[str, Any]:
    if is_streaming(task_id):
        raise HTTPException(status_code=409, detail="Task is being streamed; retry after the stream ends")
    deleted = await task_store.delete_task(session_maker, task_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Task not found")
    return {"deleted": True, "task_id": task_id}


@router.post("/{task_id}/solve", response_model=SolveJobResponse)
async def enqueue_task_solve(
    task_id: str,
    _rate_limit: None = Depends(rate_limit("task_solve", limit=120, window_seconds=3600)),
    session_maker: async_sessionmaker = Depends(get_session_maker),
):
    """Resolve a task's unfinished links in the background worker."""
    task = await task_store.get_task(session_maker, task_id)
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found")

    try:
        job = enqueue_task_solve_job(task.id)
    except Exception as exc:
        logger.warning("Solve queue unavailable for task %s: %s", task.id, exc)
        raise HTTPException(
            status_code=503,
            detail="Solve queue unavailable. Check Redis/worker availability and retry.",
        ) from exc
    return SolveJobResponse(task_id=task.id, job_id=job.id)
