"""Task intake: create a task for a page URL or merge into an existing one."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from models.task import Task
from services import task_store
from services.discovery import DiscoveryError, LinkDiscoverer
from services.task_store import TASK_COMPLETED, TASK_PROCESSING

logger = logging.getLogger(__name__)


class TaskInFlightError(RuntimeError):
    """The URL already has a task being processed."""

    def __init__(self, task_id: str) -> None:
        super().__init__("Task is still processing")
        self.task_id = task_id


@dataclass
class IntakeResult:
    task: Task
    created: bool = False
    duplicate: bool = False
    appended: int = 0


async def submit_url(
    session_maker: async_sessionmaker,
    discoverer: LinkDiscoverer,
    url: str,
    *,
    extracted_by: str = "Browser/Live",
) -> IntakeResult:
    """Return the task for ``url``, discovering its links when needed.

    Completed tasks are returned untouched, in-flight ones raise
    ``TaskInFlightError``; pending and failed ones start a new resolution cycle.
    """
    cleaned = str(url or "").strip()
    if not cleaned:
        raise ValueError("URL is required")

    existing = await task_store.find_latest_task_for_url(session_maker, cleaned)
    if existing is not None and existing.status == TASK_COMPLETED:
        return IntakeResult(task=existing, duplicate=True)
    if existing is not None and existing.status == TASK_PROCESSING:
        raise TaskInFlightError(existing.id)

    try:
        discovery = await discoverer.discover(cleaned)
    except DiscoveryError as exc:
        logger.info("Discovery failed for %s: %s", cleaned, exc)
        if existing is not None:
            return IntakeResult(task=existing)
        task = await task_store.create_task(
            session_maker,
            url=cleaned,
            discovered=[],
            extracted_by=extracted_by,
            error_message=str(exc),
        )
        return IntakeResult(task=task, created=True)

    if existing is not None:
        merged, appended = await task_store.merge_discovered_links(
            session_maker,
            existing.id,
            discovery.links,
            metadata=discovery.metadata,
            preview=discovery.preview,
        )
        if merged is not None:
            return IntakeResult(task=merged, appended=appended)

    task = await task_store.create_task(
        session_maker,
        url=cleaned,
        discovered=discovery.links,
        metadata=discovery.metadata,
        preview=discovery.preview,
        extracted_by=extracted_by,
    )
    return IntakeResult(task=task, created=True)
