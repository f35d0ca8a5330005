"""Task persistence: link documents, derived status and per-link writes."""

from __future__ import annotations

import asyncio
import logging
import weakref
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.future import select

from models.task import Task
from services.time_utils import isoformat, utc_now

logger = logging.getLogger(__name__)

LINK_PENDING = "pending"
LINK_PROCESSING = "processing"
LINK_DONE = "done"
LINK_ERROR = "error"
LINK_TERMINAL_STATUSES = (LINK_DONE, LINK_ERROR)
LINK_ACTIVE_STATUSES = (LINK_PENDING, LINK_PROCESSING)

TASK_PENDING = "pending"
TASK_PROCESSING = "processing"
TASK_COMPLETED = "completed"
TASK_FAILED = "failed"

MAX_LINK_LOG_ENTRIES = 50

_task_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


@dataclass(frozen=True)
class ExtractedLink:
    """One candidate link on a task; ``id`` is fixed at task creation."""

    id: int
    name: str
    url: str
    status: str = LINK_PENDING
    final_link: Optional[str] = None
    best_button_name: Optional[str] = None
    buttons: Tuple[Dict[str, str], ...] = field(default_factory=tuple)
    logs: Tuple[Dict[str, str], ...] = field(default_factory=tuple)
    error: Optional[str] = None
    resolver: Optional[str] = None
    solved_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in LINK_TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "url": self.url,
            "status": self.status,
            "final_link": self.final_link,
            "best_button_name": self.best_button_name,
            "buttons": [dict(row) for row in self.buttons],
            "logs": [dict(row) for row in self.logs],
            "error": self.error,
            "resolver": self.resolver,
            "solved_at": self.solved_at,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ExtractedLink":
        status = str(payload.get("status") or LINK_PENDING).lower()
        if status not in LINK_TERMINAL_STATUSES + LINK_ACTIVE_STATUSES:
            status = LINK_PENDING
        return cls(
            id=int(payload["id"]),
            name=str(payload.get("name") or ""),
            url=str(payload.get("url") or ""),
            status=status,
            final_link=payload.get("final_link") or None,
            best_button_name=payload.get("best_button_name") or None,
            buttons=tuple(row for row in (payload.get("buttons") or []) if isinstance(row, dict)),
            logs=tuple(row for row in (payload.get("logs") or []) if isinstance(row, dict)),
            error=payload.get("error") or None,
            resolver=payload.get("resolver") or None,
            solved_at=payload.get("solved_at") or None,
        )


def log_entry(msg: str, kind: str = "info") -> Dict[str, str]:
    return {"msg": msg, "type": kind}


def links_of(task: Task) -> List[ExtractedLink]:
    rows = task.links_json if isinstance(task.links_json, list) else []
    return [ExtractedLink.from_dict(row) for row in rows if isinstance(row, dict) and "id" in row]


def derive_task_status(links: Sequence[ExtractedLink]) -> str:
    """Task status as a pure function of its links."""
    if any(not link.is_terminal for link in links):
        return TASK_PROCESSING
    if any(link.status == LINK_DONE for link in links):
        return TASK_COMPLETED
    return TASK_FAILED


def build_links(discovered: Iterable[Dict[str, Any]], start_id: int = 0) -> List[ExtractedLink]:
    """Assign ordinal ids to freshly discovered ``{name, url}`` rows."""
    links: List[ExtractedLink] = []
    for offset, row in enumerate(discovered):
        links.append(
            ExtractedLink(
                id=start_id + offset,
                name=str(row.get("name") or "Download Link"),
                url=str(row.get("url") or "").strip(),
                logs=(log_entry("Queued for processing..."),),
            )
        )
    return links


def _apply_status(task: Task, links: Sequence[ExtractedLink]) -> None:
    task.links_json = [link.to_dict() for link in links]
    status = derive_task_status(links)
    task.status = status
    now = utc_now()
    if status == TASK_PROCESSING and task.processing_started_at is None:
        task.processing_started_at = now
    if status in (TASK_COMPLETED, TASK_FAILED):
        task.completed_at = now
        if status == TASK_COMPLETED:
            task.error_message = None


@asynccontextmanager
async def task_lock(task_id: str) -> AsyncIterator[None]:
    """Serialise read-modify-write cycles on one task inside this process."""
    lock = _task_locks.get(task_id)
    if lock is None:
        lock = asyncio.Lock()
        _task_locks[task_id] = lock
    async with lock:
        yield


async def create_task(
    session_maker: async_sessionmaker,
    *,
    url: str,
    discovered: Sequence[Dict[str, Any]],
    metadata: Optional[Dict[str, Any]] = None,
    preview: Optional[Dict[str, Any]] = None,
    extracted_by: str = "Browser/Live",
    error_message: Optional[str] = None,
) -> Task:
    links = build_links(discovered)
    async with session_maker() as db:
        task = Task(
            url=url,
            status=TASK_PENDING if links else TASK_FAILED,
            links_json=[link.to_dict() for link in links],
            metadata_json=metadata,
            preview_json=preview,
            extracted_by=extracted_by,
            error_message=None if links else (error_message or "Extraction failed: 0 links found"),
        )
        db.add(task)
        await db.commit()
        await db.refresh(task)
        return task


async def get_task(session_maker: async_sessionmaker, task_id: str) -> Optional[Task]:
    async with session_maker() as db:
        result = await db.execute(select(Task).where(Task.id == task_id))
        return result.scalar_one_or_none()


async def find_latest_task_for_url(session_maker: async_sessionmaker, url: str) -> Optional[Task]:
    async with session_maker() as db:
        result = await db.execute(
            select(Task).where(Task.url == url).order_by(Task.created_at.desc()).limit(1)
        )
        return result.scalar_one_or_none()


async def list_recent_tasks(session_maker: async_sessionmaker, limit: int = 20) -> List[Task]:
    async with session_maker() as db:
        result = await db.execute(select(Task).order_by(Task.created_at.desc()).limit(max(int(limit), 1)))
        return list(result.scalars().all())


async def delete_task(session_maker: async_sessionmaker, task_id: str) -> bool:
    async with task_lock(task_id):
        async with session_maker() as db:
            result = await db.execute(delete(Task).where(Task.id == task_id))
            await db.commit()
            return bool(result.rowcount)


async def get_link(session_maker: async_sessionmaker, task_id: str, link_id: int) -> Optional[ExtractedLink]:
    task = await get_task(session_maker, task_id)
    if task is None:
        return None
    for link in links_of(task):
        if link.id == link_id:
            return link
    return None


async def mark_task_processing(
    session_maker: async_sessionmaker,
    task_id: str,
    *,
    extracted_by: Optional[str] = None,
) -> Optional[Task]:
    """Stamp the start of a run; status is re-derived from the links."""
    async with task_lock(task_id):
        async with session_maker() as db:
            result = await db.execute(select(Task).where(Task.id == task_id).with_for_update())
            task = result.scalar_one_or_none()
            if task is None:
                return None
            links = links_of(task)
            task.processing_started_at = utc_now()
            if extracted_by:
                task.extracted_by = extracted_by
            _apply_status(task, links)
            await db.commit()
            await db.refresh(task)
            return task


async def update_link(
    session_maker: async_sessionmaker,
    task_id: str,
    link_id: int,
    *,
    status: str,
    final_link: Optional[str] = None,
    error: Optional[str] = None,
    logs: Optional[Sequence[Dict[str, str]]] = None,
    best_button_name: Optional[str] = None,
    buttons: Optional[Sequence[Dict[str, str]]] = None,
    resolver: Optional[str] = None,
    extracted_by: Optional[str] = None,
) -> Optional[ExtractedLink]:
    """Rewrite one link by id inside a single-task transaction.

    Terminal links are write-once: a write against a link already in
    ``done``/``error`` is ignored and the stored link is returned.
    """
    async with task_lock(task_id):
        async with session_maker() as db:
            result = await db.execute(select(Task).where(Task.id == task_id).with_for_update())
            task = result.scalar_one_or_none()
            if task is None:
                logger.warning("Task %s vanished before link %s could be saved", task_id, link_id)
                return None

            links = links_of(task)
            updated: Optional[ExtractedLink] = None
            for index, link in enumerate(links):
                if link.id != link_id:
                    continue
                if link.is_terminal:
                    return link
                terminal = status in LINK_TERMINAL_STATUSES
                updated = replace(
                    link,
                    status=status,
                    final_link=final_link if final_link is not None else link.final_link,
                    error=error,
                    logs=tuple(logs)[-MAX_LINK_LOG_ENTRIES:] if logs is not None else link.logs,
                    best_button_name=best_button_name if best_button_name is not None else link.best_button_name,
                    buttons=tuple(buttons) if buttons is not None else link.buttons,
                    resolver=resolver or link.resolver,
                    solved_at=isoformat(utc_now()) if terminal else link.solved_at,
                )
                links[index] = updated
                break

            if updated is None:
                logger.warning("Link %s not found on task %s", link_id, task_id)
                return None

            if extracted_by:
                task.extracted_by = extracted_by
            _apply_status(task, links)
            await db.commit()
            return updated


async def defer_links(
    session_maker: async_sessionmaker,
    task_id: str,
    link_ids: Iterable[int],
    message: str,
) -> List[int]:
    """Write not-yet-started links back as ``pending`` in one transaction."""
    wanted = set(link_ids)
    if not wanted:
        return []
    async with task_lock(task_id):
        async with session_maker() as db:
            result = await db.execute(select(Task).where(Task.id == task_id).with_for_update())
            task = result.scalar_one_or_none()
            if task is None:
                return []
            links = links_of(task)
            deferred: List[int] = []
            for index, link in enumerate(links):
                if link.id not in wanted or link.is_terminal:
                    continue
                links[index] = replace(
                    link,
                    status=LINK_PENDING,
                    error=None,
                    logs=(link.logs + (log_entry(message, "warn"),))[-MAX_LINK_LOG_ENTRIES:],
                )
                deferred.append(link.id)
            _apply_status(task, links)
            await db.commit()
            return deferred


async def settle_stuck_task(
    session_maker: async_sessionmaker,
    task_id: str,
    message: str,
    reason: str,
) -> Optional[Task]:
    """Close out a task abandoned mid-run.

    Finished work is only re-derived; unfinished links are forced to
    ``error`` with ``message`` appended to their logs.
    """
    async with task_lock(task_id):
        async with session_maker() as db:
            result = await db.execute(select(Task).where(Task.id == task_id).with_for_update())
            task = result.scalar_one_or_none()
            if task is None:
                return None
            links = links_of(task)
            forced = False
            for index, link in enumerate(links):
                if link.is_terminal:
                    continue
                forced = True
                links[index] = replace(
                    link,
                    status=LINK_ERROR,
                    error=message,
                    logs=(link.logs + (log_entry(message, "error"),))[-MAX_LINK_LOG_ENTRIES:],
                    solved_at=isoformat(utc_now()),
                )
            _apply_status(task, links)
            if forced:
                task.recovery_reason = reason
                task.recovered_at = utc_now()
                if task.status == TASK_FAILED:
                    task.error_message = message
            await db.commit()
            await db.refresh(task)
            return task


async def merge_discovered_links(
    session_maker: async_sessionmaker,
    task_id: str,
    discovered: Sequence[Dict[str, Any]],
    *,
    metadata: Optional[Dict[str, Any]] = None,
    preview: Optional[Dict[str, Any]] = None,
) -> Tuple[Optional[Task], int]:
    """Start a new resolution cycle on an existing task.

    Errored links go back to ``pending``; links with unseen URLs are appended
    after the highest existing id. Returns the task and the number of links
    appended.
    """
    async with task_lock(task_id):
        async with session_maker() as db:
            result = await db.execute(select(Task).where(Task.id == task_id).with_for_update())
            task = result.scalar_one_or_none()
            if task is None:
                return None, 0

            links = links_of(task)
            known_urls = {link.url for link in links}
            refreshed = [
                replace(
                    link,
                    status=LINK_PENDING,
                    error=None,
                    logs=(log_entry("Retrying..."),),
                )
                if link.status == LINK_ERROR
                else link
                for link in links
            ]

            next_id = max((link.id for link in links), default=-1) + 1
            fresh_rows: List[Dict[str, Any]] = []
            for row in discovered:
                url = str(row.get("url") or "").strip()
                if not url or url in known_urls:
                    continue
                known_urls.add(url)
                fresh_rows.append(row)
            appended = build_links(fresh_rows, start_id=next_id)
            merged = refreshed + appended

            task.links_json = [link.to_dict() for link in merged]
            task.metadata_json = metadata or task.metadata_json
            task.preview_json = preview or task.preview_json
            task.error_message = None
            task.recovery_reason = None
            if merged:
                if any(not link.is_terminal for link in merged):
                    task.status = TASK_PENDING
                    task.processing_started_at = None
                    task.completed_at = None
                else:
                    _apply_status(task, merged)
            await db.commit()
            await db.refresh(task)
            return task, len(appended)


def pending_links(task: Task) -> List[ExtractedLink]:
    return [link for link in links_of(task) if not link.is_terminal]


def serialize_task(task: Task) -> Dict[str, Any]:
    links = links_of(task)
    return {
        "id": task.id,
        "url": task.url,
        "status": task.status,
        "links": [link.to_dict() for link in links],
        "metadata": task.metadata_json,
        "preview": task.preview_json,
        "extracted_by": task.extracted_by,
        "error": task.error_message,
        "recovery_reason": task.recovery_reason,
        "total_links": len(links),
        "completed_links": sum(1 for link in links if link.status == LINK_DONE),
        "failed_links": sum(1 for link in links if link.status == LINK_ERROR),
        "created_at": isoformat(task.created_at),
        "processing_started_at": isoformat(task.processing_started_at),
        "completed_at": isoformat(task.completed_at),
        "recovered_at": isoformat(task.recovered_at),
    }
