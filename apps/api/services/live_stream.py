"""Newline-delimited JSON event stream for interactive task solving."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import Counter
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Any, AsyncIterator, Callable, Collection, Dict, List, Optional, Set

from sqlalchemy.ext.asyncio import async_sessionmaker

from config import settings
from services import task_store
from services.link_processor import LinkProcessor
from services.orchestrator import drive_links, open_engine_parts

logger = logging.getLogger(__name__)

ProcessorOpener = Callable[[async_sessionmaker], AbstractAsyncContextManager]

_END_OF_STREAM = object()
_active_streams: Counter = Counter()
_background_drives: Set[asyncio.Task] = set()


def is_streaming(task_id: str) -> bool:
    return _active_streams[task_id] > 0


def active_task_ids() -> List[str]:
    return [task_id for task_id, count in _active_streams.items() if count > 0]


def _register(task_id: str) -> None:
    _active_streams[task_id] += 1


def _unregister(task_id: str) -> None:
    _active_streams[task_id] -= 1
    if _active_streams[task_id] <= 0:
        del _active_streams[task_id]


def encode_event(event: Dict[str, Any]) -> str:
    return json.dumps(event, separators=(",", ":")) + "\n"


async def stream_task_events(
    session_maker: async_sessionmaker,
    task_id: str,
    open_processor: ProcessorOpener,
    *,
    link_ids: Optional[Collection[int]] = None,
    budget_seconds: Optional[float] = None,
) -> AsyncIterator[str]:
    """Yield encoded events while the task's unfinished links are driven.

    The drive runs as its own asyncio task: a client that disconnects stops
    receiving events but never interrupts links already in flight.
    """
    task = await task_store.mark_task_processing(session_maker, task_id, extracted_by="Browser/Live")
    if task is None:
        raise LookupError(f"Task {task_id} not found")

    wanted = set(link_ids) if link_ids else None
    pending = [link for link in task_store.pending_links(task) if wanted is None or link.id in wanted]
    budget = float(budget_seconds or settings.STREAM_TIME_BUDGET_SECONDS)
    queue: "asyncio.Queue[Any]" = asyncio.Queue()
    started_at = time.monotonic()

    async def _drive() -> None:
        try:
            async with open_processor(session_maker) as processor:
                await drive_links(
                    processor,
                    task_id,
                    pending,
                    budget_seconds=budget,
                    started_at=started_at,
                    emit=queue.put_nowait,
                )
        except Exception:
            logger.exception("Live solve of task %s failed", task_id)
            for link in pending:
                queue.put_nowait({"id": link.id, "status": "finished"})
        finally:
            _unregister(task_id)
            queue.put_nowait(_END_OF_STREAM)

    _register(task_id)
    drive = asyncio.create_task(_drive())
    _background_drives.add(drive)
    drive.add_done_callback(_background_drives.discard)

    while True:
        event = await queue.get()
        if event is _END_OF_STREAM:
            break
        yield encode_event(event)


@asynccontextmanager
async def open_live_processor(session_maker: async_sessionmaker) -> AsyncIterator[LinkProcessor]:
    async with open_engine_parts(session_maker, extracted_by="Browser/Live") as parts:
        yield parts.processor
