"""Queue item persistence: atomic claim, terminal outcome and bulk import."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.future import select

from config import settings
from models.queue_item import QueueItem
from models.task import Task
from services.time_utils import utc_now

logger = logging.getLogger(__name__)

QUEUE_PENDING = "pending"
QUEUE_PROCESSING = "processing"
QUEUE_COMPLETED = "completed"
QUEUE_FAILED = "failed"

MEDIA_KINDS = ("movie", "series")
CLAIM_ATTEMPTS = 5


def normalize_queue_url(url: str) -> str:
    return str(url or "").strip().lower()


async def enqueue_url(
    session_maker: async_sessionmaker,
    url: str,
    *,
    media_kind: str = "movie",
    source: Optional[str] = None,
    task_id: Optional[str] = None,
) -> QueueItem:
    async with session_maker() as db:
        item = QueueItem(
            url=str(url).strip(),
            media_kind=media_kind if media_kind in MEDIA_KINDS else "movie",
            status=QUEUE_PENDING,
            source=source,
            task_id=task_id,
        )
        db.add(item)
        await db.commit()
        await db.refresh(item)
        return item


async def get_queue_item(session_maker: async_sessionmaker, item_id: str) -> Optional[QueueItem]:
    async with session_maker() as db:
        result = await db.execute(select(QueueItem).where(QueueItem.id == item_id))
        return result.scalar_one_or_none()


async def claim_next_item(session_maker: async_sessionmaker) -> Optional[QueueItem]:
    """Flip the oldest pending item to ``processing``; ``None`` when the queue is empty.

    The conditional UPDATE only succeeds for the caller that still sees the
    row as pending, so concurrent runs never claim the same item.
    """
    async with session_maker() as db:
        for _ in range(CLAIM_ATTEMPTS):
            result = await db.execute(
                select(QueueItem.id)
                .where(QueueItem.status == QUEUE_PENDING)
                .order_by(QueueItem.created_at.asc(), QueueItem.id.asc())
                .limit(1)
            )
            item_id = result.scalar_one_or_none()
            if item_id is None:
                return None

            now = utc_now()
            claimed = await db.execute(
                update(QueueItem)
                .where(QueueItem.id == item_id, QueueItem.status == QUEUE_PENDING)
                .values(status=QUEUE_PROCESSING, locked_at=now, updated_at=now)
            )
            await db.commit()
            if claimed.rowcount == 1:
                refreshed = await db.execute(select(QueueItem).where(QueueItem.id == item_id))
                return refreshed.scalar_one()
            logger.info("Queue item %s was claimed by another run; retrying claim", item_id)
    return None


async def attach_task(session_maker: async_sessionmaker, item_id: str, task_id: str) -> None:
    async with session_maker() as db:
        await db.execute(update(QueueItem).where(QueueItem.id == item_id).values(task_id=task_id, updated_at=utc_now()))
        await db.commit()


async def complete_item(session_maker: async_sessionmaker, item_id: str, task_id: Optional[str]) -> None:
    now = utc_now()
    async with session_maker() as db:
        await db.execute(
            update(QueueItem)
            .where(QueueItem.id == item_id)
            .values(
                status=QUEUE_COMPLETED,
                task_id=task_id,
                error_message=None,
                locked_at=None,
                processed_at=now,
                updated_at=now,
            )
        )
        await db.commit()


async def fail_item(
    session_maker: async_sessionmaker,
    item_id: str,
    reason: str,
    *,
    max_retries: Optional[int] = None,
) -> Optional[QueueItem]:
    """Record a non-completed outcome and count it against the retry cap."""
    cap = int(max_retries if max_retries is not None else settings.MAX_QUEUE_RETRIES)
    async with session_maker() as db:
        result = await db.execute(select(QueueItem).where(QueueItem.id == item_id).with_for_update())
        item = result.scalar_one_or_none()
        if item is None:
            return None
        now = utc_now()
        item.retry_count = int(item.retry_count or 0) + 1
        item.status = QUEUE_FAILED
        item.locked_at = None
        item.processed_at = now
        item.updated_at = now
        if item.retry_count > cap:
            item.error_message = f"Max retries exceeded ({cap}/{cap}): {reason}"
        else:
            item.error_message = reason
        await db.commit()
        await db.refresh(item)
        return item


async def queue_counts(session_maker: async_sessionmaker) -> Dict[str, int]:
    async with session_maker() as db:
        result = await db.execute(select(QueueItem.status, func.count()).group_by(QueueItem.status))
        counts = {str(status): int(count) for status, count in result.all()}
    return {
        QUEUE_PENDING: counts.get(QUEUE_PENDING, 0),
        QUEUE_PROCESSING: counts.get(QUEUE_PROCESSING, 0),
        QUEUE_COMPLETED: counts.get(QUEUE_COMPLETED, 0),
        QUEUE_FAILED: counts.get(QUEUE_FAILED, 0),
    }


async def bulk_enqueue(
    session_maker: async_sessionmaker,
    urls: Iterable[Any],
    *,
    media_kind: str = "movie",
    source: str = "bulk_import",
    max_urls: Optional[int] = None,
) -> Dict[str, Any]:
    """Queue new page URLs, skipping ones already known as tasks or queue items."""
    limit = int(max_urls or settings.BULK_IMPORT_MAX_URLS)
    cleaned: List[str] = []
    skipped = 0
    for raw in urls:
        url = str(raw or "").strip()
        if not url.lower().startswith(("http://", "https://")):
            skipped += 1
            continue
        cleaned.append(url)
    if len(cleaned) > limit:
        raise ValueError(f"Maximum {limit} URLs per import")

    normalized = {normalize_queue_url(url) for url in cleaned}
    async with session_maker() as db:
        known: set = set()
        if normalized:
            queued = await db.execute(select(QueueItem.url).where(func.lower(QueueItem.url).in_(normalized)))
            known.update(normalize_queue_url(row[0]) for row in queued.all())
            tasks = await db.execute(select(Task.url).where(func.lower(Task.url).in_(normalized)))
            known.update(normalize_queue_url(row[0]) for row in tasks.all())

        added: List[str] = []
        duplicates = 0
        kind = media_kind if media_kind in MEDIA_KINDS else "movie"
        for url in cleaned:
            key = normalize_queue_url(url)
            if key in known:
                duplicates += 1
                continue
            known.add(key)
            item_id = str(uuid.uuid4())
            db.add(QueueItem(id=item_id, url=url, media_kind=kind, status=QUEUE_PENDING, source=source))
            added.append(item_id)
        await db.commit()

    logger.info("Bulk import queued %s urls (%s duplicates, %s skipped)", len(added), duplicates, skipped)
    return {
        "added": len(added),
        "duplicates": duplicates,
        "skipped": skipped,
        "total": len(cleaned) + skipped,
        "media_kind": kind,
        "ids": added,
    }
