"""Stuck-work recovery for runs killed by the host's execution ceiling."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Collection, Dict, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.future import select

from config import settings
from models.queue_item import QueueItem
from models.task import Task
from services import task_store
from services.task_store import LINK_DONE, TASK_PROCESSING
from services.time_utils import as_utc, utc_now
from services.work_queue import QUEUE_COMPLETED, QUEUE_FAILED, QUEUE_PENDING, QUEUE_PROCESSING

logger = logging.getLogger(__name__)


@dataclass
class RecoveryReport:
    tasks_recovered: int = 0
    tasks_finalized: int = 0
    queue_requeued: int = 0
    queue_parked: int = 0
    queue_completed: int = 0
    failed_requeued: int = 0

    @property
    def total(self) -> int:
        return (
            self.tasks_recovered
            + self.tasks_finalized
            + self.queue_requeued
            + self.queue_parked
            + self.queue_completed
        )

    def to_dict(self) -> Dict[str, int]:
        payload = asdict(self)
        payload["total"] = self.total
        return payload


def _is_stale(started_at: Optional[datetime], now: datetime, threshold: timedelta) -> bool:
    started = as_utc(started_at)
    if started is None:
        return True
    return now - started >= threshold


def _recovery_message(threshold_minutes: float) -> str:
    if threshold_minutes <= 0:
        return "Recovered by admin: run was forcibly reset"
    return f"Recovered: processing exceeded {threshold_minutes:g} minutes without finishing"


async def _settle_task(
    session_maker: async_sessionmaker,
    task_id: str,
    message: str,
    report: RecoveryReport,
) -> Optional[Task]:
    before = await task_store.get_task(session_maker, task_id)
    if before is None:
        return None
    unfinished = bool(task_store.pending_links(before))
    task = await task_store.settle_stuck_task(session_maker, task_id, message, reason="stuck_processing")
    if task is not None and before.status == TASK_PROCESSING:
        if unfinished:
            report.tasks_recovered += 1
        else:
            report.tasks_finalized += 1
    return task


async def recover_stuck_work(
    session_maker: async_sessionmaker,
    *,
    threshold_minutes: Optional[float] = None,
    max_retries: Optional[int] = None,
    skip_task_ids: Collection[str] = (),
    now: Optional[datetime] = None,
) -> RecoveryReport:
    """Reconcile tasks and queue items left in ``processing`` past the threshold.

    Re-running on already reconciled rows changes nothing: settled rows are no
    longer ``processing`` and are not selected again.
    """
    minutes = float(settings.STUCK_THRESHOLD_MINUTES if threshold_minutes is None else threshold_minutes)
    threshold = timedelta(minutes=max(minutes, 0.0))
    cap = int(settings.MAX_QUEUE_RETRIES if max_retries is None else max_retries)
    now = now or utc_now()
    message = _recovery_message(minutes)
    report = RecoveryReport()
    skipped = set(skip_task_ids)

    async with session_maker() as db:
        result = await db.execute(select(QueueItem).where(QueueItem.status == QUEUE_PROCESSING))
        stuck_items = [
            item for item in result.scalars().all()
            if _is_stale(item.locked_at or item.created_at, now, threshold) and item.task_id not in skipped
        ]
        result = await db.execute(select(Task).where(Task.status == TASK_PROCESSING))
        stuck_task_ids = [
            task.id for task in result.scalars().all()
            if _is_stale(task.processing_started_at or task.created_at, now, threshold) and task.id not in skipped
        ]

    for item in stuck_items:
        task = None
        if item.task_id:
            task = await _settle_task(session_maker, item.task_id, message, report)
            if item.task_id in stuck_task_ids:
                stuck_task_ids.remove(item.task_id)

        links = task_store.links_of(task) if task is not None else []
        all_done = bool(links) and all(link.status == LINK_DONE for link in links)

        async with session_maker() as db:
            result = await db.execute(
                select(QueueItem).where(QueueItem.id == item.id, QueueItem.status == QUEUE_PROCESSING).with_for_update()
            )
            row = result.scalar_one_or_none()
            if row is None:
                continue
            row.locked_at = None
            row.updated_at = now
            row.last_recovered_at = now
            if all_done:
                row.status = QUEUE_COMPLETED
                row.processed_at = now
                row.error_message = None
                report.queue_completed += 1
            else:
                row.retry_count = int(row.retry_count or 0) + 1
                if row.retry_count > cap:
                    row.status = QUEUE_FAILED
                    row.error_message = f"Max retries exceeded ({cap}/{cap}): {message}"
                    report.queue_parked += 1
                else:
                    row.status = QUEUE_PENDING
                    row.error_message = message
                    report.queue_requeued += 1
            await db.commit()

    for task_id in stuck_task_ids:
        await _settle_task(session_maker, task_id, message, report)

    if report.total:
        logger.info("Stuck-work recovery: %s", report.to_dict())
    return report


async def requeue_failed_items(
    session_maker: async_sessionmaker,
    *,
    max_retries: Optional[int] = None,
    now: Optional[datetime] = None,
) -> int:
    """Return failed queue items still under the retry cap to ``pending``."""
    cap = int(settings.MAX_QUEUE_RETRIES if max_retries is None else max_retries)
    now = now or utc_now()
    async with session_maker() as db:
        result = await db.execute(
            select(QueueItem).where(QueueItem.status == QUEUE_FAILED, QueueItem.retry_count <= cap)
        )
        items = result.scalars().all()
        for item in items:
            item.status = QUEUE_PENDING
            item.updated_at = now
        if items:
            await db.commit()
        return len(items)


async def run_recovery(
    session_maker: async_sessionmaker,
    *,
    threshold_minutes: Optional[float] = None,
    skip_task_ids: Collection[str] = (),
) -> RecoveryReport:
    """Stuck-work recovery followed by the failed-item retry path."""
    report = await recover_stuck_work(
        session_maker,
        threshold_minutes=threshold_minutes,
        skip_task_ids=skip_task_ids,
    )
    report.failed_requeued = await requeue_failed_items(session_maker)
    return report
