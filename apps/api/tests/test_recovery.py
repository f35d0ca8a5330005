from datetime import timedelta

import pytest
from sqlalchemy import update

from models.queue_item import QueueItem
from services import task_store, work_queue
from services.recovery import recover_stuck_work, requeue_failed_items, run_recovery
from services.task_store import LINK_DONE, LINK_ERROR, TASK_COMPLETED, TASK_FAILED, TASK_PROCESSING
from services.time_utils import utc_now


PAGE_URL = "https://movies.example/stuck"
LINKS = [
    {"name": "720p", "url": "https://hubcloud.foo/drive/1"},
    {"name": "1080p", "url": "https://gadgetsweb.xyz/?id=2"},
]


def _later(minutes=30):
    return utc_now() + timedelta(minutes=minutes)


async def _stuck_run(session_maker, *, done_ids=(), retry_count=0):
    """A claimed queue item whose run died mid-task."""
    task = await task_store.create_task(session_maker, url=PAGE_URL, discovered=LINKS)
    await task_store.mark_task_processing(session_maker, task.id)
    for link_id in done_ids:
        await task_store.update_link(session_maker, task.id, link_id, status=LINK_DONE, final_link=f"https://fsl.example/{link_id}")
    item = await work_queue.enqueue_url(session_maker, PAGE_URL, task_id=task.id)
    async with session_maker() as db:
        await db.execute(
            update(QueueItem)
            .where(QueueItem.id == item.id)
            .values(status=work_queue.QUEUE_PROCESSING, locked_at=utc_now(), retry_count=retry_count)
        )
        await db.commit()
    return task, item


@pytest.mark.asyncio
async def test_stuck_item_is_requeued_and_task_settled(session_maker):
    task, item = await _stuck_run(session_maker, done_ids=[0])

    report = await recover_stuck_work(session_maker, threshold_minutes=10, now=_later())

    assert report.tasks_recovered == 1
    assert report.queue_requeued == 1
    settled = await task_store.get_task(session_maker, task.id)
    links = task_store.links_of(settled)
    assert [link.status for link in links] == [LINK_DONE, LINK_ERROR]
    assert links[1].error.startswith("Recovered: processing exceeded 10 minutes")
    assert settled.status == TASK_COMPLETED
    assert settled.recovery_reason == "stuck_processing"

    stored = await work_queue.get_queue_item(session_maker, item.id)
    assert stored.status == work_queue.QUEUE_PENDING
    assert stored.retry_count == 1
    assert stored.last_recovered_at is not None


@pytest.mark.asyncio
async def test_recovery_is_idempotent(session_maker):
    task, item = await _stuck_run(session_maker)
    later = _later()

    first = await recover_stuck_work(session_maker, threshold_minutes=10, now=later)
    snapshot = task_store.links_of(await task_store.get_task(session_maker, task.id))
    second = await recover_stuck_work(session_maker, threshold_minutes=10, now=later)

    assert first.total == 2
    assert second.total == 0
    assert task_store.links_of(await task_store.get_task(session_maker, task.id)) == snapshot
    stored = await work_queue.get_queue_item(session_maker, item.id)
    assert stored.retry_count == 1


@pytest.mark.asyncio
async def test_item_with_every_link_done_is_completed(session_maker):
    _, item = await _stuck_run(session_maker, done_ids=[0, 1])

    report = await recover_stuck_work(session_maker, threshold_minutes=10, now=_later())

    assert report.queue_completed == 1
    stored = await work_queue.get_queue_item(session_maker, item.id)
    assert stored.status == work_queue.QUEUE_COMPLETED
    assert stored.retry_count == 0


@pytest.mark.asyncio
async def test_item_over_the_retry_cap_is_parked(session_maker):
    _, item = await _stuck_run(session_maker, retry_count=3)

    report = await recover_stuck_work(session_maker, threshold_minutes=10, max_retries=3, now=_later())

    assert report.queue_parked == 1
    stored = await work_queue.get_queue_item(session_maker, item.id)
    assert stored.status == work_queue.QUEUE_FAILED
    assert stored.error_message.startswith("Max retries exceeded (3/3)")
    assert await requeue_failed_items(session_maker, max_retries=3) == 0


@pytest.mark.asyncio
async def test_fresh_work_is_left_alone_unless_forced(session_maker):
    task, item = await _stuck_run(session_maker)

    untouched = await recover_stuck_work(session_maker, threshold_minutes=10)
    assert untouched.total == 0
    assert (await task_store.get_task(session_maker, task.id)).status == TASK_PROCESSING

    forced = await recover_stuck_work(session_maker, threshold_minutes=0)

    assert forced.tasks_recovered == 1
    settled = await task_store.get_task(session_maker, task.id)
    assert settled.status == TASK_FAILED
    assert settled.error_message == "Recovered by admin: run was forcibly reset"


@pytest.mark.asyncio
async def test_streamed_tasks_are_skipped(session_maker):
    task, item = await _stuck_run(session_maker)

    report = await recover_stuck_work(session_maker, threshold_minutes=0, skip_task_ids=[task.id])

    assert report.total == 0
    stored = await work_queue.get_queue_item(session_maker, item.id)
    assert stored.status == work_queue.QUEUE_PROCESSING


@pytest.mark.asyncio
async def test_orphan_processing_task_is_settled(session_maker):
    task = await task_store.create_task(session_maker, url=PAGE_URL, discovered=LINKS)
    await task_store.mark_task_processing(session_maker, task.id)

    report = await recover_stuck_work(session_maker, threshold_minutes=10, now=_later())

    assert report.tasks_recovered == 1
    assert report.queue_requeued == 0
    assert (await task_store.get_task(session_maker, task.id)).status == TASK_FAILED


@pytest.mark.asyncio
async def test_failed_items_under_the_cap_return_to_pending(session_maker):
    item = await work_queue.enqueue_url(session_maker, PAGE_URL)
    await work_queue.fail_item(session_maker, item.id, "1 of 2 links failed, 0 deferred", max_retries=3)

    report = await run_recovery(session_maker, threshold_minutes=10)

    assert report.failed_requeued == 1
    stored = await work_queue.get_queue_item(session_maker, item.id)
    assert stored.status == work_queue.QUEUE_PENDING
    assert stored.retry_count == 1
