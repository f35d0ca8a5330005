import httpx
import pytest

from conftest import FakeChain, FakeDiscoverer, failure, make_processor
from services import task_store, work_queue
from services.discovery import DiscoveryError, DiscoveryResult
from services.heartbeat import engine_status
from services.link_cache import LinkCache
from services.link_processor import LinkProcessor
from services.orchestrator import (
    DEFERRED_MESSAGE,
    BatchOrchestrator,
    drive_links,
    partition_links,
    process_task_solve_job_async,
)
from services.resolvers import NO_SOLVER_MATCHED, Fetcher, ResolverChain
from services.task_store import LINK_DONE, LINK_ERROR, LINK_PENDING, TASK_COMPLETED


PAGE_URL = "https://movies.example/some-movie"


class FakeClock:
    def __init__(self, step: float = 0.0):
        self.now = 0.0
        self.step = step

    def __call__(self) -> float:
        return self.now

    def advance(self, _url=None) -> None:
        self.now += self.step


def _discovered(*urls):
    return DiscoveryResult(links=[{"name": f"Link {index}", "url": url} for index, url in enumerate(urls)])


async def _no_sleep(_seconds):
    return None


@pytest.mark.asyncio
async def test_mixed_run_with_cache_hit_hop_chain_and_unknown_host(session_maker):
    hops = {
        "https://gadgetsweb.xyz/?id=2": "https://review-tech.xyz/go/2",
        "https://review-tech.xyz/go/2": "https://hubcloud.foo/drive/2",
    }

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "timer.test":
            return httpx.Response(200, json={"status": "success", "extracted_link": hops[request.url.params["url"]]})
        if request.url.host == "cdn.test":
            return httpx.Response(
                200,
                json={
                    "status": "success",
                    "best_button_name": "FSL Server",
                    "best_download_link": "https://fsl.example/2.mkv",
                    "all_available_buttons": [
                        {"button_name": "FSL Server", "download_link": "https://fsl.example/2.mkv"},
                        {"button_name": "10Gbps", "download_link": "https://fast.example/2.mkv"},
                    ],
                },
            )
        raise AssertionError(f"unexpected request {request.url}")

    cache = LinkCache(session_maker)
    await cache.store("https://hubdrive.space/file/1", "https://fsl.example/1.mkv", "cdn_bypass")
    await work_queue.enqueue_url(session_maker, PAGE_URL)
    discoverer = FakeDiscoverer(
        _discovered(
            "https://hubdrive.space/file/1",
            "https://gadgetsweb.xyz/?id=2",
            "https://unknown.example/file/3",
        )
    )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        chain = ResolverChain(
            Fetcher(client=client, sleep=_no_sleep),
            timer_bypass_url="http://timer.test",
            cdn_bypass_url="http://cdn.test",
        )
        processor = LinkProcessor(session_maker, chain, cache, link_timeout_seconds=5)
        summary = await BatchOrchestrator(session_maker, processor, discoverer, budget_seconds=45).run_once()

    assert summary.claimed is True
    assert summary.done == 2
    assert summary.errors == 1
    assert summary.status == "failed"

    task = await task_store.get_task(session_maker, summary.task_id)
    links = {link.id: link for link in task_store.links_of(task)}
    assert task.status == TASK_COMPLETED
    assert links[0].status == LINK_DONE and links[0].resolver == "cache"
    assert (await cache.stats())["total_hits"] == 1
    assert links[1].final_link == "https://fsl.example/2.mkv"
    assert [row["button_name"] for row in links[1].buttons] == ["FSL Server", "10Gbps"]
    assert links[2].status == LINK_ERROR
    assert links[2].error == NO_SOLVER_MATCHED

    item = await work_queue.get_queue_item(session_maker, summary.queue_item_id)
    assert item.status == work_queue.QUEUE_FAILED
    assert item.retry_count == 1
    assert item.task_id == task.id


@pytest.mark.asyncio
async def test_budget_checkpoint_defers_remaining_sequenced_links(session_maker):
    clock = FakeClock(step=20)
    chain = FakeChain(on_call=clock.advance)
    processor = make_processor(session_maker, chain)
    urls = [f"https://gadgetsweb.xyz/?id={index}" for index in range(5)]
    await work_queue.enqueue_url(session_maker, PAGE_URL)

    summary = await BatchOrchestrator(
        session_maker,
        processor,
        FakeDiscoverer(_discovered(*urls)),
        budget_seconds=45,
        clock=clock,
    ).run_once()

    assert summary.done == 3
    assert summary.deferred == 2
    assert chain.calls == urls[:3]
    task = await task_store.get_task(session_maker, summary.task_id)
    statuses = [link.status for link in task_store.links_of(task)]
    assert statuses == [LINK_DONE, LINK_DONE, LINK_DONE, LINK_PENDING, LINK_PENDING]
    deferred = task_store.links_of(task)[3]
    assert deferred.logs[-1] == {"msg": DEFERRED_MESSAGE, "type": "warn"}

    item = await work_queue.get_queue_item(session_maker, summary.queue_item_id)
    assert item.status == work_queue.QUEUE_FAILED
    assert item.retry_count == 1


@pytest.mark.asyncio
async def test_next_run_resumes_the_same_task(session_maker):
    first_clock = FakeClock(step=20)
    chain = FakeChain(on_call=first_clock.advance)
    processor = make_processor(session_maker, chain)
    urls = [f"https://gadgetsweb.xyz/?id={index}" for index in range(5)]
    discoverer = FakeDiscoverer(_discovered(*urls))
    await work_queue.enqueue_url(session_maker, PAGE_URL)

    first = await BatchOrchestrator(
        session_maker, processor, discoverer, budget_seconds=45, clock=first_clock
    ).run_once()
    chain.on_call = None
    second = await BatchOrchestrator(
        session_maker, processor, discoverer, budget_seconds=45, clock=FakeClock()
    ).run_once()

    assert second.requeued == 1
    assert second.queue_item_id == first.queue_item_id
    assert second.task_id == first.task_id
    assert second.status == "completed"
    assert chain.calls == urls

    task = await task_store.get_task(session_maker, first.task_id)
    assert [link.id for link in task_store.links_of(task)] == [0, 1, 2, 3, 4]
    assert task.status == TASK_COMPLETED
    item = await work_queue.get_queue_item(session_maker, first.queue_item_id)
    assert item.status == work_queue.QUEUE_COMPLETED


@pytest.mark.asyncio
async def test_sequenced_links_never_overlap(session_maker):
    chain = FakeChain(delay=0.2)
    processor = make_processor(session_maker, chain)
    urls = [
        "https://gadgetsweb.xyz/?id=1",
        "https://hubcloud.foo/drive/1",
        "https://ouo.io/abc",
        "https://hubcloud.foo/drive/2",
        "https://shrinkme.io/xyz",
    ]
    await work_queue.enqueue_url(session_maker, PAGE_URL)

    summary = await BatchOrchestrator(session_maker, processor, FakeDiscoverer(_discovered(*urls))).run_once()

    assert summary.status == "completed"
    assert chain.max_active_sequenced == 1
    assert chain.max_active_parallel == 2
    sequenced_calls = [url for url in chain.calls if "hubcloud" not in url]
    assert sequenced_calls == ["https://gadgetsweb.xyz/?id=1", "https://ouo.io/abc", "https://shrinkme.io/xyz"]


@pytest.mark.asyncio
async def test_empty_queue_is_idle_and_writes_heartbeat(session_maker):
    processor = make_processor(session_maker, FakeChain())

    summary = await BatchOrchestrator(session_maker, processor, FakeDiscoverer()).run_once()

    assert summary.status == "idle"
    assert summary.claimed is False
    status = await engine_status(session_maker)
    assert status["status"] == "idle"
    assert status["signal"] == "ONLINE"
    assert status["details"] == "Queue empty"


@pytest.mark.asyncio
async def test_discovery_failure_fails_the_item(session_maker):
    processor = make_processor(session_maker, FakeChain())
    item = await work_queue.enqueue_url(session_maker, PAGE_URL)
    discoverer = FakeDiscoverer(error=DiscoveryError("No download links found."))

    summary = await BatchOrchestrator(session_maker, processor, discoverer).run_once()

    assert summary.status == "failed"
    stored = await work_queue.get_queue_item(session_maker, item.id)
    assert stored.status == work_queue.QUEUE_FAILED
    assert stored.error_message == "Extraction failed: No download links found."
    status = await engine_status(session_maker)
    assert status["status"] == "error"


@pytest.mark.asyncio
async def test_queue_item_completes_only_when_every_link_is_done(session_maker):
    urls = ["https://hubcloud.foo/drive/ok", "https://hubcloud.foo/drive/bad"]
    chain = FakeChain(outcomes={urls[1]: [failure("dead"), failure("dead")]})
    processor = make_processor(session_maker, chain)
    item = await work_queue.enqueue_url(session_maker, PAGE_URL)

    summary = await BatchOrchestrator(session_maker, processor, FakeDiscoverer(_discovered(*urls))).run_once()

    assert summary.done == 1
    assert summary.errors == 1
    stored = await work_queue.get_queue_item(session_maker, item.id)
    assert stored.status == work_queue.QUEUE_FAILED
    assert stored.error_message == "1 of 2 links failed, 0 deferred"


@pytest.mark.asyncio
async def test_unexpected_crash_is_reported_not_raised(session_maker):
    processor = make_processor(session_maker, FakeChain())
    await work_queue.enqueue_url(session_maker, PAGE_URL)

    summary = await BatchOrchestrator(
        session_maker, processor, FakeDiscoverer(error=RuntimeError("parser exploded"))
    ).run_once()

    assert summary.status == "error"
    assert summary.message == "parser exploded"
    status = await engine_status(session_maker)
    assert status["status"] == "error"


@pytest.mark.asyncio
async def test_drive_links_partitions_in_discovery_order(session_maker):
    task = await task_store.create_task(
        session_maker,
        url=PAGE_URL,
        discovered=[
            {"name": "a", "url": "https://ouo.io/a"},
            {"name": "b", "url": "https://hubcloud.foo/drive/b"},
            {"name": "c", "url": "https://gadgetsweb.xyz/?id=c"},
        ],
    )
    links = task_store.links_of(task)
    sequenced, parallel = partition_links(links)
    assert [link.id for link in sequenced] == [0, 2]
    assert [link.id for link in parallel] == [1]

    events = []
    report = await drive_links(
        make_processor(session_maker, FakeChain()),
        task.id,
        links,
        budget_seconds=45,
        started_at=0.0,
        clock=FakeClock(),
        emit=events.append,
    )

    assert report.done == 3
    assert report.all_done(3)
    finished = [event["id"] for event in events if event.get("status") == "finished"]
    assert sorted(finished) == [0, 1, 2]


@pytest.mark.asyncio
async def test_background_solve_job_drives_pending_links(session_maker):
    task = await task_store.create_task(
        session_maker,
        url=PAGE_URL,
        discovered=[{"name": "a", "url": "https://hubcloud.foo/drive/a"}],
    )

    result = await process_task_solve_job_async(
        task.id,
        session_maker=session_maker,
        processor=make_processor(session_maker, FakeChain()),
    )

    assert result == {"task_id": task.id, "done": 1, "errors": 0, "deferred": 0}
    stored = await task_store.get_task(session_maker, task.id)
    assert stored.status == TASK_COMPLETED


@pytest.mark.asyncio
async def test_background_solve_job_rejects_unknown_task(session_maker):
    with pytest.raises(ValueError):
        await process_task_solve_job_async(
            "missing",
            session_maker=session_maker,
            processor=make_processor(session_maker, FakeChain()),
        )
