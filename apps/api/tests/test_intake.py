import pytest

from conftest import FakeDiscoverer
from services import task_store
from services.discovery import DiscoveryError, DiscoveryResult
from services.intake import TaskInFlightError, submit_url
from services.task_store import LINK_DONE, LINK_ERROR, TASK_FAILED, TASK_PENDING


PAGE_URL = "https://movies.example/new-movie"
LINKS = [
    {"name": "720p", "url": "https://hubcloud.foo/drive/1"},
    {"name": "1080p", "url": "https://hubcloud.foo/drive/2"},
]


@pytest.mark.asyncio
async def test_new_url_creates_a_task(session_maker):
    discoverer = FakeDiscoverer(DiscoveryResult(links=LINKS, preview={"title": "New Movie", "poster_url": None}))

    result = await submit_url(session_maker, discoverer, f"  {PAGE_URL} ")

    assert result.created is True
    assert result.task.url == PAGE_URL
    assert result.task.status == TASK_PENDING
    assert result.task.preview_json == {"title": "New Movie", "poster_url": None}
    assert discoverer.calls == [PAGE_URL]


@pytest.mark.asyncio
async def test_completed_task_is_returned_without_discovery(session_maker):
    task = await task_store.create_task(session_maker, url=PAGE_URL, discovered=LINKS[:1])
    await task_store.update_link(session_maker, task.id, 0, status=LINK_DONE, final_link="https://fsl.example/1")
    discoverer = FakeDiscoverer(DiscoveryResult(links=LINKS))

    result = await submit_url(session_maker, discoverer, PAGE_URL)

    assert result.duplicate is True
    assert result.task.id == task.id
    assert discoverer.calls == []


@pytest.mark.asyncio
async def test_processing_task_is_rejected(session_maker):
    task = await task_store.create_task(session_maker, url=PAGE_URL, discovered=LINKS)
    await task_store.mark_task_processing(session_maker, task.id)

    with pytest.raises(TaskInFlightError) as excinfo:
        await submit_url(session_maker, FakeDiscoverer(DiscoveryResult(links=LINKS)), PAGE_URL)

    assert excinfo.value.task_id == task.id


@pytest.mark.asyncio
async def test_failed_task_is_merged_with_new_links(session_maker):
    task = await task_store.create_task(session_maker, url=PAGE_URL, discovered=LINKS[:1])
    await task_store.update_link(session_maker, task.id, 0, status=LINK_ERROR, error="dead")
    discoverer = FakeDiscoverer(DiscoveryResult(links=LINKS))

    result = await submit_url(session_maker, discoverer, PAGE_URL)

    assert result.task.id == task.id
    assert result.appended == 1
    assert [link.status for link in task_store.links_of(result.task)] == ["pending", "pending"]


@pytest.mark.asyncio
async def test_discovery_failure_records_a_failed_task(session_maker):
    discoverer = FakeDiscoverer(error=DiscoveryError("No download links found. Page structure may have changed."))

    result = await submit_url(session_maker, discoverer, PAGE_URL)

    assert result.created is True
    assert result.task.status == TASK_FAILED
    assert result.task.error_message.startswith("No download links found")


@pytest.mark.asyncio
async def test_blank_url_is_rejected(session_maker):
    with pytest.raises(ValueError):
        await submit_url(session_maker, FakeDiscoverer(), "   ")
