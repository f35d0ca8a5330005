from datetime import timedelta

import pytest
from sqlalchemy import update
from sqlalchemy.future import select

from models.link_cache import LinkCacheEntry
from services.link_cache import CACHE_BROKEN, CACHE_EXPIRED, LinkCache, cache_key
from services.time_utils import utc_now


URL = "https://hubcloud.foo/drive/abc"


@pytest.mark.asyncio
async def test_store_then_lookup_counts_one_hit(session_maker):
    cache = LinkCache(session_maker)
    await cache.store(URL, "https://fsl.example/a.mkv", "cdn_bypass", buttons=[{"button_name": "FSL", "download_link": "x"}])

    hit = await cache.lookup(URL)

    assert hit is not None
    assert hit.final_link == "https://fsl.example/a.mkv"
    assert hit.hit_count == 1
    assert hit.buttons == [{"button_name": "FSL", "download_link": "x"}]


@pytest.mark.asyncio
async def test_key_ignores_case_and_surrounding_space(session_maker):
    cache = LinkCache(session_maker)
    await cache.store(URL, "https://fsl.example/a.mkv", "cdn_bypass")

    hit = await cache.lookup(f"  {URL.upper()} ")

    assert cache_key(URL) == cache_key(URL.upper())
    assert hit is not None


@pytest.mark.asyncio
async def test_expired_entry_is_a_miss_and_is_marked(session_maker):
    cache = LinkCache(session_maker)
    await cache.store(URL, "https://fsl.example/a.mkv", "cdn_bypass")
    async with session_maker() as db:
        await db.execute(
            update(LinkCacheEntry)
            .where(LinkCacheEntry.key == cache_key(URL))
            .values(expires_at=utc_now() - timedelta(minutes=1))
        )
        await db.commit()

    assert await cache.lookup(URL) is None

    async with session_maker() as db:
        entry = (await db.execute(select(LinkCacheEntry))).scalar_one()
    assert entry.status == CACHE_EXPIRED


@pytest.mark.asyncio
async def test_broken_entry_is_a_miss_and_store_revives_it(session_maker):
    cache = LinkCache(session_maker)
    await cache.store(URL, "https://fsl.example/a.mkv", "cdn_bypass")

    assert await cache.mark_broken(URL) is True
    assert await cache.lookup(URL) is None

    async with session_maker() as db:
        entry = (await db.execute(select(LinkCacheEntry))).scalar_one()
    assert entry.status == CACHE_BROKEN

    await cache.store(URL, "https://fsl.example/b.mkv", "cdn_bypass")
    hit = await cache.lookup(URL)
    assert hit is not None and hit.final_link == "https://fsl.example/b.mkv"
    assert hit.hit_count == 1


@pytest.mark.asyncio
async def test_sweep_deletes_only_expired_entries(session_maker):
    cache = LinkCache(session_maker)
    await cache.store(URL, "https://fsl.example/a.mkv", "cdn_bypass")
    await cache.store("https://hubcloud.foo/drive/old", "https://fsl.example/old.mkv", "cdn_bypass")
    async with session_maker() as db:
        await db.execute(
            update(LinkCacheEntry)
            .where(LinkCacheEntry.key == cache_key("https://hubcloud.foo/drive/old"))
            .values(expires_at=utc_now() - timedelta(hours=1))
        )
        await db.commit()

    assert await cache.sweep_expired() == 1
    assert await cache.sweep_expired() == 0
    stats = await cache.stats()
    assert stats["total_entries"] == 1
    assert stats["valid_entries"] == 1


@pytest.mark.asyncio
async def test_storage_failures_degrade_to_miss():
    def broken_session_maker():
        raise RuntimeError("database unavailable")

    cache = LinkCache(broken_session_maker)

    assert await cache.lookup(URL) is None
    await cache.store(URL, "https://fsl.example/a.mkv", "cdn_bypass")
    assert await cache.sweep_expired() == 0
