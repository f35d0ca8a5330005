"""Content-addressed cache of resolved download links.

The cache is an optimisation only: every read or write failure is logged and
degrades to a miss / no-op instead of failing the caller.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.future import select

from config import settings
from models.link_cache import LinkCacheEntry
from services.time_utils import as_utc, utc_now

logger = logging.getLogger(__name__)

CACHE_VALID = "valid"
CACHE_EXPIRED = "expired"
CACHE_BROKEN = "broken"


@dataclass(frozen=True)
class CachedLink:
    final_link: str
    resolver_name: str
    best_button_name: Optional[str] = None
    buttons: List[Dict[str, str]] = field(default_factory=list)
    hit_count: int = 0


def normalize_url(url: str) -> str:
    return str(url or "").strip().lower()


def cache_key(url: str) -> str:
    return hashlib.md5(normalize_url(url).encode("utf-8")).hexdigest()


class LinkCache:
    """Result cache bound to a session factory and a fixed TTL."""

    def __init__(self, session_maker: async_sessionmaker, ttl_hours: Optional[int] = None) -> None:
        self.session_maker = session_maker
        self.ttl = timedelta(hours=int(ttl_hours if ttl_hours is not None else settings.CACHE_TTL_HOURS))

    async def lookup(self, url: str) -> Optional[CachedLink]:
        """Return the live entry for ``url`` and count the hit, or ``None``."""
        try:
            async with self.session_maker() as db:
                result = await db.execute(select(LinkCacheEntry).where(LinkCacheEntry.key == cache_key(url)))
                entry = result.scalar_one_or_none()
                if entry is None:
                    return None

                now = utc_now()
                expires_at = as_utc(entry.expires_at)
                if expires_at is None or expires_at <= now:
                    if entry.status == CACHE_VALID:
                        entry.status = CACHE_EXPIRED
                        await db.commit()
                    return None
                if entry.status != CACHE_VALID:
                    return None

                entry.hit_count = int(entry.hit_count or 0) + 1
                entry.last_hit_at = now
                await db.commit()
                return CachedLink(
                    final_link=entry.final_link,
                    resolver_name=entry.resolver_name,
                    best_button_name=entry.best_button_name,
                    buttons=[row for row in (entry.buttons_json or []) if isinstance(row, dict)],
                    hit_count=entry.hit_count,
                )
        except Exception:
            logger.exception("Link cache lookup failed for %s; treating as miss", url)
            return None

    async def store(
        self,
        url: str,
        final_link: str,
        resolver_name: str,
        *,
        best_button_name: Optional[str] = None,
        buttons: Optional[Sequence[Dict[str, Any]]] = None,
    ) -> None:
        """Write a fresh entry for ``url``, replacing any previous one."""
        try:
            now = utc_now()
            async with self.session_maker() as db:
                key = cache_key(url)
                result = await db.execute(select(LinkCacheEntry).where(LinkCacheEntry.key == key))
                entry = result.scalar_one_or_none()
                if entry is None:
                    entry = LinkCacheEntry(key=key)
                    db.add(entry)
                entry.original_url = url
                entry.final_link = final_link
                entry.resolver_name = resolver_name
                entry.best_button_name = best_button_name
                entry.buttons_json = [dict(row) for row in (buttons or [])]
                entry.status = CACHE_VALID
                entry.hit_count = 0
                entry.resolved_at = now
                entry.expires_at = now + self.ttl
                entry.last_hit_at = None
                entry.broken_at = None
                await db.commit()
        except Exception:
            logger.exception("Link cache write failed for %s", url)

    async def mark_broken(self, url: str) -> bool:
        try:
            async with self.session_maker() as db:
                result = await db.execute(select(LinkCacheEntry).where(LinkCacheEntry.key == cache_key(url)))
                entry = result.scalar_one_or_none()
                if entry is None:
                    return False
                entry.status = CACHE_BROKEN
                entry.broken_at = utc_now()
                await db.commit()
                return True
        except Exception:
            logger.exception("Could not mark cache entry broken for %s", url)
            return False

    async def sweep_expired(self, batch_size: Optional[int] = None) -> int:
        """Delete up to one batch of entries past their expiry."""
        limit = max(int(batch_size or settings.CACHE_SWEEP_BATCH), 1)
        try:
            async with self.session_maker() as db:
                result = await db.execute(
                    select(LinkCacheEntry.key)
                    .where(LinkCacheEntry.expires_at < utc_now())
                    .limit(limit)
                )
                keys = [row[0] for row in result.all()]
                if not keys:
                    return 0
                await db.execute(delete(LinkCacheEntry).where(LinkCacheEntry.key.in_(keys)))
                await db.commit()
                return len(keys)
        except Exception:
            logger.exception("Link cache sweep failed")
            return 0

    async def stats(self) -> Dict[str, int]:
        try:
            async with self.session_maker() as db:
                result = await db.execute(select(LinkCacheEntry.status, LinkCacheEntry.hit_count))
                rows = result.all()
        except Exception:
            logger.exception("Link cache stats failed")
            rows = []
        valid = sum(1 for status, _ in rows if status == CACHE_VALID)
        return {
            "total_entries": len(rows),
            "valid_entries": valid,
            "expired_entries": len(rows) - valid,
            "total_hits": sum(int(hits or 0) for _, hits in rows),
        }
