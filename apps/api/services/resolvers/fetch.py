"""Outbound page fetches with transient-error retry."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, FrozenSet, Optional

import httpx

from config import settings

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]

BROWSER_HEADERS: Dict[str, str] = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/125.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Upgrade-Insecure-Requests": "1",
    "Cache-Control": "max-age=0",
}

MOBILE_HEADERS: Dict[str, str] = {
    "User-Agent": (
        "Mozilla/5.0 (Linux; Android 14; SM-S928B) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/125.0.0.0 Mobile Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Upgrade-Insecure-Requests": "1",
}


def build_http_client(timeout_seconds: Optional[float] = None) -> httpx.AsyncClient:
    """Shared client for resolver hops; redirects are followed transparently."""
    timeout = float(timeout_seconds or settings.FETCH_TIMEOUT_SECONDS)
    return httpx.AsyncClient(timeout=timeout, follow_redirects=True, headers=BROWSER_HEADERS)


async def fetch_with_retry(
    client: httpx.AsyncClient,
    url: str,
    *,
    headers: Optional[Dict[str, str]] = None,
    params: Optional[Dict[str, str]] = None,
    max_retries: int = 2,
    backoff_seconds: float = 2.0,
    retry_statuses: FrozenSet[int] = frozenset({522, 502, 503, 504}),
    sleep: SleepFn = asyncio.sleep,
) -> httpx.Response:
    """GET ``url``, retrying only gateway-class statuses with linear backoff.

    Any other failure (4xx, other 5xx, connection errors, timeouts) raises on
    the first attempt. After ``max_retries`` extra attempts the last response
    raises ``httpx.HTTPStatusError``.
    """
    attempt = 0
    while True:
        response = await client.get(url, headers=headers, params=params)
        if response.status_code in retry_statuses and attempt < max_retries:
            wait_seconds = backoff_seconds * (attempt + 1)
            logger.info(
                "Transient HTTP %s from %s; retrying in %.1fs (attempt %s/%s)",
                response.status_code,
                url,
                wait_seconds,
                attempt + 1,
                max_retries,
            )
            attempt += 1
            await sleep(wait_seconds)
            continue
        response.raise_for_status()
        return response


@dataclass
class Fetcher:
    """HTTP client bound to the retry policy every resolver hop must use."""

    client: httpx.AsyncClient
    max_retries: int = 2
    backoff_seconds: float = 2.0
    retry_statuses: FrozenSet[int] = frozenset({522, 502, 503, 504})
    sleep: SleepFn = field(default=asyncio.sleep)

    @classmethod
    def from_settings(cls, client: httpx.AsyncClient, sleep: SleepFn = asyncio.sleep) -> "Fetcher":
        return cls(
            client=client,
            max_retries=max(int(settings.FETCH_MAX_RETRIES), 0),
            backoff_seconds=float(settings.FETCH_BACKOFF_SECONDS),
            retry_statuses=frozenset(int(code) for code in settings.FETCH_RETRY_STATUSES),
            sleep=sleep,
        )

    async def get(
        self,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        return await fetch_with_retry(
            self.client,
            url,
            headers=headers,
            params=params,
            max_retries=self.max_retries,
            backoff_seconds=self.backoff_seconds,
            retry_statuses=self.retry_statuses,
            sleep=self.sleep,
        )

    async def get_json(self, url: str, *, params: Optional[Dict[str, str]] = None) -> Dict:
        response = await self.get(
            url,
            headers={"User-Agent": settings.BYPASS_USER_AGENT, "Accept": "application/json"},
            params=params,
        )
        payload = response.json()
        if not isinstance(payload, dict):
            raise ValueError("Bypass service returned a non-object payload")
        return payload
