"""Host-family catalogue used to route links through the resolver chain."""

from __future__ import annotations

from typing import Iterable, Literal
from urllib.parse import urlsplit


RoutingClass = Literal["sequenced", "parallel"]

FAST_BYPASS_HOSTS = ("hubcdn.fans",)

# Timer/shortener pages that reject concurrent load from one client.
SEQUENCED_BYPASS_HOSTS = (
    "gadgetsweb",
    "review-tech",
    "ngwin",
    "cryptoinsights",
    "techbigs",
    "apkdone",
    "linkvertise",
    "shrinkme",
    "shorte",
    "ouo.io",
    "ouo.press",
    "rocklinks",
    "adlinkfly",
)

LISTING_HOSTS = ("hblinks",)
DRIVE_HOSTS = ("hubdrive",)
CDN_HOSTS = ("hubcloud", "hubcdn")
TERMINAL_HOSTS = ("gdflix", "drivehub")

# Listing pages link to several mirrors; earlier TLDs are preferred.
CDN_TLD_PRIORITY = (".foo", ".fans", ".dev", ".cloud", ".icu", ".lol", ".art", ".in", ".store")
DRIVE_TLD_PRIORITY = (".space", ".pro", ".in")


def host_of(url: str) -> str:
    """Lower-cased hostname of ``url``; the raw string when it has none."""
    raw = str(url or "").strip().lower()
    try:
        hostname = urlsplit(raw).hostname
    except ValueError:
        hostname = None
    return hostname or raw


def _matches(url: str, families: Iterable[str]) -> bool:
    host = host_of(url)
    return any(family in host for family in families)


def is_fast_bypass_host(url: str) -> bool:
    return _matches(url, FAST_BYPASS_HOSTS)


def is_sequenced_host(url: str) -> bool:
    return _matches(url, SEQUENCED_BYPASS_HOSTS)


def is_listing_host(url: str) -> bool:
    return _matches(url, LISTING_HOSTS)


def is_drive_host(url: str) -> bool:
    return _matches(url, DRIVE_HOSTS)


def is_cdn_host(url: str) -> bool:
    return _matches(url, CDN_HOSTS)


def is_terminal_host(url: str) -> bool:
    return _matches(url, TERMINAL_HOSTS)


def routing_class(url: str) -> RoutingClass:
    """Sequenced links are resolved one at a time; everything else may run concurrently."""
    return "sequenced" if is_sequenced_host(url) else "parallel"
