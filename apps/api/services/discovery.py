"""Candidate-link discovery on a media page.

The engine only relies on the ``LinkDiscoverer`` protocol; ``PageLinkDiscoverer``
is the default implementation that scrapes anchors off the page.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol
from urllib.parse import urljoin, urlsplit

import httpx
from bs4 import BeautifulSoup, Tag

from services.resolvers.fetch import MOBILE_HEADERS, Fetcher

logger = logging.getLogger(__name__)

TARGET_HOST_HINTS = ("hblinks", "hubdrive", "hubcdn", "hubcloud", "gdflix", "drivehub")
DOWNLOAD_KEYWORDS = ("DOWNLOAD", "720P", "480P", "1080P", "4K", "DIRECT", "GDRIVE")

JUNK_DOMAINS = (
    "catimages",
    "imdb.com",
    "googleusercontent",
    "instagram.com",
    "facebook.com",
    "wp-content",
    "wpshopmart",
)
JUNK_LINK_TEXTS = (
    "how to download",
    "how to watch",
    "join telegram",
    "join our telegram",
    "request movie",
    "4k | sdr | hevc",
    "4k | sdr",
    "sdr | hevc",
)
JUNK_LINK_EXACT_TEXTS = ("4k", "sdr", "hevc", "download", "watch", "click here", "link")

VALID_LANGUAGES = (
    "Hindi",
    "English",
    "Tamil",
    "Telugu",
    "Malayalam",
    "Kannada",
    "Punjabi",
    "Marathi",
    "Bengali",
    "Spanish",
    "French",
    "Korean",
    "Japanese",
    "Chinese",
)

MAX_LINK_NAME_LENGTH = 50
DEFAULT_LINK_NAME = "Download Link"

_EMOJI_PATTERN = re.compile("[\U0001F000-\U0001FAFF\u2600-\u27BF\uFE0F]")
_RESOLUTION_PATTERN = re.compile(r"\b(2160p|4k|1080p|720p|480p)\b", re.IGNORECASE)
_TITLE_SUFFIX_PATTERN = re.compile(
    r"\s*[-–|].*?(HDHub|Download|Free|Watch|Online).*$",
    re.IGNORECASE,
)


class DiscoveryError(RuntimeError):
    """Raised when a page yields no usable candidate links."""


@dataclass(frozen=True)
class DiscoveryResult:
    links: List[Dict[str, str]]
    metadata: Optional[Dict[str, Any]] = None
    preview: Optional[Dict[str, Any]] = None


class LinkDiscoverer(Protocol):
    async def discover(self, page_url: str) -> DiscoveryResult:
        ...


def is_junk_text(text: str) -> bool:
    lowered = str(text or "").strip().lower()
    if any(junk in lowered for junk in JUNK_LINK_TEXTS):
        return True
    return lowered in JUNK_LINK_EXACT_TEXTS


def is_junk_domain(url: str) -> bool:
    lowered = str(url or "").lower()
    return any(domain in lowered for domain in JUNK_DOMAINS)


def _absolute_url(raw: str, page_url: str) -> Optional[str]:
    if not raw or raw.startswith("#") or raw.lower().startswith(("javascript:", "mailto:", "tel:")):
        return None
    try:
        resolved = urljoin(page_url, raw)
        parts = urlsplit(resolved)
    except ValueError:
        return None
    if parts.scheme not in ("http", "https") or not parts.netloc:
        return None
    return resolved


def _clean_name(text: str) -> str:
    return _EMOJI_PATTERN.sub("", text or "").strip()


def _fallback_name(element: Tag) -> str:
    container = element.find_parent(["p", "div", "h3", "h4", "li"])
    if container is None:
        return ""
    heading = container.find_previous_sibling(["h3", "h4", "h5", "strong"])
    if heading is not None:
        return _clean_name(heading.get_text(" ", strip=True))
    own_text = "".join(str(child) for child in container.find_all(string=True, recursive=False))
    return _clean_name(own_text)


def _candidate_elements(soup: BeautifulSoup) -> List[Tag]:
    scopes = soup.select(".entry-content, main, .post-content") or [soup]
    elements: List[Tag] = []
    seen_ids = set()
    for scope in scopes:
        for anchor in scope.find_all("a"):
            if id(anchor) not in seen_ids:
                seen_ids.add(id(anchor))
                elements.append(anchor)
        for button in scope.select(".btn, .button"):
            if button.name == "a":
                continue
            inner = button.find("a")
            target = inner if inner is not None else button
            if id(target) not in seen_ids:
                seen_ids.add(id(target))
                elements.append(target)
    return elements


def extract_links(html: str, page_url: str) -> List[Dict[str, str]]:
    """Return de-duplicated ``{name, url}`` rows with absolute URLs."""
    soup = BeautifulSoup(html, "html.parser")
    links: List[Dict[str, str]] = []
    seen_urls = set()

    for element in _candidate_elements(soup):
        raw = str(element.get("href") or "").strip() or str(element.get("data-href") or "").strip()
        resolved = _absolute_url(raw, page_url)
        if resolved is None or is_junk_domain(resolved):
            continue

        text = element.get_text(" ", strip=True)
        if is_junk_text(text):
            continue
        container = element.find_parent(["p", "div", "h3", "h4", "li"])
        if container is not None and is_junk_text(container.get_text(" ", strip=True)):
            continue

        on_target_host = any(hint in resolved.lower() for hint in TARGET_HOST_HINTS)
        has_keyword = any(keyword in text.upper() for keyword in DOWNLOAD_KEYWORDS)
        if not on_target_host and not has_keyword:
            continue
        if resolved in seen_urls:
            continue
        seen_urls.add(resolved)

        name = _clean_name(text)
        if len(name) < 2:
            name = _fallback_name(element)
        name = name[:MAX_LINK_NAME_LENGTH].strip()
        if is_junk_text(name):
            continue
        if len(name) < 2:
            name = DEFAULT_LINK_NAME
        links.append({"name": name, "url": resolved})

    return links


def extract_preview(html: str) -> Dict[str, Any]:
    soup = BeautifulSoup(html, "html.parser")
    title = ""
    heading = soup.select_one("h1.entry-title, h1.post-title, h1")
    if heading is not None:
        title = heading.get_text(" ", strip=True)
    if not title:
        og_title = soup.select_one('meta[property="og:title"]')
        title = str(og_title.get("content") or "") if og_title is not None else ""
    if not title and soup.title is not None:
        title = soup.title.get_text(strip=True)
    title = _TITLE_SUFFIX_PATTERN.sub("", title).strip() or "Unknown Movie"

    poster_url = None
    og_image = soup.select_one('meta[property="og:image"]')
    image = str(og_image.get("content") or "") if og_image is not None else ""
    if image and "logo" not in image.lower() and "favicon" not in image.lower():
        poster_url = image
    else:
        content_img = soup.select_one(".entry-content img, .post-content img, main img")
        src = str(content_img.get("src") or "") if content_img is not None else ""
        if src and "logo" not in src.lower() and "icon" not in src.lower():
            poster_url = src
    return {"title": title, "poster_url": poster_url}


def extract_metadata(html: str) -> Dict[str, Any]:
    """Best-effort quality and language summary taken from page headings."""
    soup = BeautifulSoup(html, "html.parser")
    text = " ".join(node.get_text(" ", strip=True) for node in soup.select("h2, h3, h4, strong, a"))
    languages = [language for language in VALID_LANGUAGES if re.search(rf"\b{language}\b", text, re.IGNORECASE)]
    resolutions = [match.lower() for match in _RESOLUTION_PATTERN.findall(text)]
    order = ("480p", "720p", "1080p", "4k", "2160p")
    best = max(resolutions, key=order.index) if resolutions else None
    return {
        "quality": best.upper() if best else None,
        "languages": ", ".join(languages) if languages else None,
        "audio_label": "Multi Audio" if len(languages) > 2 else ("Dual Audio" if len(languages) == 2 else None),
    }


class PageLinkDiscoverer:
    """Fetch a page through the retrying fetcher and scrape its download links."""

    def __init__(self, fetcher: Fetcher) -> None:
        self.fetcher = fetcher

    async def discover(self, page_url: str) -> DiscoveryResult:
        try:
            response = await self.fetcher.get(page_url, headers=MOBILE_HEADERS)
        except httpx.HTTPError as exc:
            raise DiscoveryError(f"Page fetch failed: {exc}") from exc

        html = response.text
        links = extract_links(html, str(response.url or page_url))
        if not links:
            raise DiscoveryError("No download links found. Page structure may have changed.")
        logger.info("Discovered %s candidate links on %s", len(links), page_url)
        return DiscoveryResult(links=links, metadata=extract_metadata(html), preview=extract_preview(html))
