import httpx
import pytest

from services.discovery import (
    DiscoveryError,
    PageLinkDiscoverer,
    extract_links,
    extract_metadata,
    extract_preview,
    is_junk_domain,
    is_junk_text,
)
from services.resolvers import Fetcher


PAGE_URL = "https://movies.example/some-movie/"

PAGE_HTML = """
<html>
  <head>
    <title>Some Movie (2024) - Download Free</title>
    <meta property="og:image" content="https://img.example/poster.jpg">
  </head>
  <body>
    <div class="entry-content">
      <h1 class="entry-title">Some Movie (2024) - HDHub Download</h1>
      <h3>Hindi English 1080p</h3>
      <p><a href="https://hubcloud.foo/drive/1">1080p Download</a></p>
      <p><a href="https://hubcloud.foo/drive/1">1080p Mirror</a></p>
      <p><a href="/go/hubdrive/2">⚡ 720p ⚡</a></p>
      <p><a href="https://gadgetsweb.xyz/?id=9">480p GDrive</a></p>
      <p><a href="https://t.me/channel">Join Telegram</a></p>
      <p><a href="https://www.imdb.com/title/tt1">IMDb 1080p</a></p>
      <p><a href="https://other.example/about">About us</a></p>
      <p><a href="javascript:void(0)">Direct</a></p>
    </div>
  </body>
</html>
"""


def test_extract_links_filters_and_dedupes():
    links = extract_links(PAGE_HTML, PAGE_URL)

    assert links == [
        {"name": "1080p Download", "url": "https://hubcloud.foo/drive/1"},
        {"name": "720p", "url": "https://movies.example/go/hubdrive/2"},
        {"name": "480p GDrive", "url": "https://gadgetsweb.xyz/?id=9"},
    ]


def test_junk_filters():
    assert is_junk_text("How to Download")
    assert is_junk_text("4K")
    assert not is_junk_text("4K HEVC 2160p")
    assert is_junk_domain("https://i0.wp.com/wp-content/uploads/a.jpg")
    assert not is_junk_domain("https://hubcloud.foo/drive/1")


def test_preview_and_metadata():
    preview = extract_preview(PAGE_HTML)
    metadata = extract_metadata(PAGE_HTML)

    assert preview == {"title": "Some Movie (2024)", "poster_url": "https://img.example/poster.jpg"}
    assert metadata["quality"] == "1080P"
    assert metadata["languages"] == "Hindi, English"
    assert metadata["audio_label"] == "Dual Audio"


@pytest.mark.asyncio
async def test_page_discoverer_returns_links_metadata_and_preview():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text=PAGE_HTML)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        result = await PageLinkDiscoverer(Fetcher(client=client)).discover(PAGE_URL)

    assert len(result.links) == 3
    assert result.preview["title"] == "Some Movie (2024)"
    assert result.metadata["audio_label"] == "Dual Audio"


@pytest.mark.asyncio
async def test_page_discoverer_raises_when_nothing_is_found():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/missing":
            return httpx.Response(404)
        return httpx.Response(200, text="<html><body><p>Nothing here</p></body></html>")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        discoverer = PageLinkDiscoverer(Fetcher(client=client))
        with pytest.raises(DiscoveryError, match="No download links found"):
            await discoverer.discover("https://movies.example/empty")
        with pytest.raises(DiscoveryError, match="Page fetch failed"):
            await discoverer.discover("https://movies.example/missing")
