import asyncio
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base
from main import app
from routers import rate_limit
from services.link_cache import LinkCache
from services.link_processor import LinkProcessor
from services.orchestrator import EngineParts
from services.resolvers import ResolverFailure, TerminalSuccess
from services.resolvers.hosts import is_sequenced_host


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'resolver.db'}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield maker
    await engine.dispose()


class FakeChain:
    """Resolver chain double that records calls and overlap per routing class."""

    def __init__(self, outcomes: Optional[Dict[str, object]] = None, delay: float = 0.0, on_call=None):
        self.outcomes = dict(outcomes or {})
        self.delay = delay
        self.on_call = on_call
        self.calls: List[str] = []
        self.active_sequenced = 0
        self.max_active_sequenced = 0
        self.active_parallel = 0
        self.max_active_parallel = 0

    async def resolve(self, url, log=None):
        self.calls.append(url)
        sequenced = is_sequenced_host(url)
        if sequenced:
            self.active_sequenced += 1
            self.max_active_sequenced = max(self.max_active_sequenced, self.active_sequenced)
        else:
            self.active_parallel += 1
            self.max_active_parallel = max(self.max_active_parallel, self.active_parallel)
        try:
            if self.on_call is not None:
                self.on_call(url)
            if self.delay:
                await asyncio.sleep(self.delay)
            if log is not None:
                log(f"fake resolve {url}", "info")
            outcome = self.outcomes.get(url)
            if isinstance(outcome, list):
                outcome = outcome.pop(0)
            if outcome is None:
                outcome = TerminalSuccess(final_link=f"{url}/final", resolver="fake")
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        finally:
            if sequenced:
                self.active_sequenced -= 1
            else:
                self.active_parallel -= 1


class FakeDiscoverer:
    def __init__(self, result=None, error: Optional[Exception] = None):
        self.result = result
        self.error = error
        self.calls: List[str] = []

    async def discover(self, page_url):
        self.calls.append(page_url)
        if self.error is not None:
            raise self.error
        return self.result


def failure(message: str = "boom") -> ResolverFailure:
    return ResolverFailure(message, "fake")


def make_processor(session_maker, chain, *, link_timeout_seconds: float = 5.0) -> LinkProcessor:
    return LinkProcessor(
        session_maker,
        chain,
        LinkCache(session_maker),
        link_timeout_seconds=link_timeout_seconds,
    )


def engine_opener(processor: LinkProcessor, discoverer):
    @asynccontextmanager
    async def _open(session_maker, extracted_by: str = "Server/Auto-Pilot"):
        yield EngineParts(processor=processor, discoverer=discoverer, cache=processor.cache)

    return _open


def processor_opener(processor: LinkProcessor):
    @asynccontextmanager
    async def _open(session_maker):
        yield processor

    return _open
