"""Drive one link through cache, resolver chain, retry and persistence."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol

from sqlalchemy.ext.asyncio import async_sessionmaker

from config import settings
from services import task_store
from services.link_cache import LinkCache
from services.resolvers import ChainResult, LogFn, ResolverFailure, TerminalSuccess
from services.task_store import LINK_DONE, LINK_ERROR, LINK_PROCESSING, ExtractedLink, log_entry

logger = logging.getLogger(__name__)

EventSink = Callable[[Dict[str, Any]], None]

MAX_CHAIN_ATTEMPTS = 2


class Resolver(Protocol):
    async def resolve(self, url: str, log: Optional[LogFn] = None) -> ChainResult:
        ...


@dataclass(frozen=True)
class LinkOutcome:
    link_id: int
    status: str
    final_link: Optional[str] = None
    error: Optional[str] = None
    from_cache: bool = False


def _emit_terminal(emit: Optional[EventSink], outcome: LinkOutcome, best_button_name: Optional[str] = None) -> None:
    if emit is None:
        return
    if outcome.final_link:
        emit({"id": outcome.link_id, "final": outcome.final_link, "best_button_name": best_button_name})
    emit({"id": outcome.link_id, "status": outcome.status})
    emit({"id": outcome.link_id, "status": "finished"})


class LinkProcessor:
    """Resolve links of one task and persist each outcome by link id."""

    def __init__(
        self,
        session_maker: async_sessionmaker,
        chain: Resolver,
        cache: LinkCache,
        *,
        link_timeout_seconds: Optional[float] = None,
        extracted_by: str = "Server/Auto-Pilot",
    ) -> None:
        self.session_maker = session_maker
        self.chain = chain
        self.cache = cache
        self.link_timeout_seconds = float(link_timeout_seconds or settings.LINK_TIMEOUT_SECONDS)
        self.extracted_by = extracted_by

    async def _run_chain(self, url: str, log: LogFn) -> ChainResult:
        try:
            return await asyncio.wait_for(self.chain.resolve(url, log), timeout=self.link_timeout_seconds)
        except asyncio.TimeoutError:
            return ResolverFailure(f"Timed out after {self.link_timeout_seconds:g}s", "timeout")
        except Exception as exc:
            logger.exception("Resolver chain crashed for %s", url)
            return ResolverFailure(str(exc) or exc.__class__.__name__, "chain")

    async def resolve(self, link: ExtractedLink, task_id: str, emit: Optional[EventSink] = None) -> LinkOutcome:
        stored = await task_store.get_link(self.session_maker, task_id, link.id)
        if stored is None:
            logger.warning("Link %s is not part of task %s; skipping", link.id, task_id)
            outcome = LinkOutcome(link.id, LINK_ERROR, error="Link not found on task")
            if emit is not None:
                emit({"id": link.id, "status": "finished"})
            return outcome
        if stored.is_terminal:
            outcome = LinkOutcome(stored.id, stored.status, final_link=stored.final_link, error=stored.error)
            _emit_terminal(emit, outcome, stored.best_button_name)
            return outcome

        logs: List[Dict[str, str]] = list(stored.logs)

        def log(msg: str, kind: str = "info") -> None:
            logs.append(log_entry(msg, kind))
            if emit is not None:
                emit({"id": stored.id, "msg": msg, "type": kind})

        original_url = stored.url
        await task_store.update_link(
            self.session_maker,
            task_id,
            stored.id,
            status=LINK_PROCESSING,
            logs=logs,
            extracted_by=self.extracted_by,
        )

        cached = await self.cache.lookup(original_url)
        if cached is not None:
            log("Cache hit, resolved without running the chain", "success")
            await task_store.update_link(
                self.session_maker,
                task_id,
                stored.id,
                status=LINK_DONE,
                final_link=cached.final_link,
                best_button_name=cached.best_button_name,
                buttons=cached.buttons,
                logs=logs,
                resolver="cache",
                extracted_by=self.extracted_by,
            )
            outcome = LinkOutcome(stored.id, LINK_DONE, final_link=cached.final_link, from_cache=True)
            _emit_terminal(emit, outcome, cached.best_button_name)
            return outcome

        result: ChainResult = ResolverFailure("Resolver chain was not run", "router")
        for attempt in range(1, MAX_CHAIN_ATTEMPTS + 1):
            result = await self._run_chain(original_url, log)
            if isinstance(result, TerminalSuccess):
                break
            log(f"Attempt {attempt}/{MAX_CHAIN_ATTEMPTS} failed: {result.message}", "error")
            if attempt < MAX_CHAIN_ATTEMPTS:
                log(f"Auto-retrying (attempt {attempt + 1}/{MAX_CHAIN_ATTEMPTS})...", "warn")

        if isinstance(result, TerminalSuccess):
            await task_store.update_link(
                self.session_maker,
                task_id,
                stored.id,
                status=LINK_DONE,
                final_link=result.final_link,
                best_button_name=result.best_button_name,
                buttons=result.buttons_payload(),
                logs=logs,
                resolver=result.resolver,
                extracted_by=self.extracted_by,
            )
            await self.cache.store(
                original_url,
                result.final_link,
                result.resolver,
                best_button_name=result.best_button_name,
                buttons=result.buttons_payload(),
            )
            outcome = LinkOutcome(stored.id, LINK_DONE, final_link=result.final_link)
            _emit_terminal(emit, outcome, result.best_button_name)
            return outcome

        await task_store.update_link(
            self.session_maker,
            task_id,
            stored.id,
            status=LINK_ERROR,
            error=result.message,
            logs=logs,
            resolver=result.resolver,
            extracted_by=self.extracted_by,
        )
        outcome = LinkOutcome(stored.id, LINK_ERROR, error=result.message)
        _emit_terminal(emit, outcome)
        return outcome

