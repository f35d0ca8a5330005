"""Batch orchestrator: one queue item per invocation under a time budget."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from typing import Any, AsyncIterator, Callable, Collection, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.ext.asyncio import async_sessionmaker

from config import settings
from database import async_session_maker
from services import task_store, work_queue
from services.discovery import DiscoveryError, LinkDiscoverer, PageLinkDiscoverer
from services.heartbeat import HEARTBEAT_ERROR, HEARTBEAT_IDLE, HEARTBEAT_RUNNING, write_heartbeat
from services.link_cache import LinkCache
from services.link_processor import EventSink, LinkOutcome, LinkProcessor
from services.recovery import run_recovery
from services.resolvers import Fetcher, ResolverChain, build_http_client, routing_class
from services.task_store import LINK_DONE, LINK_ERROR, ExtractedLink

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

STATE_IDLE = "idle"
STATE_CLAIMED = "claimed"
STATE_ROUTING = "routing"
STATE_DRAINING = "draining"
STATE_TERMINAL = "terminal"

DEFERRED_MESSAGE = "Deferred: run time budget reached, will resume on the next run"


@dataclass
class DriveReport:
    outcomes: List[LinkOutcome] = field(default_factory=list)
    deferred: List[int] = field(default_factory=list)
    sequenced_count: int = 0
    parallel_count: int = 0

    @property
    def done(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == LINK_DONE)

    @property
    def errors(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status != LINK_DONE)

    def all_done(self, expected: int) -> bool:
        return not self.deferred and len(self.outcomes) == expected and self.errors == 0


@dataclass
class RunSummary:
    status: str = STATE_IDLE
    claimed: bool = False
    recovered: int = 0
    requeued: int = 0
    done: int = 0
    errors: int = 0
    deferred: int = 0
    queue_item_id: Optional[str] = None
    task_id: Optional[str] = None
    queue_status: Optional[str] = None
    cache_swept: int = 0
    elapsed_seconds: float = 0.0
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def partition_links(links: Sequence[ExtractedLink]) -> Tuple[List[ExtractedLink], List[ExtractedLink]]:
    """Split into (sequenced, parallel), keeping discovery order within each class."""
    sequenced = [link for link in links if routing_class(link.url) == "sequenced"]
    parallel = [link for link in links if routing_class(link.url) != "sequenced"]
    return sequenced, parallel


async def drive_links(
    processor: LinkProcessor,
    task_id: str,
    links: Sequence[ExtractedLink],
    *,
    budget_seconds: float,
    started_at: float,
    clock: Clock = time.monotonic,
    emit: Optional[EventSink] = None,
) -> DriveReport:
    """Resolve ``links`` of one task: parallel class concurrently, sequenced class one at a time.

    The time budget is checked before each sequenced link starts; once it is
    spent the remaining sequenced links are written back as ``pending``.
    """
    sequenced, parallel = partition_links(links)
    report = DriveReport(sequenced_count=len(sequenced), parallel_count=len(parallel))

    async def _safe_resolve(link: ExtractedLink) -> LinkOutcome:
        try:
            return await processor.resolve(link, task_id, emit=emit)
        except Exception as exc:
            logger.exception("Link %s of task %s crashed", link.id, task_id)
            if emit is not None:
                emit({"id": link.id, "status": LINK_ERROR})
                emit({"id": link.id, "status": "finished"})
            return LinkOutcome(link.id, LINK_ERROR, error=str(exc) or exc.__class__.__name__)

    async def _run_parallel() -> List[LinkOutcome]:
        if not parallel:
            return []
        return list(await asyncio.gather(*(_safe_resolve(link) for link in parallel)))

    async def _run_sequenced() -> Tuple[List[LinkOutcome], List[int]]:
        outcomes: List[LinkOutcome] = []
        for index, link in enumerate(sequenced):
            if clock() - started_at > budget_seconds:
                remaining = sequenced[index:]
                logger.info(
                    "Time budget of %.0fs spent on task %s; deferring %s sequenced links",
                    budget_seconds,
                    task_id,
                    len(remaining),
                )
                deferred = await task_store.defer_links(
                    processor.session_maker,
                    task_id,
                    [pending.id for pending in remaining],
                    DEFERRED_MESSAGE,
                )
                if emit is not None:
                    for pending in remaining:
                        emit({"id": pending.id, "msg": DEFERRED_MESSAGE, "type": "warn"})
                        emit({"id": pending.id, "status": "finished"})
                return outcomes, deferred
            outcomes.append(await _safe_resolve(link))
        return outcomes, []

    parallel_outcomes, (sequenced_outcomes, deferred) = await asyncio.gather(_run_parallel(), _run_sequenced())
    report.outcomes = parallel_outcomes + sequenced_outcomes
    report.deferred = deferred
    return report


@dataclass
class EngineParts:
    processor: LinkProcessor
    discoverer: LinkDiscoverer
    cache: LinkCache


@asynccontextmanager
async def open_engine_parts(
    session_maker: async_sessionmaker,
    *,
    extracted_by: str = "Server/Auto-Pilot",
) -> AsyncIterator[EngineParts]:
    """Processor and discoverer sharing one outbound HTTP client."""
    async with build_http_client() as client:
        fetcher = Fetcher.from_settings(client)
        cache = LinkCache(session_maker)
        processor = LinkProcessor(
            session_maker,
            ResolverChain.from_settings(fetcher),
            cache,
            extracted_by=extracted_by,
        )
        yield EngineParts(processor=processor, discoverer=PageLinkDiscoverer(fetcher), cache=cache)


class BatchOrchestrator:
    """Runs exactly one queue item per ``run_once`` call."""

    def __init__(
        self,
        session_maker: async_sessionmaker,
        processor: LinkProcessor,
        discoverer: LinkDiscoverer,
        cache: Optional[LinkCache] = None,
        *,
        budget_seconds: Optional[float] = None,
        clock: Clock = time.monotonic,
        source: str = "cron",
        active_task_ids: Callable[[], Collection[str]] = tuple,
    ) -> None:
        self.session_maker = session_maker
        self.processor = processor
        self.discoverer = discoverer
        self.cache = cache or processor.cache
        self.budget_seconds = float(budget_seconds or settings.RUN_TIME_BUDGET_SECONDS)
        self.clock = clock
        self.source = source
        self.active_task_ids = active_task_ids
        self.state = STATE_IDLE

    def _transition(self, state: str) -> None:
        logger.debug("Orchestrator %s -> %s", self.state, state)
        self.state = state

    async def _recover(self, summary: RunSummary) -> None:
        try:
            report = await run_recovery(self.session_maker, skip_task_ids=self.active_task_ids())
        except Exception:
            logger.exception("Stuck-work recovery failed; continuing with the run")
            return
        summary.recovered = report.total
        summary.requeued = report.failed_requeued

    async def _sweep_cache(self, summary: RunSummary) -> None:
        try:
            summary.cache_swept = await self.cache.sweep_expired()
        except Exception:
            logger.exception("Cache sweep failed")

    async def run_once(self) -> RunSummary:
        started_at = self.clock()
        summary = RunSummary()
        self.state = STATE_IDLE
        await write_heartbeat(self.session_maker, HEARTBEAT_RUNNING, "Processing queue...", source=self.source)
        final_heartbeat = (HEARTBEAT_IDLE, "Queue empty")
        try:
            await self._recover(summary)
            await self._sweep_cache(summary)

            item = await work_queue.claim_next_item(self.session_maker)
            if item is None:
                summary.status = STATE_IDLE
                summary.message = "No pending items"
                return summary

            self._transition(STATE_CLAIMED)
            summary.claimed = True
            summary.queue_item_id = item.id
            logger.info("Claimed queue item %s (%s)", item.id, item.url)

            self._transition(STATE_ROUTING)
            try:
                discovery = await self.discoverer.discover(item.url)
            except DiscoveryError as exc:
                failed = await work_queue.fail_item(self.session_maker, item.id, f"Extraction failed: {exc}")
                summary.status = "failed"
                summary.queue_status = failed.status if failed is not None else None
                summary.message = str(exc)
                final_heartbeat = (HEARTBEAT_ERROR, f"Extraction failed for {item.url}: {exc}")
                self._transition(STATE_TERMINAL)
                return summary

            task = None
            if item.task_id:
                task, appended = await task_store.merge_discovered_links(
                    self.session_maker,
                    item.task_id,
                    discovery.links,
                    metadata=discovery.metadata,
                    preview=discovery.preview,
                )
                if task is not None:
                    logger.info("Resuming task %s with %s new links", task.id, appended)
            if task is None:
                task = await task_store.create_task(
                    self.session_maker,
                    url=item.url,
                    discovered=discovery.links,
                    metadata=discovery.metadata,
                    preview=discovery.preview,
                    extracted_by=self.processor.extracted_by,
                )
            summary.task_id = task.id
            await work_queue.attach_task(self.session_maker, item.id, task.id)

            task = await task_store.mark_task_processing(
                self.session_maker, task.id, extracted_by=self.processor.extracted_by
            )
            pending = task_store.pending_links(task) if task is not None else []

            self._transition(STATE_DRAINING)
            report = await drive_links(
                self.processor,
                summary.task_id,
                pending,
                budget_seconds=self.budget_seconds,
                started_at=started_at,
                clock=self.clock,
            )
            summary.done = report.done
            summary.errors = report.errors
            summary.deferred = len(report.deferred)

            self._transition(STATE_TERMINAL)
            if report.all_done(len(pending)):
                await work_queue.complete_item(self.session_maker, item.id, summary.task_id)
                summary.status = "completed"
                summary.queue_status = work_queue.QUEUE_COMPLETED
            else:
                reason = (
                    f"{report.errors} of {len(pending)} links failed, "
                    f"{len(report.deferred)} deferred"
                )
                failed = await work_queue.fail_item(self.session_maker, item.id, reason)
                summary.status = "failed"
                summary.queue_status = failed.status if failed is not None else None
                summary.message = reason
            final_heartbeat = (
                HEARTBEAT_IDLE,
                f"Processed {item.url}: {summary.done} done, {summary.errors} failed, {summary.deferred} deferred",
            )
            return summary
        except Exception as exc:
            logger.exception("Orchestrator run crashed")
            summary.status = "error"
            summary.message = str(exc) or exc.__class__.__name__
            final_heartbeat = (HEARTBEAT_ERROR, f"Run failed: {summary.message}")
            return summary
        finally:
            summary.elapsed_seconds = round(self.clock() - started_at, 3)
            await write_heartbeat(self.session_maker, final_heartbeat[0], final_heartbeat[1], source=self.source)


async def process_task_solve_job_async(
    task_id: str,
    *,
    session_maker: Optional[async_sessionmaker] = None,
    processor: Optional[LinkProcessor] = None,
    budget_seconds: Optional[float] = None,
) -> Dict[str, Any]:
    """Drive every unfinished link of an existing task without a live stream."""
    session_maker = session_maker or async_session_maker
    task = await task_store.mark_task_processing(session_maker, task_id, extracted_by="Server/Background")
    if task is None:
        raise ValueError(f"Task {task_id} not found")
    pending = task_store.pending_links(task)
    budget = float(budget_seconds or settings.STREAM_TIME_BUDGET_SECONDS)

    async def _drive(active: LinkProcessor) -> DriveReport:
        return await drive_links(active, task_id, pending, budget_seconds=budget, started_at=time.monotonic())

    if processor is not None:
        report = await _drive(processor)
    else:
        async with open_engine_parts(session_maker, extracted_by="Server/Background") as parts:
            report = await _drive(parts.processor)
    return {"task_id": task_id, "done": report.done, "errors": report.errors, "deferred": len(report.deferred)}


def process_task_solve_job(task_id: str) -> Dict[str, Any]:
    """RQ worker entrypoint for background task solving."""
    return asyncio.run(process_task_solve_job_async(task_id))
