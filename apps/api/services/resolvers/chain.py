"""Routing function that walks one link through the resolver stages."""

from __future__ import annotations

import logging
from typing import Optional

from config import settings
from services.resolvers import solvers
from services.resolvers.fetch import Fetcher
from services.resolvers.hosts import (
    is_cdn_host,
    is_drive_host,
    is_fast_bypass_host,
    is_listing_host,
    is_sequenced_host,
    is_terminal_host,
)
from services.resolvers.types import (
    NO_SOLVER_MATCHED,
    ChainResult,
    LogFn,
    ResolverFailure,
    TerminalSuccess,
)

logger = logging.getLogger(__name__)


def _noop_log(msg: str, kind: str = "info") -> None:
    return None


class ResolverChain:
    """Fixed decision tree evaluated on the current URL after every hop."""

    def __init__(
        self,
        fetcher: Fetcher,
        *,
        timer_bypass_url: str,
        cdn_bypass_url: str,
        max_sequenced_hops: int = 3,
    ) -> None:
        self.fetcher = fetcher
        self.timer_bypass_url = timer_bypass_url
        self.cdn_bypass_url = cdn_bypass_url
        self.max_sequenced_hops = max(int(max_sequenced_hops), 0)

    @classmethod
    def from_settings(cls, fetcher: Fetcher) -> "ResolverChain":
        return cls(
            fetcher,
            timer_bypass_url=settings.TIMER_BYPASS_URL,
            cdn_bypass_url=settings.CDN_BYPASS_URL,
            max_sequenced_hops=settings.MAX_SEQUENCED_HOPS,
        )

    async def resolve(self, url: str, log: Optional[LogFn] = None) -> ChainResult:
        log = log or _noop_log
        current = str(url or "").strip()

        if is_fast_bypass_host(current):
            log("Fast-bypass host detected, direct solve", "info")
            return await solvers.solve_fast_bypass(self.fetcher, current)

        hops = 0
        while is_sequenced_host(current) and hops < self.max_sequenced_hops:
            log(f"Timer bypass (hop {hops + 1})", "info")
            hop = await solvers.bypass_sequenced_hop(self.fetcher, current, self.timer_bypass_url)
            if isinstance(hop, ResolverFailure):
                log(f"Timer bypass failed: {hop.message}", "error")
                break
            current = hop.url
            hops += 1

        if is_listing_host(current):
            log("Listing page solving...", "info")
            listing = await solvers.solve_listing(self.fetcher, current)
            if isinstance(listing, ResolverFailure):
                return listing
            current = listing.url

        if is_drive_host(current):
            log("Drive page solving...", "info")
            drive = await solvers.solve_drive(self.fetcher, current)
            if isinstance(drive, ResolverFailure):
                return drive
            current = drive.url

        if is_cdn_host(current):
            log("CDN bypass solving...", "info")
            terminal = await solvers.solve_cdn(self.fetcher, current, self.cdn_bypass_url)
            if isinstance(terminal, TerminalSuccess):
                log(f"Done: {terminal.final_link}", "success")
            return terminal

        if is_terminal_host(current):
            log(f"Resolved: {current}", "success")
            return TerminalSuccess(final_link=current, resolver="terminal_host")

        logger.debug("No resolver matched %s", current)
        return ResolverFailure(NO_SOLVER_MATCHED, "router")
