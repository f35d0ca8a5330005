"""Consumer-side reconciliation of live stream events with polled task snapshots.

Precedence, highest first:

1. a terminal result seen on the stream, kept for a grace period after the
   stream for that task ends;
2. the live status of a link that is currently streaming;
3. the polled snapshot.

A polled status never replaces a higher tier, terminal or not: a poll issued
before a link finished can still carry the previous cycle's result.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from config import settings
from services.task_store import LINK_PROCESSING, LINK_TERMINAL_STATUSES


@dataclass
class _ShieldedResult:
    status: str
    final_link: Optional[str] = None
    best_button_name: Optional[str] = None


@dataclass
class _TaskView:
    live: Dict[int, str] = field(default_factory=dict)
    shielded: Dict[int, _ShieldedResult] = field(default_factory=dict)
    finals: Dict[int, Dict[str, Any]] = field(default_factory=dict)
    streaming: bool = True
    ended_at: Optional[float] = None


class LinkStateOverlay:
    def __init__(
        self,
        grace_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.grace_seconds = float(settings.CONSISTENCY_GRACE_SECONDS if grace_seconds is None else grace_seconds)
        self.clock = clock
        self._views: Dict[str, _TaskView] = {}

    def _view(self, task_id: str) -> _TaskView:
        view = self._views.get(task_id)
        if view is None or (not view.streaming and self._expired(view)):
            view = _TaskView()
            self._views[task_id] = view
        return view

    def _expired(self, view: _TaskView) -> bool:
        return view.ended_at is not None and self.clock() - view.ended_at > self.grace_seconds

    def observe(self, task_id: str, event: Dict[str, Any]) -> None:
        """Record one decoded stream event for ``task_id``."""
        if "id" not in event:
            return
        view = self._view(task_id)
        view.streaming = True
        view.ended_at = None
        link_id = int(event["id"])

        if event.get("final"):
            view.finals[link_id] = {
                "final_link": event["final"],
                "best_button_name": event.get("best_button_name"),
            }

        status = event.get("status")
        if status in LINK_TERMINAL_STATUSES:
            final = view.finals.get(link_id, {})
            view.shielded[link_id] = _ShieldedResult(
                status=status,
                final_link=final.get("final_link"),
                best_button_name=final.get("best_button_name"),
            )
            view.live.pop(link_id, None)
        elif status == "finished":
            view.live.pop(link_id, None)
        elif "final" not in event:
            # A new resolution cycle for this link replaces its previous result.
            if view.shielded.pop(link_id, None) is not None:
                view.finals.pop(link_id, None)
            view.live[link_id] = LINK_PROCESSING

    def end_stream(self, task_id: str) -> None:
        """Stop treating live statuses as current and start the grace window."""
        view = self._views.get(task_id)
        if view is None:
            return
        view.streaming = False
        view.ended_at = self.clock()
        view.live.clear()

    def merge(self, task_id: str, snapshot_links: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Return ``snapshot_links`` with the higher-precedence tiers applied."""
        view = self._views.get(task_id)
        if view is not None and not view.streaming and self._expired(view):
            del self._views[task_id]
            view = None
        if view is None:
            return [dict(link) for link in snapshot_links]

        merged: List[Dict[str, Any]] = []
        for link in snapshot_links:
            row = dict(link)
            link_id = int(row.get("id", -1))
            shielded = view.shielded.get(link_id)
            if shielded is not None:
                row["status"] = shielded.status
                if shielded.final_link:
                    row["final_link"] = shielded.final_link
                if shielded.best_button_name:
                    row["best_button_name"] = shielded.best_button_name
            elif view.streaming and link_id in view.live:
                row["status"] = view.live[link_id]
            merged.append(row)
        return merged

    def forget(self, task_id: str) -> None:
        self._views.pop(task_id, None)
