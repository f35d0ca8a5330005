"""Tagged result variants produced by resolver stages."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union


NO_SOLVER_MATCHED = "no solver matched for this URL"

LogFn = Callable[[str, str], None]


@dataclass(frozen=True)
class CandidateButton:
    """One download mirror exposed by a terminal resolver."""

    name: str
    url: str

    def to_dict(self) -> Dict[str, str]:
        return {"button_name": self.name, "download_link": self.url}

    @classmethod
    def from_dict(cls, payload: Any) -> Optional["CandidateButton"]:
        if not isinstance(payload, dict):
            return None
        url = str(payload.get("download_link") or "").strip()
        if not url:
            return None
        return cls(name=str(payload.get("button_name") or "").strip(), url=url)


@dataclass(frozen=True)
class HopSuccess:
    """An intermediary hop produced the next URL to route."""

    url: str
    resolver: str
    source: Optional[str] = None


@dataclass(frozen=True)
class TerminalSuccess:
    """The chain reached a directly downloadable URL."""

    final_link: str
    resolver: str
    best_button_name: Optional[str] = None
    buttons: Tuple[CandidateButton, ...] = field(default_factory=tuple)

    def buttons_payload(self) -> List[Dict[str, str]]:
        return [button.to_dict() for button in self.buttons]


@dataclass(frozen=True)
class ResolverFailure:
    """A stage (or the chain as a whole) could not make progress."""

    message: str
    resolver: str


StageResult = Union[HopSuccess, TerminalSuccess, ResolverFailure]
ChainResult = Union[TerminalSuccess, ResolverFailure]


def buttons_from_payload(rows: Any) -> Tuple[CandidateButton, ...]:
    if not isinstance(rows, list):
        return ()
    parsed = [CandidateButton.from_dict(row) for row in rows]
    return tuple(button for button in parsed if button is not None)
