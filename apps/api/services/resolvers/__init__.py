"""Resolver chain: host families, per-host solvers and the routing function."""

from services.resolvers.chain import ResolverChain
from services.resolvers.fetch import Fetcher, build_http_client, fetch_with_retry
from services.resolvers.hosts import routing_class
from services.resolvers.types import (
    NO_SOLVER_MATCHED,
    CandidateButton,
    ChainResult,
    HopSuccess,
    LogFn,
    ResolverFailure,
    TerminalSuccess,
)

__all__ = [
    "CandidateButton",
    "ChainResult",
    "Fetcher",
    "HopSuccess",
    "LogFn",
    "NO_SOLVER_MATCHED",
    "ResolverChain",
    "ResolverFailure",
    "TerminalSuccess",
    "build_http_client",
    "fetch_with_retry",
    "routing_class",
]
