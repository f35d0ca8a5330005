"""Scheduled trigger: one batch orchestrator invocation per call."""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import async_sessionmaker

from database import get_session_maker
from routers.auth_scope import require_cron_secret
from routers.engine_deps import get_engine_opener
from services.heartbeat import HEARTBEAT_ERROR, write_heartbeat
from services.live_stream import active_task_ids
from services.orchestrator import BatchOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter()


@router.api_route("/process-queue", methods=["GET", "POST"])
async def process_queue(
    _auth: None = Depends(require_cron_secret),
    session_maker: async_sessionmaker = Depends(get_session_maker),
    open_engine=Depends(get_engine_opener),
) -> Dict[str, Any]:
    """Claim and process one pending queue item.

    Failures are reported in the body with ``status: "error"`` so the
    external scheduler does not hammer retries on a 5xx.
    """
    try:
        async with open_engine(session_maker, extracted_by="Server/Auto-Pilot") as parts:
            orchestrator = BatchOrchestrator(
                session_maker,
                parts.processor,
                parts.discoverer,
                parts.cache,
                source="cron",
                active_task_ids=active_task_ids,
            )
            summary = await orchestrator.run_once()
    except Exception as exc:
        logger.exception("Scheduled run could not start")
        await write_heartbeat(session_maker, HEARTBEAT_ERROR, f"Run failed: {exc}", source="cron")
        return {"status": "error", "claimed": False, "recovered": 0, "done": 0, "deferred": 0, "message": str(exc)}
    return summary.to_dict()
