"""
Health probes for the API, its stores and the bypass services.
"""

from typing import Any, Dict

import httpx
import redis.asyncio as redis
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import async_sessionmaker

from config import settings
from database import get_session_maker

router = APIRouter()

PROBE_TIMEOUT_SECONDS = 3.0


async def _probe_service(client: httpx.AsyncClient, base_url: str) -> str:
    if not base_url:
        return "missing"
    try:
        response = await client.get(base_url)
    except httpx.HTTPError as exc:
        return f"down: {exc.__class__.__name__}"
    # Any HTTP answer means the service is listening; 5xx means it is unwell.
    return "up" if response.status_code < 500 else f"degraded: HTTP {response.status_code}"


@router.get("/health")
async def health_check(session_maker: async_sessionmaker = Depends(get_session_maker)):
    """
    Overall health: database, Redis and both bypass services.
    Only the database is required for ``healthy``.
    """
    report: Dict[str, Any] = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "timer_bypass": "unknown",
        "cdn_bypass": "unknown",
    }

    try:
        async with session_maker() as db:
            await db.execute(text("SELECT 1"))
        report["database"] = "up"
    except Exception as exc:
        report["database"] = f"down: {exc}"
        report["status"] = "unhealthy"

    try:
        client = redis.from_url(settings.REDIS_URL)
        try:
            await client.ping()
        finally:
            await client.aclose()
        report["redis"] = "up"
    except Exception as exc:
        report["redis"] = f"down: {exc}"
        if report["status"] == "healthy":
            report["status"] = "degraded"

    async with httpx.AsyncClient(timeout=PROBE_TIMEOUT_SECONDS) as http:
        report["timer_bypass"] = await _probe_service(http, settings.TIMER_BYPASS_URL)
        report["cdn_bypass"] = await _probe_service(http, settings.CDN_BYPASS_URL)
    if report["status"] == "healthy" and "up" not in (report["timer_bypass"], report["cdn_bypass"]):
        report["status"] = "degraded"

    return report


@router.get("/health/ready")
async def readiness_check():
    """Ready once both bypass services are configured."""
    missing = [
        name
        for name, value in (("TIMER_BYPASS_URL", settings.TIMER_BYPASS_URL), ("CDN_BYPASS_URL", settings.CDN_BYPASS_URL))
        if not value
    ]
    if missing:
        return JSONResponse(status_code=503, content={"ready": False, "missing": missing})
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    return {"alive": True}
