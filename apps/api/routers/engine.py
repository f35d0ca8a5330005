"""Engine liveness endpoint."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import async_sessionmaker

from database import get_session_maker
from services.heartbeat import engine_status

router = APIRouter()


@router.get("/status")
async def get_engine_status(session_maker: async_sessionmaker = Depends(get_session_maker)):
    """Heartbeat view: ONLINE when the last run is recent, plus queue depth."""
    return await engine_status(session_maker)
