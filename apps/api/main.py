"""
Link Resolver - FastAPI Backend
Main application entry point with health check and API routing.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from config import settings, validate_security_settings
from database import engine, Base, async_session_maker
import models  # noqa: F401
from routers import (
    health,
    tasks,
    stream,
    cron,
    engine as engine_router,
    admin,
)
from services.recovery import run_recovery


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Link Resolver API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    if settings.RECOVER_ON_STARTUP:
        try:
            report = await run_recovery(async_session_maker)
            if report.total or report.failed_requeued:
                print(
                    f"♻️ Recovered {report.total} stuck items and requeued "
                    f"{report.failed_requeued} failed queue items after startup."
                )
        except Exception as exc:
            print(f"⚠️ Stuck-work recovery skipped: {exc}")
    yield
    # Shutdown
    await engine.dispose()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Link Resolver API",
    description="Resolve download links through intermediary hosts and orchestrate batch runs",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(tasks.router, prefix="/tasks", tags=["Tasks"])
app.include_router(stream.router, prefix="/stream", tags=["Stream"])
app.include_router(cron.router, prefix="/cron", tags=["Cron"])
app.include_router(engine_router.router, prefix="/engine", tags=["Engine"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Link Resolver API",
        "version": "0.1.0",
        "status": "running"
    }
