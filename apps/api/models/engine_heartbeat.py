"""Engine liveness record."""

from sqlalchemy import Column, DateTime, String

from database import Base


ENGINE_HEARTBEAT_ID = "engine_status"


class EngineHeartbeat(Base):
    """Singleton row written at the start and end of every orchestrator run."""

    __tablename__ = "engine_heartbeat"

    id = Column(String, primary_key=True, default=ENGINE_HEARTBEAT_ID)
    status = Column(String, nullable=False, default="idle")  # running, idle, error
    details = Column(String, nullable=True)
    source = Column(String, nullable=True)
    last_run_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)
