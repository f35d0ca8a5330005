"""Queue item model for unattended intake work."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String

from database import Base


class QueueItem(Base):
    """One page URL waiting to be claimed by a batch orchestrator run."""

    __tablename__ = "queue_items"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    url = Column(String, nullable=False, index=True)
    media_kind = Column(String, nullable=False, default="movie")  # movie, series
    status = Column(String, nullable=False, default="pending", index=True)  # pending, processing, completed, failed
    retry_count = Column(Integer, nullable=False, default=0)
    locked_at = Column(DateTime(timezone=True), nullable=True)
    task_id = Column(String, nullable=True, index=True)
    source = Column(String, nullable=True)
    error_message = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), index=True)
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=lambda: datetime.now(timezone.utc))
    processed_at = Column(DateTime(timezone=True), nullable=True)
    last_recovered_at = Column(DateTime(timezone=True), nullable=True)
