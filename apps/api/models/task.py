"""Resolution task model."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, String

from database import Base


class Task(Base):
    """Resolution record for one page URL and all of its candidate links.

    Links live in ``links_json`` as one document per task so that a link write
    is a single-row read-modify-write keyed by link id.
    """

    __tablename__ = "tasks"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    url = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default="pending", index=True)  # pending, processing, completed, failed
    links_json = Column(JSON, nullable=False, default=list)
    metadata_json = Column(JSON, nullable=True)
    preview_json = Column(JSON, nullable=True)
    extracted_by = Column(String, nullable=True)
    error_message = Column(String, nullable=True)
    recovery_reason = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), index=True)
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=lambda: datetime.now(timezone.utc))
    processing_started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    recovered_at = Column(DateTime(timezone=True), nullable=True)
