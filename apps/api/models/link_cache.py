"""Resolved-link cache entry model."""

from sqlalchemy import JSON, Column, DateTime, Integer, String

from database import Base


class LinkCacheEntry(Base):
    """Terminal URL previously resolved for a normalized original URL."""

    __tablename__ = "link_cache"

    key = Column(String, primary_key=True)  # md5 of lower-cased, trimmed original url
    original_url = Column(String, nullable=False)
    final_link = Column(String, nullable=False)
    resolver_name = Column(String, nullable=False)
    best_button_name = Column(String, nullable=True)
    buttons_json = Column(JSON, nullable=True)
    status = Column(String, nullable=False, default="valid", index=True)  # valid, expired, broken
    hit_count = Column(Integer, nullable=False, default=0)
    resolved_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    last_hit_at = Column(DateTime(timezone=True), nullable=True)
    broken_at = Column(DateTime(timezone=True), nullable=True)
