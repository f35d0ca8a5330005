"""Routers package."""

from . import (
    health,
    tasks,
    stream,
    cron,
    engine,
    admin,
)
