"""Models package."""

from .queue_item import QueueItem
from .task import Task
from .link_cache import LinkCacheEntry
from .engine_heartbeat import EngineHeartbeat
