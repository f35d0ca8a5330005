"""FastAPI dependencies that hand routers the engine's outbound collaborators."""

from services.live_stream import ProcessorOpener, open_live_processor
from services.orchestrator import open_engine_parts


def get_engine_opener():
    """Context-manager factory yielding processor, discoverer and cache on one HTTP client."""
    return open_engine_parts


def get_processor_opener() -> ProcessorOpener:
    """Context-manager factory yielding the link processor used by live streams."""
    return open_live_processor
