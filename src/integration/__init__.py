"""External source polling and engine wiring."""

from src.integration.context import EngineContext, create_engine_context
from src.integration.exceptions import SourceError, SourceParseError, SourceUnavailableError
from src.integration.poller import SOURCES, IntegrationPoller

__all__ = [
    "SOURCES",
    "EngineContext",
    "IntegrationPoller",
    "SourceError",
    "SourceParseError",
    "SourceUnavailableError",
    "create_engine_context",
]
