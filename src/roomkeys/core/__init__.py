"""roomkeys core - configuration, logging and the exception hierarchy."""

from .config import RoomKeysSettings, clear_config_cache, get_config
from .exceptions import (
    ConfigException,
    RoomKeysException,
    StoreException,
    ValidationException,
)
from .logging import (
    configure_logging,
    correlation_context,
    get_logger,
    redact_event,
)
from .lru_cache import LRUDict

__all__ = [
    # Config
    "RoomKeysSettings",
    "get_config",
    "clear_config_cache",
    # Exceptions
    "RoomKeysException",
    "ValidationException",
    "ConfigException",
    "StoreException",
    # Logging
    "configure_logging",
    "correlation_context",
    "get_logger",
    "redact_event",
    # Caching
    "LRUDict",
]
