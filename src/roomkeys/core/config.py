# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Roomkeys Contributors

"""Core configuration - centralized config for the roomkeys package.

All environment-based configuration should flow through this module.
Components take a settings object at construction; they never reach for
the global instance on their own once built.

Usage:
    from roomkeys.core.config import get_config
    config = get_config()

    handler = RoomKeyEventHandler(store, engine, config=config)
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RoomKeysSettings(BaseSettings):
    """Configuration settings for roomkeys.

    Settings can be configured via ROOMKEYS_-prefixed environment variables
    or a ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # ==========================================================================
    # KEY SHARING SETTINGS
    # ==========================================================================

    honor_shared_history_hints: bool = Field(
        default=False,
        description="Record the sender's shared-history hint on inbound sessions. When false every session is stored with shared_history=False.",
        validation_alias="ROOMKEYS_HONOR_SHARED_HISTORY_HINTS",
    )

    # ==========================================================================
    # STORE / DISPATCH SETTINGS
    # ==========================================================================

    store_lock_stripes: int = Field(
        default=64,
        ge=1,
        description="Number of lock stripes guarding in-memory session store keys",
        validation_alias="ROOMKEYS_STORE_LOCK_STRIPES",
    )
    max_pending_events: int = Field(
        default=1000,
        ge=0,
        description="Maximum encrypted events parked per session while waiting for keys",
        validation_alias="ROOMKEYS_MAX_PENDING_EVENTS",
    )
    max_pending_total: int = Field(
        default=10000,
        ge=0,
        description="Maximum encrypted events parked across all sessions; the oldest are dropped first",
        validation_alias="ROOMKEYS_MAX_PENDING_TOTAL",
    )
    replay_window: int = Field(
        default=100000,
        ge=1,
        description="Number of (timeline, session, message index) entries remembered for replay detection",
        validation_alias="ROOMKEYS_REPLAY_WINDOW",
    )

    # ==========================================================================
    # LOGGING SETTINGS
    # ==========================================================================

    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR)",
        validation_alias="ROOMKEYS_LOG_LEVEL",
    )
    log_format: str = Field(
        default="",
        description="Log format: 'json', 'text', or '' (auto-detect)",
        validation_alias="ROOMKEYS_LOG_FORMAT",
    )
    log_file: str | None = Field(
        default=None,
        description="Log file path (optional)",
        validation_alias="ROOMKEYS_LOG_FILE",
    )


# ==========================================================================
# GLOBAL CONFIG INSTANCE (lazy loaded)
# ==========================================================================

_config: RoomKeysSettings | None = None


def get_config() -> RoomKeysSettings:
    """Get the global configuration instance.

    Returns:
        The singleton RoomKeysSettings instance.
    """
    global _config
    if _config is None:
        _config = RoomKeysSettings()
    return _config


def clear_config_cache() -> None:
    """Clear the config cache. Useful for testing."""
    global _config
    _config = None
