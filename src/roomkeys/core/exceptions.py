# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Roomkeys Contributors

"""Exception hierarchy for roomkeys.

Provides specific exception types for the error categories of the
inbound session pipeline: malformed input, configuration, and storage.
Decryption outcomes have their own hierarchy in ``roomkeys.dispatcher``.
"""

from __future__ import annotations

from typing import Any


class RoomKeysException(Exception):  # noqa: N818
    """Base exception for all roomkeys errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class ValidationException(RoomKeysException):
    """Exception for malformed events.

    Raised when:
    - A required field is missing or empty
    - A field has the wrong type
    - An algorithm identifier is not recognized
    """

    def __init__(self, message: str, field: str | None = None, value: Any = None):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)
        super().__init__(message, details)
        self.field = field
        self.value = value


class ConfigException(RoomKeysException):
    """Exception for configuration errors."""

    def __init__(self, message: str, setting: str | None = None):
        details = {}
        if setting:
            details["setting"] = setting
        super().__init__(message, details)
        self.setting = setting


class StoreException(RoomKeysException):
    """Exception for session store failures.

    Raised when the backing store cannot complete a read or insert. The
    triggering event should be treated as not yet processed.
    """

    def __init__(self, message: str, session_id: str | None = None, sender_key: str | None = None):
        details = {}
        if session_id:
            details["session_id"] = session_id
        if sender_key:
            details["sender_key"] = sender_key
        super().__init__(message, details)
        self.session_id = session_id
        self.sender_key = sender_key
