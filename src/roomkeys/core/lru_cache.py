# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Roomkeys Contributors

"""Bounded in-memory maps.

State keyed by network-supplied identifiers (session ids, event ids) must
not grow without limit; LRUDict evicts the least recently written entries
once ``max_size`` is exceeded.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from typing import Any, TypeVar

K = TypeVar("K")
V = TypeVar("V")


class LRUDict(OrderedDict[K, V]):
    """An ordered dict with least-recently-written eviction.

    Thread-safe for single operations. Reads through ``get`` do not
    refresh an entry; writes and ``setdefault`` hits do.

    Example:
        seen = LRUDict(max_size=2)
        seen["a"] = 1
        seen["b"] = 2
        seen["c"] = 3  # evicts "a"
    """

    def __init__(self, max_size: int):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        super().__init__()
        self._max_size = max_size
        self._lock = threading.RLock()

    @property
    def max_size(self) -> int:
        return self._max_size

    def __setitem__(self, key: K, value: V) -> None:
        with self._lock:
            super().__setitem__(key, value)
            self.move_to_end(key)
            self._evict_if_needed()

    def setdefault(self, key: K, default: V) -> V:  # type: ignore[override]
        """Return the value for ``key``, inserting ``default`` if absent."""
        with self._lock:
            if key in self:
                self.move_to_end(key)
                return super().__getitem__(key)
            self[key] = default
            return default

    def get(self, key: K, default: V | None = None) -> V | None:  # type: ignore[override]
        with self._lock:
            return super().get(key, default)

    def clear(self) -> None:
        with self._lock:
            super().clear()

    def _evict_if_needed(self) -> None:
        while len(self) > self._max_size:
            self.popitem(last=False)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "size": len(self),
                "max_size": self._max_size,
                "utilization": len(self) / self._max_size,
            }
