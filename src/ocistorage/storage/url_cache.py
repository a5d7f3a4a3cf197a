from __future__ import annotations
import threading
import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Protocol


class UrlCache(Protocol):
    """Host-supplied store for temporary URLs, keyed by logical path."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str, expires_at: datetime) -> None: ...


class InMemoryUrlCache:
    """Process-local ``UrlCache`` for hosts without a shared cache."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._entries: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires = entry
            if expires <= self._clock():
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: str, expires_at: datetime) -> None:
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        with self._lock:
            self._entries[key] = (value, expires_at.timestamp())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
