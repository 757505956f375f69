"""Scoped get-or-compute cache with per-key locking."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

LOGGER = logging.getLogger(__name__)

CacheKey = Tuple[str, Hashable]


@dataclass
class _Entry:
    value: Any
    expires_at: Optional[float]


class ScopedCache:
    """
    Values keyed by ``(scope, key)`` with an optional time-to-live.

    ``get_or_compute`` runs the factory at most once per key at a time; other
    callers for the same key wait on that key's lock while unrelated keys stay
    independent. A ``ttl`` of ``None`` keeps the value until invalidated.
    """

    def __init__(self, default_ttl: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: Dict[CacheKey, _Entry] = {}
        self._key_locks: Dict[CacheKey, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, cache_key: CacheKey) -> threading.Lock:
        with self._guard:
            lock = self._key_locks.get(cache_key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[cache_key] = lock
            return lock

    def _fresh(self, cache_key: CacheKey) -> Optional[_Entry]:
        entry = self._entries.get(cache_key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            return None
        return entry

    def get(self, scope: str, key: Hashable, default: Any = None) -> Any:
        with self._guard:
            entry = self._fresh((scope, key))
        return entry.value if entry else default

    def set(self, scope: str, key: Hashable, value: Any, ttl: Optional[float] = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        expires_at = self._clock() + ttl if ttl is not None else None
        with self._guard:
            self._entries[(scope, key)] = _Entry(value=value, expires_at=expires_at)

    def get_or_compute(
        self,
        scope: str,
        key: Hashable,
        factory: Callable[[], Any],
        ttl: Optional[float] = None,
    ) -> Any:
        cache_key = (scope, key)
        with self._guard:
            entry = self._fresh(cache_key)
        if entry:
            return entry.value

        with self._lock_for(cache_key):
            with self._guard:
                entry = self._fresh(cache_key)
            if entry:
                return entry.value
            value = factory()
            self.set(scope, key, value, ttl)
            LOGGER.debug("Cached %s for scope %s", key, scope)
            return value

    def invalidate(self, scope: str, key: Optional[Hashable] = None) -> None:
        """Drop one key, or every key of ``scope`` when ``key`` is omitted."""
        with self._guard:
            if key is not None:
                self._entries.pop((scope, key), None)
                return
            for cache_key in [k for k in self._entries if k[0] == scope]:
                del self._entries[cache_key]

    def clear(self) -> None:
        with self._guard:
            self._entries.clear()
