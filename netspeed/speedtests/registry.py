"""In-flight test registry: at most one running test per (scope, host)."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Set

from ..errors import ConcurrencyRejection

LOGGER = logging.getLogger(__name__)


class TestRegistry:
    def __init__(self) -> None:
        self._running: Dict[str, Set[str]] = {}
        self._lock = threading.Lock()

    def claim(self, scope_id: str, host: str) -> bool:
        with self._lock:
            hosts = self._running.setdefault(scope_id, set())
            if host in hosts:
                return False
            hosts.add(host)
            return True

    def release(self, scope_id: str, host: str) -> None:
        with self._lock:
            hosts = self._running.get(scope_id)
            if not hosts:
                return
            hosts.discard(host)
            if not hosts:
                del self._running[scope_id]

    def is_running(self, scope_id: str, host: str) -> bool:
        with self._lock:
            return host in self._running.get(scope_id, ())

    def running(self, scope_id: str) -> List[str]:
        with self._lock:
            return sorted(self._running.get(scope_id, ()))

    @contextmanager
    def hold(self, scope_id: str, host: str) -> Iterator[None]:
        """Claim the slot for the duration of the block or raise ``ConcurrencyRejection``."""
        if not self.claim(scope_id, host):
            LOGGER.warning("Rejected speed test for %s (scope %s): already running", host, scope_id)
            raise ConcurrencyRejection(scope_id, host)
        try:
            yield
        finally:
            self.release(scope_id, host)
