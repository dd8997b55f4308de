"""
In-memory accumulation buffer between requests and the store.

Thread-safety: one threading.Lock guards the whole mapping. Request handlers
(event loop or worker threads), the flush routine and the reset routine all
go through it, so a drain never observes a half-applied request and a
request never lands half in one interval and half in the next.

Reset rule:
  - COUNTER / DERIVE / ABSOLUTE entries go back to 0.
  - GAUGE entries are removed. An absent key is written as "unknown",
    which RRD consolidates differently from 0.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Generator, Iterable

from services.metrics_service.descriptors import MetricDescriptor, MetricKind


class MetricBuffer:
    """Process-global, thread-safe name -> float accumulator."""

    def __init__(self) -> None:
        self._values: Dict[str, float] = {}
        self._kinds: Dict[str, MetricKind] = {}
        self._lock = threading.Lock()

    def register(self, descriptor: MetricDescriptor) -> None:
        """Track a new name and give it its post-flush initial state."""
        with self._lock:
            self._kinds[descriptor.name] = descriptor.kind
            self._reset_one(descriptor.name, descriptor.kind)

    def register_all(self, descriptors: Iterable[MetricDescriptor]) -> None:
        for d in descriptors:
            self.register(d)

    def record(self, name: str, delta: float = 1.0) -> None:
        """Add `delta` to a counter-style entry."""
        with self._lock:
            self._values[name] = self._values.get(name, 0.0) + delta

    def set(self, name: str, value: float) -> None:
        """Overwrite a gauge-style entry."""
        with self._lock:
            self._values[name] = float(value)

    @contextmanager
    def locked(self) -> Generator[Dict[str, float], None, None]:
        """
        Hold the lock and expose the raw mapping, for compound updates that
        read several entries and must be applied as one unit.
        """
        with self._lock:
            yield self._values

    def drain_and_reset(self) -> Dict[str, float]:
        """Snapshot every entry, then reset, inside one critical section."""
        with self._lock:
            snapshot = self._values
            # Unregistered names do not survive a drain.
            self._values = {}
            for name, kind in self._kinds.items():
                self._reset_one(name, kind)
            return snapshot

    def peek(self) -> Dict[str, float]:
        """Copy of the pending values. Does not reset."""
        with self._lock:
            return dict(self._values)

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._values

    def _reset_one(self, name: str, kind: MetricKind) -> None:
        # Caller holds the lock.
        if kind is MetricKind.GAUGE:
            self._values.pop(name, None)
        else:
            self._values[name] = 0.0
