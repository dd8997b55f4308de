"""
Error taxonomy for the metrics collector.

Fatal at startup:  StoreUnavailable, StoreCreateFailed
Logged and absorbed: FlushFailed, ShutdownFlushFailed

Backends raise StoreError; the reconciler and scheduler translate it into
the error that matches where in the lifecycle it happened.
"""

from __future__ import annotations

from typing import Optional


class MetricsError(Exception):
    """Base class for every error raised by the metrics service."""

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.path = path

    def to_dict(self) -> dict:
        return {"error": type(self).__name__, "message": self.message, "path": self.path}


class StoreError(MetricsError):
    """A backend call (create / info / update) failed."""


class StoreUnavailable(MetricsError):
    """The store exists but its schema could not be read."""


class StoreCreateFailed(MetricsError):
    """Creating or migrating the store failed."""


class FlushFailed(MetricsError):
    """A periodic update was rejected. The interval's values are lost."""


class ShutdownFlushFailed(FlushFailed):
    """The final flush on the way out failed. Never retried."""
