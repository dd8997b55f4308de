"""
Precision timing for request latency and flush duration.

Design decision: time.perf_counter_ns() (monotonic, nanosecond) for
durations, never time.time(). Wall-clock time can jump on NTP sync and a
negative latency would poison the running average. Wall-clock time is only
used by the scheduler, where step alignment is the whole point.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Generator, Optional

from utils.logger import get_logger

_log = get_logger(__name__)


@contextmanager
def timed(label: Optional[str] = None) -> Generator[dict, None, None]:
    """
    Context manager that measures elapsed time in milliseconds.

    Usage:
        with timed() as t:
            response = await call_next(request)
        latency = t["ms"]

    The dict is populated *after* the block finishes, including when the
    block raises. With a label, the duration is also logged at debug level.
    """
    result: dict = {}
    start = time.perf_counter_ns()
    try:
        yield result
    finally:
        elapsed_ns = time.perf_counter_ns() - start
        result["ns"] = elapsed_ns
        result["ms"] = elapsed_ns / 1_000_000
        if label:
            _log.debug(label, duration_ms=round(result["ms"], 3))
