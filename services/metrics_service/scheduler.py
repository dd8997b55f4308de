"""
Step-aligned flush loop.

    IDLE -> ALIGNING -> TICKING -> DRAINING -> STOPPED

Architecture decisions:
  1. Every wait is recomputed from the wall clock as `step - now % step`, so
     each flush lands on a store step boundary. Flushing off-boundary makes
     RRD interpolate across two buckets.
  2. One flush in flight at a time (an asyncio.Lock around drain + write).
     Concurrent request updates are the buffer's problem, not ours.
  3. The store write runs on an executor thread. rrdtool is synchronous and
     the event loop is serving requests.
  4. A failed periodic write is logged and forgotten: the buffer has already
     been reset, so one interval is lost and collection moves on.
  5. Stopping performs exactly one more flush. If that fails there is no
     later chance, so it is logged and the loop exits anyway.
"""

from __future__ import annotations

import asyncio
import time
from concurrent.futures import Executor
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Set

from services.metrics_service.buffer import MetricBuffer
from services.metrics_service.errors import FlushFailed, ShutdownFlushFailed, StoreError
from services.metrics_service.store import NOW, TimeSeriesStore
from utils.logger import get_logger
from utils.timing import timed

_log = get_logger(__name__)

GaugeSampler = Callable[[], float]
# Sleeps up to `timeout` seconds; returns True if the stop event fired first.
WaitFn = Callable[[asyncio.Event, float], Awaitable[bool]]


class SchedulerState(str, Enum):
    IDLE = "idle"
    ALIGNING = "aligning"
    TICKING = "ticking"
    DRAINING = "draining"
    STOPPED = "stopped"


def seconds_until_boundary(now: float, step: int) -> float:
    """Time left until the next multiple of `step`. A full step when `now` is on one."""
    return step - (now % step)


async def wait_for_stop(stop: asyncio.Event, timeout: float) -> bool:
    try:
        await asyncio.wait_for(stop.wait(), timeout=timeout)
        return True
    except asyncio.TimeoutError:
        return False


class FlushScheduler:
    """Drains a MetricBuffer into a store every `step_seconds`."""

    def __init__(
        self,
        buffer: MetricBuffer,
        store: TimeSeriesStore,
        store_path: str,
        step_seconds: int,
        samplers: Optional[Mapping[str, GaugeSampler]] = None,
        allowed_names: Optional[Set[str]] = None,
        executor: Optional[Executor] = None,
        clock: Callable[[], float] = time.time,
        wait: WaitFn = wait_for_stop,
    ) -> None:
        self._buffer = buffer
        self._store = store
        self._path = store_path
        self._step = step_seconds
        self._samplers = samplers if samplers is not None else {}
        self._allowed = allowed_names
        self._executor = executor
        self._clock = clock
        self._wait = wait
        self._flush_lock = asyncio.Lock()

        self.state = SchedulerState.IDLE
        self.flushes = 0
        self.failures = 0
        self.last_flush_at: Optional[float] = None
        self.last_error: Optional[str] = None

    async def run(self, stop: asyncio.Event) -> None:
        """Tick until `stop` is set, then flush one last time."""
        self.state = SchedulerState.ALIGNING
        _log.info("flush_loop_started", path=self._path, step=self._step)

        while not stop.is_set():
            delay = seconds_until_boundary(self._clock(), self._step)
            if await self._wait(stop, delay):
                break
            self.state = SchedulerState.TICKING
            try:
                await self.flush()
            except FlushFailed as e:
                _log.error("flush_failed", path=self._path, error=e.message)

        self.state = SchedulerState.DRAINING
        try:
            await self.flush(final=True)
            _log.info("shutdown_flush_complete", path=self._path)
        except ShutdownFlushFailed as e:
            _log.error("shutdown_flush_failed", path=self._path, error=e.message)
        finally:
            self.state = SchedulerState.STOPPED

    async def flush(self, final: bool = False) -> int:
        """
        Drain, sample gauges, write. Returns how many values were written;
        0 means the write was skipped because there was nothing to say.
        """
        async with self._flush_lock:
            values = self._buffer.drain_and_reset()
            values.update(self._sample_gauges())

            if self._allowed is not None:
                dropped = sorted(set(values) - self._allowed)
                if dropped:
                    _log.debug("flush_dropped_unknown", names=dropped)
                values = {k: v for k, v in values.items() if k in self._allowed}

            if not values:
                _log.debug("flush_skipped_empty", path=self._path)
                return 0

            loop = asyncio.get_running_loop()
            try:
                with timed() as t:
                    await loop.run_in_executor(self._executor, self._store.update, self._path, NOW, values)
            except Exception as e:
                # Pluggable stores raise their own exception types.
                message = e.message if isinstance(e, StoreError) else f"{type(e).__name__}: {e}"
                self.failures += 1
                self.last_error = message
                error_cls = ShutdownFlushFailed if final else FlushFailed
                raise error_cls(f"update of {len(values)} values failed: {message}", path=self._path) from e

            self.flushes += 1
            self.last_flush_at = self._clock()
            _log.info("flush_complete", path=self._path, values=len(values), duration_ms=round(t["ms"], 2))
            return len(values)

    def _sample_gauges(self) -> Dict[str, float]:
        samples: Dict[str, float] = {}
        for name, sampler in list(self._samplers.items()):
            try:
                samples[name] = float(sampler())
            except Exception as e:
                # An unknown sample beats losing the whole flush.
                _log.warning("gauge_sample_failed", metric=name, error=str(e))
        return samples

    def stats(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "flushes": self.flushes,
            "failures": self.failures,
            "last_flush_at": self.last_flush_at,
            "last_error": self.last_error,
        }
