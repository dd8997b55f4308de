"""
MetricsCollector — the one object applications talk to.

Lifecycle:
    collector = MetricsCollector("./data/app.rrd", step_seconds=60)
    collector.add_gauge("queue_depth", lambda: float(queue.qsize()))
    collector.add_http_metric("search")
    await collector.start()      # reconcile schema, start flush loop
    ...
    await collector.stop()       # one final flush, then return

Architecture decisions:
  1. Registration happens before start(). The store schema is fixed at
     start, so a metric added later could never be written; that raises.
     After stop() the collector may be extended and started again, which
     reconciles the store a second time (a lifespan that runs twice).
  2. start() reconciles the schema before the flush loop exists. A store
     that cannot be read or created aborts startup with nothing running.
  3. Registering the same name twice is a no-op. Duplicate DS names would
     make store creation fail.
  4. Signals only ever *request* shutdown. Completion is surfaced through
     stop() / wait_stopped(); the library never exits the process.
"""

from __future__ import annotations

import asyncio
import signal
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from configs.settings import get_settings
from services.metrics_service.buffer import MetricBuffer
from services.metrics_service.descriptors import (
    BASE_NAME_MAX,
    UNKNOWN_ROUTE,
    HTTPMetricSet,
    MetricDescriptor,
    MetricKind,
    normalize_name,
    route_metric,
)
from services.metrics_service.reconcile import ReconcileAction, SchemaMode, SchemaReconciler
from services.metrics_service.scheduler import FlushScheduler, GaugeSampler, WaitFn, wait_for_stop
from services.metrics_service.store import DEFAULT_ARCHIVES, Archive, TimeSeriesStore, create_store
from utils.logger import bind_collector_context, get_logger

_log = get_logger(__name__)


class MetricsCollector:
    """Registers metrics, owns the buffer, and runs the flush loop."""

    def __init__(
        self,
        store_path: Optional[str] = None,
        step_seconds: Optional[int] = None,
        *,
        store: Optional[TimeSeriesStore] = None,
        schema_mode: Optional[str] = None,
        archives: Sequence[Archive] = DEFAULT_ARCHIVES,
        clock: Callable[[], float] = time.time,
        wait: WaitFn = wait_for_stop,
    ) -> None:
        cfg = get_settings()
        self.store_path = store_path or cfg.metrics_store_path
        self.step_seconds = int(step_seconds or cfg.metrics_step_seconds)
        if self.step_seconds <= 0:
            raise ValueError("step_seconds must be positive")
        self.schema_mode = SchemaMode(schema_mode or cfg.metrics_schema_mode)

        self._defaults = dict(
            heartbeat_seconds=cfg.metrics_heartbeat_seconds,
            min_value=cfg.metrics_min_value,
            max_value=cfg.metrics_max_value,
        )
        self._store = store if store is not None else create_store(cfg.metrics_store_backend)
        self._archives = tuple(archives)
        self._clock = clock
        self._wait = wait

        self._descriptors: List[MetricDescriptor] = []
        self._names: set = set()
        self._http_sets: Dict[str, HTTPMetricSet] = {}
        self._samplers: Dict[str, GaugeSampler] = {}
        self.buffer = MetricBuffer()

        self._reconciler = SchemaReconciler(self._store, self.step_seconds, self._archives, self.schema_mode)
        self._executor: Optional[ThreadPoolExecutor] = None
        self._scheduler: Optional[FlushScheduler] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self.last_action: Optional[ReconcileAction] = None

    # ── Registration ────────────────────────────────────────

    @property
    def descriptors(self) -> Tuple[MetricDescriptor, ...]:
        return tuple(self._descriptors)

    @property
    def started(self) -> bool:
        """True while the flush loop is running. A stopped collector can be started again."""
        return self._task is not None and not self._task.done()

    def metric(self, name: str, kind: MetricKind, **options: Any) -> MetricDescriptor:
        """Build a descriptor with the configured per-metric defaults."""
        opts = {**self._defaults, **options}
        return MetricDescriptor(name, kind, **opts)

    def add_metric(self, descriptor: MetricDescriptor) -> MetricDescriptor:
        if self.started:
            raise RuntimeError(f"cannot register {descriptor.name!r} after the collector has started")
        if descriptor.name in self._names:
            _log.debug("metric_already_registered", metric=descriptor.name)
            return descriptor
        self._descriptors.append(descriptor)
        self._names.add(descriptor.name)
        self.buffer.register(descriptor)
        return descriptor

    def add_counter(self, name: str, **options: Any) -> MetricDescriptor:
        return self.add_metric(self.metric(name, MetricKind.COUNTER, **options))

    def add_absolute(self, name: str, **options: Any) -> MetricDescriptor:
        return self.add_metric(self.metric(name, MetricKind.ABSOLUTE, **options))

    def add_gauge(self, name: str, sampler: Optional[GaugeSampler] = None, **options: Any) -> MetricDescriptor:
        """
        Register a gauge. With a sampler it is polled at every flush;
        without one, push values with set().
        """
        descriptor = self.add_metric(self.metric(name, MetricKind.GAUGE, **options))
        if sampler is not None:
            self._samplers[descriptor.name] = sampler
        return descriptor

    def add_http_metric(self, base: str) -> HTTPMetricSet:
        """Register the five request series for `base` (idempotent)."""
        metric_set = HTTPMetricSet(base, **self._defaults)
        existing = self._http_sets.get(metric_set.base)
        if existing is not None:
            return existing
        for descriptor in metric_set.descriptors():
            self.add_metric(descriptor)
        self._http_sets[metric_set.base] = metric_set
        return metric_set

    def add_route_metrics(self, route_patterns: Iterable[str]) -> List[HTTPMetricSet]:
        """
        One metric set per distinct route pattern, plus the `unknown`
        fallback for requests that match none of them.
        """
        bases = sorted({route_metric(p) for p in route_patterns})
        sets = [self.add_http_metric(b) for b in bases]
        if UNKNOWN_ROUTE not in bases:
            sets.append(self.add_http_metric(UNKNOWN_ROUTE))
        _log.info("route_metrics_registered", routes=len(bases))
        return sets

    def http_metric_set(self, base: str) -> Optional[HTTPMetricSet]:
        return self._http_sets.get(normalize_name(base, BASE_NAME_MAX))

    # ── Recording ───────────────────────────────────────────

    def record(self, name: str, delta: float = 1.0) -> None:
        self.buffer.record(name, delta)

    def set(self, name: str, value: float) -> None:
        self.buffer.set(name, value)

    def observe_request(self, base: str, latency_ms: float, status_code: int) -> None:
        """Fold one finished request into its metric set (or `unknown`)."""
        metric_set = self._http_sets.get(base) or self._http_sets.get(UNKNOWN_ROUTE)
        if metric_set is None:
            _log.debug("request_metric_unregistered", metric=base)
            return
        with self.buffer.locked() as values:
            metric_set.observe(values, latency_ms, status_code)

    # ── Lifecycle ───────────────────────────────────────────

    async def start(self) -> Optional[ReconcileAction]:
        """
        Reconcile the store schema and start the flush loop.
        Raises StoreUnavailable / StoreCreateFailed without starting anything.
        """
        if self.started:
            raise RuntimeError("collector already started")
        if not self._descriptors:
            _log.info("metrics_collector_empty", path=self.store_path)
            return None

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="rrd")
        loop = asyncio.get_running_loop()
        try:
            action = await loop.run_in_executor(
                self._executor, self._reconciler.sync, list(self._descriptors), self.store_path, self._clock()
            )
        except Exception:
            self._executor.shutdown(wait=False)
            self._executor = None
            raise
        self.last_action = action
        bind_collector_context(self.store_path, self.step_seconds)

        allowed = None
        if self.schema_mode is SchemaMode.FIXED:
            allowed = set(self._reconciler.persisted_names or ())

        self._stop_event = asyncio.Event()
        self._scheduler = FlushScheduler(
            self.buffer,
            self._store,
            self.store_path,
            self.step_seconds,
            samplers=self._samplers,
            allowed_names=allowed,
            executor=self._executor,
            clock=self._clock,
            wait=self._wait,
        )
        self._task = asyncio.create_task(self._scheduler.run(self._stop_event), name="metrics-flush")
        _log.info(
            "metrics_collector_started",
            path=self.store_path,
            step=self.step_seconds,
            metrics=len(self._descriptors),
            action=action.value,
        )
        return action

    def request_shutdown(self) -> None:
        """Ask the flush loop to do its final flush and exit. Safe to call twice."""
        if self._stop_event is not None and not self._stop_event.is_set():
            _log.info("metrics_shutdown_requested", path=self.store_path)
            self._stop_event.set()

    async def wait_stopped(self) -> None:
        if self._task is not None:
            await self._task

    async def stop(self) -> None:
        self.request_shutdown()
        try:
            await self.wait_stopped()
        finally:
            if self._executor is not None:
                self._executor.shutdown(wait=True)
                self._executor = None

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Route SIGINT / SIGTERM to request_shutdown()."""
        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
            except (NotImplementedError, RuntimeError) as e:
                _log.warning("signal_handler_unavailable", signal=sig.name, error=str(e))

    # ── Introspection ───────────────────────────────────────

    def snapshot(self) -> Dict[str, Any]:
        """JSON-serializable view for the /stats endpoint."""
        return {
            "store_path": self.store_path,
            "step_seconds": self.step_seconds,
            "schema_mode": self.schema_mode.value,
            "schema_action": self.last_action.value if self.last_action else None,
            "metrics": [
                {"name": d.name, "kind": d.kind.value, "heartbeat": d.heartbeat_seconds}
                for d in self._descriptors
            ],
            "pending": self.buffer.peek(),
            "scheduler": self._scheduler.stats() if self._scheduler else None,
        }
