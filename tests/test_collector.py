"""
Tests for MetricsCollector — registration rules, startup reconciliation,
fatal startup errors, and the stop-time flush.
"""
import asyncio
import os
import sys
import threading
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from services.metrics_service.collector import MetricsCollector
from services.metrics_service.descriptors import MetricDescriptor, MetricKind
from services.metrics_service.errors import StoreCreateFailed, StoreError, StoreUnavailable
from services.metrics_service.reconcile import ReconcileAction
from services.metrics_service.store import DEFAULT_ARCHIVES, MemoryStore

PATH = "app.rrd"


async def _stop_at_once(stop: asyncio.Event, timeout: float) -> bool:
    await stop.wait()
    return True


def _collector(store=None, **kwargs):
    return MetricsCollector(PATH, 60, store=store or MemoryStore(), wait=_stop_at_once, **kwargs)


# ── Registration ────────────────────────────────────────────

class TestRegistration:
    def test_add_metric_registers_in_buffer(self):
        c = _collector()
        c.add_absolute("jobs")
        c.add_gauge("temp")
        assert [d.name for d in c.descriptors] == ["jobs", "temp"]
        assert c.buffer.peek() == {"jobs": 0.0}

    def test_duplicate_name_ignored(self):
        c = _collector()
        c.add_counter("jobs")
        c.add_counter("jobs")
        assert [d.name for d in c.descriptors] == ["jobs"]

    def test_defaults_from_settings(self):
        c = _collector()
        d = c.add_counter("jobs")
        assert d.heartbeat_seconds == 900
        assert d.min_value == 0
        assert d.max_value is None

    def test_option_override(self):
        c = _collector()
        d = c.add_gauge("temp", heartbeat_seconds=120, max_value=50)
        assert d.heartbeat_seconds == 120
        assert d.max_value == 50

    def test_http_metric_idempotent(self):
        c = _collector()
        first = c.add_http_metric("home")
        second = c.add_http_metric("home")
        assert first is second
        assert len(c.descriptors) == 5

    def test_route_metrics_plus_unknown(self):
        c = _collector()
        sets = c.add_route_metrics(["/", "/api/users/", "/api/users"])
        assert sorted(s.base for s in sets) == ["api_users", "root", "unknown"]
        assert len(c.descriptors) == 15

    def test_descriptor_order_is_stable(self):
        c = _collector()
        c.add_counter("b")
        c.add_counter("a")
        c.add_counter("c")
        assert [d.name for d in c.descriptors] == ["b", "a", "c"]

    def test_bad_step_rejected(self):
        with pytest.raises(ValueError):
            MetricsCollector(PATH, -5, store=MemoryStore())


class TestObserveRequest:
    def test_known_base(self):
        c = _collector()
        c.add_http_metric("home")
        c.observe_request("home", 12.0, 200)
        assert c.buffer.peek()["home_cnt"] == 1
        assert c.buffer.peek()["home_lat"] == 12.0

    def test_unknown_base_falls_back(self):
        c = _collector()
        c.add_route_metrics(["/home"])
        c.observe_request("elsewhere", 3.0, 404)
        values = c.buffer.peek()
        assert values["unknown_cnt"] == 1
        assert values["unknown_cerr"] == 1
        assert values["home_cnt"] == 0

    def test_concurrent_requests_never_split_across_drains(self):
        c = _collector()
        s = c.add_http_metric("home")
        per_thread = 1500
        writers = 6
        snapshots = []
        done = threading.Event()

        def serve(offset):
            for i in range(per_thread):
                status = 404 if (i + offset) % 2 else 503
                c.observe_request("home", float(i % 50), status)

        def drain():
            while not done.is_set():
                snapshots.append(c.buffer.drain_and_reset())

        drainer = threading.Thread(target=drain)
        drainer.start()
        threads = [threading.Thread(target=serve, args=(n,)) for n in range(writers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        done.set()
        drainer.join()
        snapshots.append(c.buffer.drain_and_reset())

        assert sum(snap[s.count] for snap in snapshots) == per_thread * writers
        for snap in snapshots:
            # every request was an error, so a torn update would break the equality
            assert snap[s.client_errors] + snap[s.server_errors] == snap[s.count]
            if snap[s.count]:
                assert snap[s.max_latency] >= snap[s.latency]
            else:
                assert s.latency not in snap

    def test_nothing_registered_is_silent(self):
        c = _collector()
        c.observe_request("home", 1.0, 200)
        assert c.buffer.peek() == {}


# ── Lifecycle ───────────────────────────────────────────────

class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_without_metrics_does_nothing(self):
        store = MagicMock()
        c = _collector(store)
        assert await c.start() is None
        assert not c.started
        store.exists.assert_not_called()

    @pytest.mark.asyncio
    async def test_start_creates_store(self):
        store = MemoryStore()
        c = _collector(store)
        c.add_http_metric("home")
        assert await c.start() is ReconcileAction.CREATE
        assert store.read_schema(PATH) == set(c.http_metric_set("home").names)
        await c.stop()

    @pytest.mark.asyncio
    async def test_start_migrates_changed_schema(self):
        store = MemoryStore()
        store.create(PATH, 0, 60, [MetricDescriptor("old", MetricKind.ABSOLUTE)], DEFAULT_ARCHIVES)
        c = _collector(store)
        c.add_absolute("new")
        assert await c.start() is ReconcileAction.MIGRATE
        assert store.read_schema(PATH) == {"new"}
        await c.stop()

    @pytest.mark.asyncio
    async def test_unreadable_store_aborts_start(self):
        store = MagicMock()
        store.exists.return_value = True
        store.read_schema.side_effect = StoreError("truncated file")
        c = _collector(store)
        c.add_absolute("jobs")
        with pytest.raises(StoreUnavailable):
            await c.start()
        assert not c.started

    @pytest.mark.asyncio
    async def test_create_failure_aborts_start(self):
        store = MagicMock()
        store.exists.return_value = False
        store.create.side_effect = StoreError("permission denied")
        c = _collector(store)
        c.add_absolute("jobs")
        with pytest.raises(StoreCreateFailed):
            await c.start()
        assert not c.started

    @pytest.mark.asyncio
    async def test_stop_flushes_pending_values(self):
        store = MemoryStore(clock=lambda: 1200.0)
        c = _collector(store)
        c.add_http_metric("home")
        c.add_gauge("threads", lambda: 3)
        await c.start()

        c.observe_request("home", 20.0, 500)
        await c.stop()

        rows = store.rows(PATH)
        assert len(rows) == 1
        _, values = rows[0]
        assert values["home_cnt"] == 1
        assert values["home_serr"] == 1
        assert values["home_mlat"] == 20.0
        assert values["threads"] == 3.0
        assert c.snapshot()["scheduler"]["state"] == "stopped"

    @pytest.mark.asyncio
    async def test_stop_survives_store_raising_os_error(self):
        store = MagicMock()
        store.exists.return_value = False
        store.update.side_effect = OSError("disk full")
        c = _collector(store)
        c.add_absolute("jobs")
        await c.start()
        c.record("jobs")
        await c.stop()
        stats = c.snapshot()["scheduler"]
        assert stats["state"] == "stopped"
        assert stats["failures"] == 1
        assert c._executor is None

    @pytest.mark.asyncio
    async def test_register_after_start_raises(self):
        c = _collector()
        c.add_counter("jobs")
        await c.start()
        with pytest.raises(RuntimeError):
            c.add_counter("late")
        await c.stop()

    @pytest.mark.asyncio
    async def test_double_start_raises(self):
        c = _collector()
        c.add_counter("jobs")
        await c.start()
        with pytest.raises(RuntimeError):
            await c.start()
        await c.stop()

    @pytest.mark.asyncio
    async def test_restart_after_stop(self):
        store = MemoryStore(clock=lambda: 1200.0)
        c = _collector(store)
        c.add_counter("jobs")
        c.add_gauge("threads", lambda: 2)
        assert await c.start() is ReconcileAction.CREATE
        await c.stop()
        assert not c.started

        c.add_gauge("threads", lambda: 5)
        assert await c.start() is ReconcileAction.NOOP
        assert c.started
        c.record("jobs", 4)
        await c.stop()

        assert [d.name for d in c.descriptors] == ["jobs", "threads"]
        assert store.rows(PATH)[-1] == (1200, {"jobs": 4.0, "threads": 5.0})

    @pytest.mark.asyncio
    async def test_request_shutdown_is_idempotent(self):
        c = _collector()
        c.add_counter("jobs")
        await c.start()
        c.request_shutdown()
        c.request_shutdown()
        await c.wait_stopped()
        assert c.snapshot()["scheduler"]["flushes"] == 1

    @pytest.mark.asyncio
    async def test_fixed_mode_narrows_flush(self):
        store = MemoryStore(clock=lambda: 1200.0)
        store.create(PATH, 0, 60, [MetricDescriptor("jobs", MetricKind.ABSOLUTE)], DEFAULT_ARCHIVES)
        c = _collector(store, schema_mode="fixed")
        c.add_absolute("jobs")
        c.add_absolute("extra")
        assert await c.start() is ReconcileAction.NOOP
        c.record("jobs", 2)
        c.record("extra", 5)
        await c.stop()
        assert store.rows(PATH) == [(1200, {"jobs": 2.0})]

    @pytest.mark.asyncio
    async def test_signal_handlers_route_to_shutdown(self):
        c = _collector()
        loop = MagicMock()
        c.install_signal_handlers(loop)
        handlers = [call.args[1] for call in loop.add_signal_handler.call_args_list]
        assert handlers == [c.request_shutdown, c.request_shutdown]


class TestSnapshot:
    def test_before_start(self):
        c = _collector()
        c.add_gauge("temp")
        snap = c.snapshot()
        assert snap["store_path"] == PATH
        assert snap["step_seconds"] == 60
        assert snap["metrics"] == [{"name": "temp", "kind": "GAUGE", "heartbeat": 900}]
        assert snap["pending"] == {}
        assert snap["scheduler"] is None
