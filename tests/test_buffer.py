"""
Unit tests for MetricBuffer — kind-aware reset, atomic drain, and
thread-safety under concurrent writers.
"""
import os
import random
import sys
import threading

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from services.metrics_service.buffer import MetricBuffer
from services.metrics_service.descriptors import HTTPMetricSet, MetricDescriptor, MetricKind


def _buffer(*descriptors):
    b = MetricBuffer()
    b.register_all(descriptors)
    return b


class TestReset:
    def test_counters_start_at_zero(self):
        b = _buffer(
            MetricDescriptor("c", MetricKind.COUNTER),
            MetricDescriptor("a", MetricKind.ABSOLUTE),
            MetricDescriptor("d", MetricKind.DERIVE),
        )
        assert b.peek() == {"c": 0.0, "a": 0.0, "d": 0.0}

    def test_gauge_absent_after_register(self):
        b = _buffer(MetricDescriptor("g", MetricKind.GAUGE))
        assert "g" not in b

    def test_gauge_absent_after_drain(self):
        b = _buffer(MetricDescriptor("g", MetricKind.GAUGE))
        b.set("g", 4.5)
        assert b.drain_and_reset() == {"g": 4.5}
        assert "g" not in b
        assert b.drain_and_reset() == {}

    def test_counter_zeroed_after_drain(self):
        b = _buffer(MetricDescriptor("a", MetricKind.ABSOLUTE))
        b.record("a", 3)
        assert b.drain_and_reset() == {"a": 3.0}
        assert b.peek() == {"a": 0.0}

    def test_reregistering_gauge_clears_value(self):
        d = MetricDescriptor("g", MetricKind.GAUGE)
        b = _buffer(d)
        b.set("g", 1.0)
        b.register(d)
        assert "g" not in b

    def test_unregistered_names_do_not_survive_drain(self):
        b = MetricBuffer()
        b.record("stray", 2)
        assert b.drain_and_reset() == {"stray": 2.0}
        assert b.peek() == {}


class TestRecordAndSet:
    def test_record_default_delta(self):
        b = _buffer(MetricDescriptor("a", MetricKind.ABSOLUTE))
        b.record("a")
        b.record("a")
        assert b.peek()["a"] == 2.0

    def test_set_overwrites(self):
        b = _buffer(MetricDescriptor("g", MetricKind.GAUGE))
        b.set("g", 1)
        b.set("g", 7)
        assert b.peek()["g"] == 7.0

    def test_peek_is_a_copy(self):
        b = _buffer(MetricDescriptor("a", MetricKind.ABSOLUTE))
        snap = b.peek()
        snap["a"] = 99
        assert b.peek()["a"] == 0.0


class TestDrainAccounting:
    def test_deltas_sum_across_drains(self):
        b = _buffer(MetricDescriptor("a", MetricKind.ABSOLUTE))
        rng = random.Random(7)
        applied = 0.0
        reported = 0.0
        for _ in range(500):
            if rng.random() < 0.1:
                reported += b.drain_and_reset()["a"]
            else:
                delta = float(rng.randint(1, 5))
                applied += delta
                b.record("a", delta)
        reported += b.drain_and_reset()["a"]
        assert reported == applied

    def test_concurrent_writers_and_drainer_lose_nothing(self):
        b = _buffer(MetricDescriptor("a", MetricKind.ABSOLUTE))
        per_thread = 2000
        writers = 8
        drained = []
        done = threading.Event()

        def write():
            for _ in range(per_thread):
                b.record("a")

        def drain():
            while not done.is_set():
                drained.append(b.drain_and_reset()["a"])

        drainer = threading.Thread(target=drain)
        drainer.start()
        threads = [threading.Thread(target=write) for _ in range(writers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        done.set()
        drainer.join()
        drained.append(b.drain_and_reset()["a"])

        assert sum(drained) == per_thread * writers

    def test_compound_update_lands_in_one_interval(self):
        s = HTTPMetricSet("r")
        b = _buffer(*s.descriptors())
        with b.locked() as values:
            s.observe(values, 10.0, 404)
        snap = b.drain_and_reset()
        assert snap[s.count] == 1
        assert snap[s.client_errors] == 1
        assert snap[s.latency] == 10.0
        assert s.latency not in b
        assert b.peek()[s.count] == 0.0
