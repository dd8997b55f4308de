"""
Time-series store backends.

The collector only ever needs four operations from the store:

    exists(path)                                     -> bool
    create(path, start, step, data_sources, archives, overwrite, source)
    read_schema(path)                                -> set of DS names
    update(path, timestamp | "N", {name: value})

Architecture decisions:
  1. RRDToolStore wraps the rrdtool Python bindings. The import is deferred
     to the first store call so the rest of the service (and its tests)
     imports on hosts without librrd.
  2. MemoryStore implements the same contract in-process. It is what the
     test suite and `metrics_store_backend=memory` use.
  3. Backends raise StoreError and nothing else. Deciding whether a failure
     is fatal (startup) or absorbable (flush) is the caller's job.
"""

from __future__ import annotations

import os
import re
import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Protocol, Sequence, Set, Tuple, Union

from services.metrics_service.descriptors import MetricDescriptor
from services.metrics_service.errors import StoreError
from utils.logger import get_logger

_log = get_logger(__name__)

Timestamp = Union[int, str]
NOW = "N"


@dataclass(frozen=True)
class Archive:
    """One consolidation archive (RRA). Durations use rrdtool suffixes."""

    resolution: str
    retention: str
    cf: str = "AVERAGE"
    xff: float = 0.5

    def rra_definition(self) -> str:
        return f"RRA:{self.cf}:{self.xff}:{self.resolution}:{self.retention}"


# 1 minute for 90 days, 1 hour for 18 months, 1 day for 10 years.
DEFAULT_ARCHIVES: Tuple[Archive, ...] = (
    Archive("1m", "90d"),
    Archive("1h", "18M"),
    Archive("1d", "10y"),
)


class TimeSeriesStore(Protocol):
    def exists(self, path: str) -> bool: ...

    def create(
        self,
        path: str,
        start: int,
        step: int,
        data_sources: Sequence[MetricDescriptor],
        archives: Sequence[Archive],
        overwrite: bool = False,
        source: Optional[str] = None,
    ) -> None: ...

    def read_schema(self, path: str) -> Set[str]: ...

    def update(self, path: str, timestamp: Timestamp, values: Mapping[str, float]) -> None: ...


def format_value(value: float) -> str:
    """RRD rejects "3.0" for integer-only DS types, so integral floats go out as ints."""
    value = float(value)
    if value.is_integer():
        return str(int(value))
    return repr(value)


# ── rrdtool ─────────────────────────────────────────────────

_DS_INDEX_KEY = re.compile(r"^ds\[(?P<name>[^\]]+)\]\.index$")


class RRDToolStore:
    """RRD files via the rrdtool bindings."""

    def __init__(self) -> None:
        self._module = None

    @property
    def _rrd(self):
        if self._module is None:
            try:
                import rrdtool
            except ImportError as e:
                raise StoreError("rrdtool bindings are not installed (pip install rrdtool)") from e
            self._module = rrdtool
        return self._module

    def exists(self, path: str) -> bool:
        return os.path.exists(path)

    def create(
        self,
        path: str,
        start: int,
        step: int,
        data_sources: Sequence[MetricDescriptor],
        archives: Sequence[Archive],
        overwrite: bool = False,
        source: Optional[str] = None,
    ) -> None:
        args: List[str] = [path, "--start", str(int(start)), "--step", str(int(step))]
        if source:
            args += ["--source", source]
        if not overwrite:
            args.append("--no-overwrite")
        args += [ds.ds_definition() for ds in data_sources]
        args += [a.rra_definition() for a in archives]

        rrd = self._rrd
        directory = os.path.dirname(path)
        try:
            if directory:
                os.makedirs(directory, exist_ok=True)
            rrd.create(*args)
        except (rrd.OperationalError, OSError) as e:
            raise StoreError(f"rrdtool create failed: {e}", path=path) from e
        _log.info("rrd_created", path=path, step=step, data_sources=len(data_sources), source=source)

    def read_schema(self, path: str) -> Set[str]:
        rrd = self._rrd
        try:
            info = rrd.info(path)
        except rrd.OperationalError as e:
            raise StoreError(f"rrdtool info failed: {e}", path=path) from e

        names: Set[str] = set()
        for key in info:
            match = _DS_INDEX_KEY.match(key)
            if match:
                names.add(match.group("name"))
        return names

    def update(self, path: str, timestamp: Timestamp, values: Mapping[str, float]) -> None:
        names = list(values)
        sample = ":".join([str(timestamp)] + [format_value(values[n]) for n in names])
        rrd = self._rrd
        try:
            rrd.update(path, "--template", ":".join(names), sample)
        except rrd.OperationalError as e:
            raise StoreError(f"rrdtool update failed: {e}", path=path) from e


# ── In-process ──────────────────────────────────────────────

@dataclass
class _MemoryFile:
    start: int
    step: int
    data_sources: Tuple[MetricDescriptor, ...]
    archives: Tuple[Archive, ...]
    rows: List[Tuple[int, Dict[str, float]]]


class MemoryStore:
    """
    Dict-backed store with the same failure semantics as RRDToolStore:
    create refuses to clobber without overwrite, update refuses names the
    schema does not know.
    """

    def __init__(self, clock=time.time) -> None:
        self._files: Dict[str, _MemoryFile] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def exists(self, path: str) -> bool:
        with self._lock:
            return path in self._files

    def create(
        self,
        path: str,
        start: int,
        step: int,
        data_sources: Sequence[MetricDescriptor],
        archives: Sequence[Archive],
        overwrite: bool = False,
        source: Optional[str] = None,
    ) -> None:
        with self._lock:
            if path in self._files and not overwrite:
                raise StoreError("store already exists", path=path)
            names = [ds.name for ds in data_sources]
            if len(set(names)) != len(names):
                raise StoreError("duplicate data source names", path=path)

            rows: List[Tuple[int, Dict[str, float]]] = []
            if source is not None:
                old = self._files.get(source)
                if old is None:
                    raise StoreError(f"source {source} does not exist", path=path)
                keep = set(names)
                rows = [(ts, {k: v for k, v in vals.items() if k in keep}) for ts, vals in old.rows]

            self._files[path] = _MemoryFile(
                start=int(start),
                step=int(step),
                data_sources=tuple(data_sources),
                archives=tuple(archives),
                rows=rows,
            )

    def read_schema(self, path: str) -> Set[str]:
        with self._lock:
            f = self._files.get(path)
            if f is None:
                raise StoreError("no such store", path=path)
            return {ds.name for ds in f.data_sources}

    def update(self, path: str, timestamp: Timestamp, values: Mapping[str, float]) -> None:
        with self._lock:
            f = self._files.get(path)
            if f is None:
                raise StoreError("no such store", path=path)
            unknown = set(values) - {ds.name for ds in f.data_sources}
            if unknown:
                raise StoreError(f"unknown data sources: {sorted(unknown)}", path=path)
            ts = int(self._clock()) if timestamp == NOW else int(timestamp)
            f.rows.append((ts, dict(values)))

    # ── Inspection helpers (tests, /stats) ──────────────────

    def rows(self, path: str) -> List[Tuple[int, Dict[str, float]]]:
        with self._lock:
            return list(self._files[path].rows)

    def layout(self, path: str) -> _MemoryFile:
        with self._lock:
            return self._files[path]


def create_store(backend: str) -> TimeSeriesStore:
    """Factory keyed by `metrics_store_backend`."""
    if backend == "memory":
        return MemoryStore()
    if backend == "rrdtool":
        return RRDToolStore()
    raise ValueError(f"unknown store backend: {backend}")
