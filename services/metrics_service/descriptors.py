"""
Metric descriptors and data-source naming.

Architecture decisions:
  1. A descriptor is frozen. It is built once at registration time and
     handed to the store verbatim when the schema is (re)created.
  2. Names are normalised, never rejected. RRD data-source names must match
     [A-Za-z0-9_-]{1,19}; anything else is stripped and the result truncated.
     Call sites stay one-liners at the cost of a lossy mapping.
  3. HTTP metric sets reserve 5 characters for their suffix, so route-derived
     base names are capped at 14 (14 + len("_mlat") == 19).
  4. Two routes that truncate to the same base share one metric set. Their
     statistics merge silently; keep route prefixes distinct if that matters.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

# RRD's hard ceiling on ds-name length.
DS_NAME_MAX = 19
# Longest base name that still leaves room for every HTTP suffix.
BASE_NAME_MAX = 14

UNKNOWN_ROUTE = "unknown"

_INVALID_CHARS = re.compile(r"[^A-Za-z0-9_-]")


class MetricKind(str, Enum):
    """RRD data-source types. COMPUTE is not supported."""

    GAUGE = "GAUGE"
    COUNTER = "COUNTER"
    DERIVE = "DERIVE"
    ABSOLUTE = "ABSOLUTE"

    @property
    def is_gauge(self) -> bool:
        return self is MetricKind.GAUGE


def normalize_name(name: str, limit: int = DS_NAME_MAX) -> str:
    """Strip characters RRD rejects and truncate to `limit`."""
    cleaned = _INVALID_CHARS.sub("", name)[:limit]
    return cleaned or "unnamed"


def route_metric(path: str) -> str:
    """
    Build a metric base name out of a URL path or route pattern.

        /                -> root
        /api/users/      -> api_users
        /a b/c!d         -> a_b_cd
    """
    if path == "/":
        path = "root"
    path = path.strip("/")
    path = path.replace("/", "_").replace(" ", "_")
    path = _INVALID_CHARS.sub("", path)
    return path[:BASE_NAME_MAX] or UNKNOWN_ROUTE


@dataclass(frozen=True)
class MetricDescriptor:
    """One tracked series, i.e. one RRD data source."""

    name: str
    kind: MetricKind
    heartbeat_seconds: int = 900
    min_value: int = 0
    max_value: Optional[int] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", MetricKind(self.kind))
        object.__setattr__(self, "name", normalize_name(self.name))

    @property
    def is_gauge(self) -> bool:
        return self.kind.is_gauge

    @property
    def max_token(self) -> str:
        """The max field as RRD expects it: a number, or U for unbounded."""
        return "U" if self.max_value is None else str(self.max_value)

    def ds_definition(self) -> str:
        return f"DS:{self.name}:{self.kind.value}:{self.heartbeat_seconds}:{self.min_value}:{self.max_token}"


@dataclass(frozen=True)
class HTTPMetricSet:
    """
    The five series kept per instrumented handler:

        <base>_cnt   requests             ABSOLUTE
        <base>_cerr  4xx responses        ABSOLUTE
        <base>_serr  5xx responses        ABSOLUTE
        <base>_lat   average latency ms   GAUGE
        <base>_mlat  max latency ms       GAUGE
    """

    base: str
    heartbeat_seconds: int = 900
    min_value: int = 0
    max_value: Optional[int] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "base", normalize_name(self.base, BASE_NAME_MAX))

    @property
    def names(self) -> Tuple[str, ...]:
        return (self.count, self.client_errors, self.server_errors, self.latency, self.max_latency)

    @property
    def count(self) -> str:
        return f"{self.base}_cnt"

    @property
    def client_errors(self) -> str:
        return f"{self.base}_cerr"

    @property
    def server_errors(self) -> str:
        return f"{self.base}_serr"

    @property
    def latency(self) -> str:
        return f"{self.base}_lat"

    @property
    def max_latency(self) -> str:
        return f"{self.base}_mlat"

    def descriptors(self) -> Tuple[MetricDescriptor, ...]:
        opts = dict(
            heartbeat_seconds=self.heartbeat_seconds,
            min_value=self.min_value,
            max_value=self.max_value,
        )
        return (
            MetricDescriptor(self.count, MetricKind.ABSOLUTE, **opts),
            MetricDescriptor(self.client_errors, MetricKind.ABSOLUTE, **opts),
            MetricDescriptor(self.server_errors, MetricKind.ABSOLUTE, **opts),
            MetricDescriptor(self.latency, MetricKind.GAUGE, **opts),
            MetricDescriptor(self.max_latency, MetricKind.GAUGE, **opts),
        )

    def observe(self, values: dict, latency_ms: float, status_code: int) -> None:
        """
        Fold one request into `values`. The caller must hold the buffer lock
        for the whole call; see MetricBuffer.locked().
        """
        count = values.get(self.count, 0.0)
        avg = values.get(self.latency, 0.0)
        values[self.latency] = (avg * count + latency_ms) / (count + 1)

        previous_max = values.get(self.max_latency)
        if previous_max is None or latency_ms > previous_max:
            values[self.max_latency] = latency_ms

        values[self.count] = count + 1
        status_class = status_code // 100
        if status_class == 4:
            values[self.client_errors] = values.get(self.client_errors, 0.0) + 1
        elif status_class == 5:
            values[self.server_errors] = values.get(self.server_errors, 0.0) + 1
