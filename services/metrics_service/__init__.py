"""
Metrics Service Package — buffered metrics flushed to a round-robin store.
"""

from services.metrics_service.buffer import MetricBuffer
from services.metrics_service.collector import MetricsCollector
from services.metrics_service.descriptors import (
    HTTPMetricSet,
    MetricDescriptor,
    MetricKind,
    route_metric,
)
from services.metrics_service.errors import (
    FlushFailed,
    MetricsError,
    ShutdownFlushFailed,
    StoreCreateFailed,
    StoreError,
    StoreUnavailable,
)
from services.metrics_service.reconcile import ReconcileAction, SchemaMode, SchemaReconciler
from services.metrics_service.scheduler import FlushScheduler, SchedulerState
from services.metrics_service.store import (
    DEFAULT_ARCHIVES,
    Archive,
    MemoryStore,
    RRDToolStore,
    create_store,
)

__all__ = [
    "MetricBuffer",
    "MetricsCollector",
    "HTTPMetricSet",
    "MetricDescriptor",
    "MetricKind",
    "route_metric",
    "FlushFailed",
    "MetricsError",
    "ShutdownFlushFailed",
    "StoreCreateFailed",
    "StoreError",
    "StoreUnavailable",
    "ReconcileAction",
    "SchemaMode",
    "SchemaReconciler",
    "FlushScheduler",
    "SchedulerState",
    "DEFAULT_ARCHIVES",
    "Archive",
    "MemoryStore",
    "RRDToolStore",
    "create_store",
]
