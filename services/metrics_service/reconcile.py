"""
Schema reconciliation: registered metrics vs. the persisted store.

Architecture decisions:
  1. The comparison is by sorted name set only. Kind, heartbeat and bounds
     changes on an existing name are not detected; rebuild the store by hand
     (or `rrdtool tune` it) if those change.
  2. A rename looks exactly like one removal plus one addition. Migration
     copies the surviving names' history (rrdtool create --source) and the
     renamed series starts empty. History for the old name is dropped.
  3. In fixed mode the store is created when missing but never migrated.
     Drift is logged and the collector narrows every flush to the names the
     store already has.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Optional, Sequence, Set

from services.metrics_service.descriptors import MetricDescriptor
from services.metrics_service.errors import StoreCreateFailed, StoreError, StoreUnavailable
from services.metrics_service.store import DEFAULT_ARCHIVES, Archive, TimeSeriesStore
from utils.logger import get_logger

_log = get_logger(__name__)


class ReconcileAction(str, Enum):
    NOOP = "noop"
    CREATE = "create"
    MIGRATE = "migrate"


class SchemaMode(str, Enum):
    AUTOMIGRATE = "automigrate"
    FIXED = "fixed"


def aligned_start(now: float, step: int) -> int:
    """`now` truncated to the step boundary at or before it."""
    return int(now) - int(now) % step


class SchemaReconciler:
    """Decides and performs create / migrate / nothing for one store path."""

    def __init__(
        self,
        store: TimeSeriesStore,
        step_seconds: int,
        archives: Sequence[Archive] = DEFAULT_ARCHIVES,
        mode: SchemaMode = SchemaMode.AUTOMIGRATE,
    ) -> None:
        self._store = store
        self._step = step_seconds
        self._archives = tuple(archives)
        self._mode = SchemaMode(mode)
        self.persisted_names: Optional[Set[str]] = None

    def reconcile(self, descriptors: Sequence[MetricDescriptor], store_path: str) -> ReconcileAction:
        if not self._store.exists(store_path):
            self.persisted_names = None
            return ReconcileAction.CREATE

        try:
            persisted = self._store.read_schema(store_path)
        except StoreError as e:
            raise StoreUnavailable(f"could not read schema of {store_path}: {e.message}", path=store_path) from e
        self.persisted_names = persisted

        registered = sorted(d.name for d in descriptors)
        if sorted(persisted) == registered:
            return ReconcileAction.NOOP
        return ReconcileAction.MIGRATE

    def apply(
        self,
        action: ReconcileAction,
        descriptors: Sequence[MetricDescriptor],
        store_path: str,
        now: Optional[float] = None,
    ) -> None:
        if action is ReconcileAction.NOOP:
            return

        start = aligned_start(time.time() if now is None else now, self._step)
        source = store_path if action is ReconcileAction.MIGRATE else None
        try:
            self._store.create(
                store_path,
                start,
                self._step,
                list(descriptors),
                self._archives,
                overwrite=True,
                source=source,
            )
        except StoreError as e:
            raise StoreCreateFailed(f"could not {action.value} {store_path}: {e.message}", path=store_path) from e

    def sync(
        self,
        descriptors: Sequence[MetricDescriptor],
        store_path: str,
        now: Optional[float] = None,
    ) -> ReconcileAction:
        """reconcile() then apply(), honouring the schema mode."""
        action = self.reconcile(descriptors, store_path)

        if action is ReconcileAction.MIGRATE:
            registered = {d.name for d in descriptors}
            added = sorted(registered - (self.persisted_names or set()))
            removed = sorted((self.persisted_names or set()) - registered)
            if self._mode is SchemaMode.FIXED:
                _log.warning("schema_drift_ignored", path=store_path, added=added, removed=removed)
                return ReconcileAction.NOOP
            _log.info("schema_migrate", path=store_path, added=added, removed=removed)
        elif action is ReconcileAction.CREATE:
            _log.info("schema_create", path=store_path, data_sources=len(descriptors))
        else:
            _log.info("schema_unchanged", path=store_path)

        self.apply(action, descriptors, store_path, now=now)
        if action is not ReconcileAction.NOOP:
            self.persisted_names = {d.name for d in descriptors}
        return action
