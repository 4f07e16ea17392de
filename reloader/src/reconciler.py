from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol

from reloader.src.filters import ANNOTATION_PREFIX
from reloader.src.index import INDEX_KEYS
from reloader.src.metrics import METRICS
from reloader.src.models import ConfigurationObject, ObjectKey, WorkloadRef

RELOAD_TIMESTAMP_ANNOTATION = f"{ANNOTATION_PREFIX}/reload-timestamp"


class ObjectStore(Protocol):
    def fetch_object(self, kind: str, namespace: str, name: str) -> ConfigurationObject | None:
        ...

    def list_dependents(self, index_key: str, namespace: str, name: str) -> frozenset[WorkloadRef]:
        ...

    def apply_partial_update(
        self, workload: WorkloadRef, field_path: Sequence[str], value: Any
    ) -> None:
        ...


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of one reconciliation.

    ``found`` is False when the object disappeared before it was processed;
    the other counters are zero in that case.
    """

    key: ObjectKey
    found: bool
    matched: int = 0
    restarted: int = 0


def utc_now_rfc3339() -> str:
    """Return the current UTC time as RFC 3339 with microseconds (``2024-01-15T08:30:00.123456Z``).

    Used as the reload annotation value; microsecond precision keeps two
    restarts issued within the same second distinguishable.
    """
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


class Reconciler:
    """Turns an admitted configuration change into workload restarts.

    For one :class:`ObjectKey` it re-fetches the object, lists dependents
    from the index and patches the reload annotation on each dependent's pod
    template.  Every dependent is attempted even if an earlier one fails; the
    first failure is then re-raised unchanged so the caller can requeue.
    Re-running a reconciliation only moves the timestamp forward.
    """

    def __init__(
        self,
        store: ObjectStore,
        annotation_key: str = RELOAD_TIMESTAMP_ANNOTATION,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        self.store = store
        self.annotation_key = annotation_key
        self.logger = logger or logging.getLogger(__name__)
        self.now_fn = now_fn

    @property
    def field_path(self) -> tuple[str, ...]:
        return ("spec", "template", "metadata", "annotations", self.annotation_key)

    def reconcile(self, key: ObjectKey) -> ReconcileResult:
        current = self.store.fetch_object(key.kind, key.namespace, key.name)
        if current is None:
            self.logger.info("%s no longer exists; nothing to reload", key)
            return ReconcileResult(key=key, found=False)

        dependents = self.store.list_dependents(INDEX_KEYS[key.kind], key.namespace, key.name)
        if not dependents:
            self.logger.info("%s changed, but no deployments reference it", key)
            return ReconcileResult(key=key, found=True)

        timestamp = self.now_fn()
        restarted = 0
        errors: list[Exception] = []
        for workload in sorted(dependents, key=lambda ref: (ref.namespace, ref.name)):
            try:
                self.store.apply_partial_update(workload, self.field_path, timestamp)
            except Exception as exc:
                errors.append(exc)
                self.logger.exception(
                    "Failed to trigger reload of deployment %s for %s", workload, key
                )
                continue
            restarted += 1
            self.logger.info("Triggered reload of deployment %s for %s", workload, key)

        METRICS.restarts_total.labels(kind=key.kind).inc(restarted)
        METRICS.restart_errors_total.labels(kind=key.kind).inc(len(errors))
        if errors:
            raise errors[0]

        return ReconcileResult(
            key=key,
            found=True,
            matched=len(dependents),
            restarted=restarted,
        )
