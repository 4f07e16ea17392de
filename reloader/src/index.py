from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Iterator
from typing import Any

from reloader.src.metrics import METRICS
from reloader.src.models import CONFIG_KINDS, CONFIG_MAP, SECRET, WorkloadRef, workload_ref

CONFIG_MAP_INDEX_KEY = "index.deployment.by.configmap"
SECRET_INDEX_KEY = "index.deployment.by.secret"
INDEX_KEYS: dict[str, str] = {
    CONFIG_MAP: CONFIG_MAP_INDEX_KEY,
    SECRET: SECRET_INDEX_KEY,
}
_KIND_BY_INDEX_KEY = {index_key: kind for kind, index_key in INDEX_KEYS.items()}

LOGGER = logging.getLogger(__name__)


class IndexNotSyncedError(RuntimeError):
    """Raised when the index is queried before its initial listing completed."""


def _pod_spec(workload: Any) -> Any:
    spec = getattr(workload, "spec", None)
    template = getattr(spec, "template", None)
    return getattr(template, "spec", None)


def _volume_names(volume: Any, kind: str) -> Iterator[str | None]:
    if kind == CONFIG_MAP:
        yield getattr(getattr(volume, "config_map", None), "name", None)
    else:
        yield getattr(getattr(volume, "secret", None), "secret_name", None)

    projected = getattr(volume, "projected", None)
    for source in getattr(projected, "sources", None) or []:
        attr = "config_map" if kind == CONFIG_MAP else "secret"
        yield getattr(getattr(source, attr, None), "name", None)


def _container_names(container: Any, kind: str) -> Iterator[str | None]:
    key_ref_attr = "config_map_key_ref" if kind == CONFIG_MAP else "secret_key_ref"
    env_from_attr = "config_map_ref" if kind == CONFIG_MAP else "secret_ref"

    for env in getattr(container, "env", None) or []:
        value_from = getattr(env, "value_from", None)
        yield getattr(getattr(value_from, key_ref_attr, None), "name", None)

    for env_from in getattr(container, "env_from", None) or []:
        yield getattr(getattr(env_from, env_from_attr, None), "name", None)


def extract_references(workload: Any, kind: str) -> frozenset[str]:
    """Return the names of every *kind* object a Deployment's pod template uses.

    Scans volumes (including projected sources), env ``valueFrom`` key
    references and ``envFrom`` imports of both regular and init containers.
    Only names are kept; the referenced keys are irrelevant.
    """
    pod_spec = _pod_spec(workload)
    if pod_spec is None:
        return frozenset()

    names: set[str | None] = set()
    for volume in getattr(pod_spec, "volumes", None) or []:
        names.update(_volume_names(volume, kind))

    containers = list(getattr(pod_spec, "containers", None) or [])
    containers.extend(getattr(pod_spec, "init_containers", None) or [])
    for container in containers:
        names.update(_container_names(container, kind))

    return frozenset(name for name in names if name)


class DependencyIndex:
    """Reverse index from configuration object to the Deployments that use it.

    A workload's references for every kind are replaced together under one
    lock, so a concurrent ``lookup`` never sees half of an update.  Lookups
    return frozen snapshots.

    ``scopes`` lists the namespaces (``None`` for cluster-wide) whose
    Deployment listing must complete before lookups are answered.
    """

    def __init__(self, scopes: Iterable[str | None] = (None,)) -> None:
        self._lock = threading.Lock()
        self._forward: dict[WorkloadRef, dict[str, frozenset[str]]] = {}
        self._reverse: dict[tuple[str, str, str], set[WorkloadRef]] = {}
        self._pending_scopes: set[str | None] = set(scopes)

    @property
    def synced(self) -> bool:
        with self._lock:
            return not self._pending_scopes

    def __len__(self) -> int:
        with self._lock:
            return len(self._forward)

    def _drop_locked(self, ref: WorkloadRef) -> None:
        previous = self._forward.pop(ref, None)
        if previous is None:
            return
        for kind, names in previous.items():
            for name in names:
                reverse_key = (kind, ref.namespace, name)
                dependents = self._reverse.get(reverse_key)
                if dependents is None:
                    continue
                dependents.discard(ref)
                if not dependents:
                    del self._reverse[reverse_key]

    def _store_locked(self, ref: WorkloadRef, references: dict[str, frozenset[str]]) -> None:
        self._drop_locked(ref)
        if not any(references.values()):
            return
        self._forward[ref] = references
        for kind, names in references.items():
            for name in names:
                self._reverse.setdefault((kind, ref.namespace, name), set()).add(ref)

    @staticmethod
    def _references(workload: Any) -> dict[str, frozenset[str]]:
        return {kind: extract_references(workload, kind) for kind in CONFIG_KINDS}

    def register(self, workload: Any) -> WorkloadRef | None:
        """Index (or re-index) a Deployment, replacing its previous references."""
        ref = workload_ref(workload)
        if ref is None:
            LOGGER.warning("Skipping workload with missing metadata.name")
            return None
        references = self._references(workload)
        with self._lock:
            self._store_locked(ref, references)
            METRICS.indexed_workloads.set(len(self._forward))
        return ref

    def unregister(self, ref: WorkloadRef) -> None:
        with self._lock:
            self._drop_locked(ref)
            METRICS.indexed_workloads.set(len(self._forward))

    def replace_scope(self, namespace: str | None, workloads: Iterable[Any]) -> None:
        """Resynchronise one namespace (or the whole cluster) from a full listing.

        Workloads in the scope that are missing from *workloads* are dropped.
        The scope counts as synced afterwards.
        """
        computed: dict[WorkloadRef, dict[str, frozenset[str]]] = {}
        for workload in workloads:
            ref = workload_ref(workload)
            if ref is None:
                continue
            computed[ref] = self._references(workload)

        with self._lock:
            stale = [
                ref
                for ref in self._forward
                if (namespace is None or ref.namespace == namespace) and ref not in computed
            ]
            for ref in stale:
                self._drop_locked(ref)
            for ref, references in computed.items():
                self._store_locked(ref, references)
            self._pending_scopes.discard(namespace)
            METRICS.indexed_workloads.set(len(self._forward))

    def references_of(self, ref: WorkloadRef, kind: str) -> frozenset[str]:
        with self._lock:
            return self._forward.get(ref, {}).get(kind, frozenset())

    def lookup(self, kind: str, namespace: str, name: str) -> frozenset[WorkloadRef]:
        """Return the workloads currently believed to reference ``kind/namespace/name``.

        The answer may include a workload whose references changed a moment
        ago; callers treat that as a harmless extra restart.
        """
        with self._lock:
            if self._pending_scopes:
                raise IndexNotSyncedError(
                    f"dependency index not synced for scopes {sorted(map(str, self._pending_scopes))}"
                )
            return frozenset(self._reverse.get((kind, namespace, name), ()))

    def list_dependents(self, index_key: str, namespace: str, name: str) -> frozenset[WorkloadRef]:
        kind = _KIND_BY_INDEX_KEY.get(index_key)
        if kind is None:
            raise KeyError(f"unknown index key {index_key!r}")
        return self.lookup(kind, namespace, name)
