from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any

from reloader.src.filters import should_propagate
from reloader.src.index import DependencyIndex
from reloader.src.metrics import METRICS
from reloader.src.models import ConfigurationObject, ObjectKey, workload_ref
from reloader.src.workqueue import WorkQueue


class ConfigObjectHandler:
    """Turns ConfigMap/Secret watch events into queued reconciliation requests.

    Remembers the last state seen for every object so a ``MODIFIED`` event
    can be judged as an ``(old, new)`` transition.  Creation and deletion
    never enqueue anything.  An ``ADDED`` event for an object that is
    already remembered is a replay from a restarted watch and is judged
    like a modification.  A modification with no remembered previous
    state is only recorded, since there is nothing to compare against.
    """

    def __init__(
        self,
        kind: str,
        converter: Callable[[Any], ConfigurationObject],
        queue: WorkQueue,
        namespace: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.kind = kind
        self.converter = converter
        self.queue = queue
        self.namespace = namespace
        self.logger = logger or logging.getLogger(__name__)
        self._last_seen: dict[ObjectKey, ConfigurationObject] = {}
        self._lock = threading.Lock()

    def last_seen(self, key: ObjectKey) -> ConfigurationObject | None:
        with self._lock:
            return self._last_seen.get(key)

    def _evaluate(self, old: ConfigurationObject, new: ConfigurationObject) -> bool:
        if should_propagate(old, new):
            METRICS.events_total.labels(kind=self.kind, outcome="accepted").inc()
            self.logger.info("Watched content of %s changed; queueing reload", new.key)
            self.queue.add(new.key)
            return True
        METRICS.events_total.labels(kind=self.kind, outcome="rejected").inc()
        self.logger.debug("Ignoring update of %s without watched content change", new.key)
        return False

    def handle_event(self, event_type: str, obj: Any) -> None:
        current = self.converter(obj)
        if not current.name:
            self.logger.warning("Skipping %s event with empty name", self.kind)
            return

        key = current.key
        if event_type == "DELETED":
            with self._lock:
                self._last_seen.pop(key, None)
            return

        with self._lock:
            previous = self._last_seen.get(key)
            self._last_seen[key] = current

        if event_type not in {"ADDED", "MODIFIED"}:
            return
        if previous is None:
            self.logger.debug("No previous state for %s; recording baseline", key)
            return
        # An ADDED for a known object is a replay after the watch restarted
        # without a resourceVersion, so it is judged like an update.
        self._evaluate(previous, current)

    def sync(self, items: list[Any], relist: bool) -> None:
        """Replace the remembered state with a full listing of this handler's scope.

        On a re-list, objects whose content moved on while the watch was
        disconnected are judged as update transitions.
        """
        listed = [self.converter(item) for item in items]
        listed = [obj for obj in listed if obj.name]
        transitions: list[tuple[ConfigurationObject, ConfigurationObject]] = []

        with self._lock:
            in_scope = {
                key
                for key in self._last_seen
                if self.namespace is None or key.namespace == self.namespace
            }
            fresh_keys = {obj.key for obj in listed}
            for key in in_scope - fresh_keys:
                del self._last_seen[key]
            for obj in listed:
                previous = self._last_seen.get(obj.key)
                self._last_seen[obj.key] = obj
                if relist and previous is not None:
                    transitions.append((previous, obj))

        for previous, current in transitions:
            self._evaluate(previous, current)


class WorkloadHandler:
    """Keeps the dependency index in step with Deployment watch events."""

    def __init__(
        self,
        index: DependencyIndex,
        namespace: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.index = index
        self.namespace = namespace
        self.logger = logger or logging.getLogger(__name__)

    def handle_event(self, event_type: str, obj: Any) -> None:
        if event_type in {"ADDED", "MODIFIED"}:
            self.index.register(obj)
        elif event_type == "DELETED":
            ref = workload_ref(obj)
            if ref is not None:
                self.index.unregister(ref)

    def sync(self, items: list[Any], relist: bool) -> None:
        self.index.replace_scope(self.namespace, items)
        self.logger.debug(
            "Indexed %d deployment(s) in %s", len(items), self.namespace or "<all namespaces>"
        )
