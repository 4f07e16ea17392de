from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from typing import Any, Protocol

from kubernetes import watch
from kubernetes.client import ApiException

from reloader.src.metrics import METRICS

WATCH_TIMEOUT_SECONDS = 30
MAX_BACKOFF_SECONDS = 30


class EventHandler(Protocol):
    def sync(self, items: list[Any], relist: bool) -> None:
        ...

    def handle_event(self, event_type: str, obj: Any) -> None:
        ...


class ResourceWatcher:
    """List-then-watch loop for one resource type in one namespace scope.

    The initial list seeds the handler (``relist=False``) and sets
    :attr:`ready`.  Watch events are passed to ``handler.handle_event`` in
    order.  The loop then keeps the stream open until stopped:

    * ``410 Gone`` (etcd compaction) triggers a re-list, handed to the
      handler with ``relist=True`` so it can detect changes missed while
      disconnected, and the watch resumes from the fresh resourceVersion.
      A failing re-list is retried with the backoff below; the watch does
      not resume until a re-list has been handed to the handler.
    * ``401`` / ``403`` are treated as RBAC/auth misconfiguration: the
      watcher marks itself :attr:`failed` and exits instead of retrying.
    * Other errors back off exponentially with jitter (1 s doubling to a
      30 s cap); a clean stream resets the backoff.
    """

    def __init__(
        self,
        resource: str,
        list_fn: Callable[..., Any],
        handler: EventHandler,
        namespace: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.resource = resource
        self.list_fn = list_fn
        self.handler = handler
        self.namespace = namespace
        self.logger = logger or logging.getLogger(__name__)

        self.ready = threading.Event()
        self.failed = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    @property
    def scope(self) -> str:
        return self.namespace or "<all namespaces>"

    def _list_kwargs(self) -> dict[str, Any]:
        if self.namespace is None:
            return {}
        return {"namespace": self.namespace}

    def _list(self) -> tuple[list[Any], str | None]:
        listing = self.list_fn(**self._list_kwargs())
        resource_version = getattr(getattr(listing, "metadata", None), "resource_version", None)
        return list(getattr(listing, "items", None) or []), resource_version

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _fail_on_access_denied(self, exc: ApiException, phase: str) -> bool:
        if exc.status not in {401, 403}:
            return False
        self.logger.error(
            "Kubernetes API access denied during %s of %s in %s (status=%s). "
            "Check RBAC and service account permissions.",
            phase,
            self.resource,
            self.scope,
            exc.status,
        )
        METRICS.watch_errors_total.labels(resource=self.resource).inc()
        self.ready.clear()
        self.failed.set()
        return True

    def _list_and_sync(self, stop: threading.Event, relist: bool) -> str | None:
        """List the scope and hand the items to the handler, retrying until it succeeds.

        Returns the listing's resourceVersion, or ``None`` when stopped or
        when access was denied (:attr:`failed` is then set).
        """
        phase = "re-list" if relist else "initial list"
        backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                items, resource_version = self._list()
                self.handler.sync(items, relist=relist)
                self.ready.set()
                self.logger.info(
                    "Listed %d %s in %s; watching from resourceVersion %s",
                    len(items),
                    self.resource,
                    self.scope,
                    resource_version,
                )
                return resource_version
            except ApiException as exc:
                if self._fail_on_access_denied(exc, phase):
                    return None
                self.logger.exception(
                    "The %s of %s in %s failed", phase, self.resource, self.scope
                )
                METRICS.watch_errors_total.labels(resource=self.resource).inc()
            except Exception:
                self.logger.exception(
                    "Unexpected error during %s of %s in %s", phase, self.resource, self.scope
                )
                METRICS.watch_errors_total.labels(resource=self.resource).inc()

            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            backoff_seconds = min(backoff_seconds * 2, MAX_BACKOFF_SECONDS)
        return None

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        self.failed.clear()

        resource_version = self._list_and_sync(stop, relist=False)
        if self.failed.is_set() or self._should_stop(stop):
            self.ready.clear()
            return

        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(resource=self.resource).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.list_fn,
                    resource_version=resource_version,
                    timeout_seconds=WATCH_TIMEOUT_SECONDS,
                    **self._list_kwargs(),
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    obj = event.get("object")
                    if obj is None:
                        continue

                    metadata = getattr(obj, "metadata", None)
                    if metadata and metadata.resource_version:
                        resource_version = metadata.resource_version

                    self.handler.handle_event(str(event.get("type", "")), obj)

                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning(
                        "Watch of %s in %s expired, re-listing", self.resource, self.scope
                    )
                    relisted_version = self._list_and_sync(stop, relist=True)
                    if self.failed.is_set():
                        return
                    resource_version = relisted_version
                    continue

                if self._fail_on_access_denied(exc, "watch"):
                    return

                self.logger.exception("Kubernetes API watch error for %s", self.resource)
                METRICS.watch_errors_total.labels(resource=self.resource).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, MAX_BACKOFF_SECONDS)
            except Exception:
                self.logger.exception("Unexpected watch error for %s", self.resource)
                METRICS.watch_errors_total.labels(resource=self.resource).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, MAX_BACKOFF_SECONDS)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.ready.clear()
