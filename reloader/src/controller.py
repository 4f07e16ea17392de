from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from typing import Any

from kubernetes.client import AppsV1Api, CoreV1Api

from reloader.src.config import ReloaderConfig
from reloader.src.handlers import ConfigObjectHandler, WorkloadHandler
from reloader.src.index import DependencyIndex
from reloader.src.kube import KubeObjectStore
from reloader.src.metrics import METRICS
from reloader.src.models import CONFIG_MAP, CONVERTERS, SECRET, ObjectKey
from reloader.src.reconciler import ReconcileResult, Reconciler, utc_now_rfc3339
from reloader.src.watcher import ResourceWatcher
from reloader.src.workqueue import WorkQueue

WORKER_POLL_SECONDS = 1.0
THREAD_JOIN_TIMEOUT_SECONDS = 45


class ReloadController:
    """Restarts Deployments when the ConfigMaps and Secrets they consume change.

    Wiring, per watch scope (one namespace, or the whole cluster):

    * ConfigMap and Secret watchers feed a :class:`ConfigObjectHandler`,
      which applies the change filter and queues the object's key.
    * A Deployment watcher feeds a :class:`WorkloadHandler`, which keeps the
      shared :class:`DependencyIndex` current.

    Worker threads take keys from the :class:`WorkQueue` and run the
    :class:`Reconciler`.  A failed reconciliation is retried with backoff
    unless a newer event for the same object is already queued, in which
    case the newer event supersedes it.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        apps_api: AppsV1Api,
        namespaces: Iterable[str] = (),
        workers: int = 2,
        max_retry_backoff_seconds: float = 30.0,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")

        self.core_api = core_api
        self.apps_api = apps_api
        self.scopes: tuple[str | None, ...] = tuple(namespaces) or (None,)
        self.workers = workers
        self.logger = logger or logging.getLogger(__name__)

        self.index = DependencyIndex(scopes=self.scopes)
        self.queue = WorkQueue(max_backoff_seconds=max_retry_backoff_seconds)
        self.store = KubeObjectStore(core_api=core_api, apps_api=apps_api, index=self.index)
        self.reconciler = Reconciler(store=self.store, now_fn=now_fn)
        self.watchers = self._build_watchers()

    def _list_fn(self, resource: str, namespace: str | None) -> Callable[..., Any]:
        if resource == "configmaps":
            if namespace is None:
                return self.core_api.list_config_map_for_all_namespaces
            return self.core_api.list_namespaced_config_map
        if resource == "secrets":
            if namespace is None:
                return self.core_api.list_secret_for_all_namespaces
            return self.core_api.list_namespaced_secret
        if namespace is None:
            return self.apps_api.list_deployment_for_all_namespaces
        return self.apps_api.list_namespaced_deployment

    def _build_watchers(self) -> list[ResourceWatcher]:
        watchers: list[ResourceWatcher] = []
        for namespace in self.scopes:
            watchers.append(
                ResourceWatcher(
                    resource="deployments",
                    list_fn=self._list_fn("deployments", namespace),
                    handler=WorkloadHandler(index=self.index, namespace=namespace),
                    namespace=namespace,
                )
            )
            for resource, kind in (("configmaps", CONFIG_MAP), ("secrets", SECRET)):
                handler = ConfigObjectHandler(
                    kind=kind,
                    converter=CONVERTERS[kind],
                    queue=self.queue,
                    namespace=namespace,
                )
                watchers.append(
                    ResourceWatcher(
                        resource=resource,
                        list_fn=self._list_fn(resource, namespace),
                        handler=handler,
                        namespace=namespace,
                    )
                )
        return watchers

    def is_ready(self) -> bool:
        return all(watcher.ready.is_set() for watcher in self.watchers)

    @property
    def failed(self) -> bool:
        return any(watcher.failed.is_set() for watcher in self.watchers)

    def process_next_item(self, timeout: float | None = WORKER_POLL_SECONDS) -> bool:
        """Run at most one reconciliation; returns False when nothing was processed."""
        key = self.queue.get(timeout=timeout)
        if key is None:
            return False

        started = time.monotonic()
        try:
            result = self.reconciler.reconcile(key)
        except Exception:
            METRICS.reconciles_total.labels(kind=key.kind, result="error").inc()
            self.logger.exception("Reconciliation of %s failed", key)
            self._requeue_failed(key)
        else:
            self.queue.forget(key)
            self._record_result(result)
        finally:
            METRICS.reconcile_duration_seconds.labels(kind=key.kind).observe(
                time.monotonic() - started
            )
            self.queue.done(key)
        return True

    def _requeue_failed(self, key: ObjectKey) -> None:
        if self.queue.has_pending(key):
            self.queue.forget(key)
            self.logger.info("Dropping failed attempt for %s; a newer event is queued", key)
            return

        delay_seconds = self.queue.add_rate_limited(key)
        METRICS.retries_total.labels(kind=key.kind).inc()
        self.logger.warning(
            "Scheduling retry %d for %s in %.1fs",
            self.queue.retries(key),
            key,
            delay_seconds,
        )

    @staticmethod
    def _record_result(result: ReconcileResult) -> None:
        outcome = "success" if result.found else "not_found"
        METRICS.reconciles_total.labels(kind=result.key.kind, result=outcome).inc()

    def _worker_loop(self) -> None:
        while not self.queue.shutting_down:
            self.process_next_item()

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Start all watchers and workers and block until shutdown.

        Returns when *shutdown_event* is set or a watcher stops because of
        an RBAC/auth failure (see :attr:`failed`).  Watchers are interrupted
        and workers finish their current item before this method returns.
        """
        stop = shutdown_event or threading.Event()
        threads: list[threading.Thread] = []

        for watcher in self.watchers:
            thread = threading.Thread(
                target=watcher.run_forever,
                kwargs={"shutdown_event": stop},
                name=f"watch-{watcher.resource}-{watcher.scope}",
                daemon=True,
            )
            thread.start()
            threads.append(thread)

        for number in range(self.workers):
            thread = threading.Thread(
                target=self._worker_loop, name=f"reconcile-worker-{number}", daemon=True
            )
            thread.start()
            threads.append(thread)

        self.logger.info(
            "Reloader started with %d worker(s) watching %s",
            self.workers,
            ", ".join(scope or "<all namespaces>" for scope in self.scopes),
        )

        while not stop.is_set():
            if self.failed:
                self.logger.error("A watcher stopped on an unrecoverable error; shutting down")
                break
            stop.wait(timeout=WORKER_POLL_SECONDS)

        for watcher in self.watchers:
            watcher.request_stop()
        self.queue.shutdown()
        for thread in threads:
            thread.join(timeout=THREAD_JOIN_TIMEOUT_SECONDS)
            if thread.is_alive():
                self.logger.error("Thread %s did not stop in time", thread.name)


def build_controller(
    core_api: CoreV1Api, apps_api: AppsV1Api, config: ReloaderConfig
) -> ReloadController:
    """Construct a :class:`ReloadController` from loaded configuration."""
    return ReloadController(
        core_api=core_api,
        apps_api=apps_api,
        namespaces=config.namespaces,
        workers=config.workers,
        max_retry_backoff_seconds=float(config.max_retry_backoff_seconds),
    )
