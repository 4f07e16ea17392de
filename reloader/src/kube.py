from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiException, AppsV1Api, CoreV1Api
from kubernetes.config.config_exception import ConfigException

from reloader.src.index import DependencyIndex
from reloader.src.models import (
    CONFIG_MAP,
    CONVERTERS,
    SECRET,
    ConfigurationObject,
    WorkloadRef,
)

LOGGER = logging.getLogger(__name__)


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, AppsV1Api]:
    """Return CoreV1 and AppsV1 API clients using the active kube configuration."""
    return client.CoreV1Api(), client.AppsV1Api()


def build_patch_body(field_path: Sequence[str], value: Any) -> dict[str, Any]:
    """Build a nested merge-patch body that sets only ``field_path`` to *value*.

    ``("spec", "template", "metadata", "annotations", "k")`` becomes
    ``{"spec": {"template": {"metadata": {"annotations": {"k": value}}}}}``.
    """
    if not field_path:
        raise ValueError("field_path must not be empty")
    body: Any = value
    for segment in reversed(field_path):
        body = {segment: body}
    return body


class KubeObjectStore:
    """Cluster-backed fetch/list/patch collaborators for the reconciler.

    ``fetch_object`` returns ``None`` for a 404 and lets every other API
    error propagate.  Dependents come from the in-process
    :class:`DependencyIndex`, which the Deployment watchers keep current.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        apps_api: AppsV1Api,
        index: DependencyIndex,
    ) -> None:
        self.core_api = core_api
        self.apps_api = apps_api
        self.index = index

    def fetch_object(self, kind: str, namespace: str, name: str) -> ConfigurationObject | None:
        if kind == CONFIG_MAP:
            read = self.core_api.read_namespaced_config_map
        elif kind == SECRET:
            read = self.core_api.read_namespaced_secret
        else:
            raise ValueError(f"unsupported configuration kind {kind!r}")

        try:
            raw = read(name=name, namespace=namespace)
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise
        return CONVERTERS[kind](raw)

    def list_dependents(self, index_key: str, namespace: str, name: str) -> frozenset[WorkloadRef]:
        return self.index.list_dependents(index_key, namespace, name)

    def apply_partial_update(
        self, workload: WorkloadRef, field_path: Sequence[str], value: Any
    ) -> None:
        """Patch one field of a Deployment, leaving the rest of the object untouched."""
        self.apps_api.patch_namespaced_deployment(
            name=workload.name,
            namespace=workload.namespace,
            body=build_patch_body(field_path, value),
        )
