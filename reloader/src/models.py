from __future__ import annotations

import base64
import binascii
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

CONFIG_MAP = "ConfigMap"
SECRET = "Secret"
CONFIG_KINDS: tuple[str, ...] = (CONFIG_MAP, SECRET)


@dataclass(frozen=True)
class ObjectKey:
    """Identity of a configuration object, used to serialise reconciliations."""

    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"


@dataclass(frozen=True)
class WorkloadRef:
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class ConfigurationObject:
    """Read-only snapshot of a ConfigMap or Secret.

    Attributes:
        data:        Text values (ConfigMap ``data``).
        binary_data: Opaque byte values (ConfigMap ``binaryData`` and
                     Secret ``data``), already base64-decoded.
        annotations: Object metadata annotations; carry the watch policy.
    """

    kind: str
    namespace: str
    name: str
    data: Mapping[str, str] = field(default_factory=dict)
    binary_data: Mapping[str, bytes] = field(default_factory=dict)
    annotations: Mapping[str, str] = field(default_factory=dict)
    resource_version: str | None = None

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(kind=self.kind, namespace=self.namespace, name=self.name)


@dataclass(frozen=True)
class WatchPolicy:
    tracking_enabled: bool = True
    watched_keys: frozenset[str] = frozenset()


def _string_map(raw: Any) -> dict[str, str]:
    if not isinstance(raw, dict):
        return {}
    return {k: ("" if v is None else str(v)) for k, v in raw.items() if isinstance(k, str)}


def _decode_binary(value: Any) -> bytes:
    """Decode a base64 value from the API into raw bytes.

    The Kubernetes client hands binary payloads over as base64 text.  Values
    that are already bytes are kept, and text that is not valid base64 is
    kept as its UTF-8 encoding so it still participates in fingerprints.
    """
    if value is None:
        return b""
    if isinstance(value, bytes | bytearray):
        return bytes(value)
    text = str(value)
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError):
        return text.encode("utf-8")


def _binary_map(raw: Any) -> dict[str, bytes]:
    if not isinstance(raw, dict):
        return {}
    return {k: _decode_binary(v) for k, v in raw.items() if isinstance(k, str)}


def _metadata_fields(obj: Any) -> tuple[str, str, dict[str, str], str | None]:
    metadata = getattr(obj, "metadata", None)
    name = getattr(metadata, "name", None) or ""
    namespace = getattr(metadata, "namespace", None) or ""
    annotations = _string_map(getattr(metadata, "annotations", None))
    resource_version = getattr(metadata, "resource_version", None)
    return namespace, name, annotations, resource_version


def config_object_from_config_map(config_map: Any) -> ConfigurationObject:
    namespace, name, annotations, resource_version = _metadata_fields(config_map)
    return ConfigurationObject(
        kind=CONFIG_MAP,
        namespace=namespace,
        name=name,
        data=_string_map(getattr(config_map, "data", None)),
        binary_data=_binary_map(getattr(config_map, "binary_data", None)),
        annotations=annotations,
        resource_version=resource_version,
    )


def config_object_from_secret(secret: Any) -> ConfigurationObject:
    namespace, name, annotations, resource_version = _metadata_fields(secret)
    return ConfigurationObject(
        kind=SECRET,
        namespace=namespace,
        name=name,
        binary_data=_binary_map(getattr(secret, "data", None)),
        annotations=annotations,
        resource_version=resource_version,
    )


CONVERTERS = {
    CONFIG_MAP: config_object_from_config_map,
    SECRET: config_object_from_secret,
}


def workload_ref(workload: Any) -> WorkloadRef | None:
    """Return the identity of a Deployment-like object, or None when it has no name."""
    metadata = getattr(workload, "metadata", None)
    name = getattr(metadata, "name", None)
    if not name:
        return None
    return WorkloadRef(namespace=getattr(metadata, "namespace", None) or "", name=name)
