from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


class ConfigError(RuntimeError):
    """Raised when the reloader configuration is invalid."""


@dataclass(frozen=True)
class ReloaderConfig:
    """Immutable process configuration loaded at startup.

    Attributes:
        namespaces: Namespaces to watch; empty means the whole cluster.
        workers:    Number of reconciliation worker threads.
        health_port: Port for ``/healthz``, ``/readyz`` and ``/metrics``.
        max_retry_backoff_seconds: Cap on the delay before a failed
                    reconciliation is retried.
        log_level:  Name of the root logging level.
    """

    namespaces: tuple[str, ...] = ()
    workers: int = 2
    health_port: int = 8080
    max_retry_backoff_seconds: int = 30
    log_level: str = "INFO"


def parse_namespaces(raw: str | None) -> tuple[str, ...]:
    """Split a comma-separated namespace list, dropping blanks and duplicates."""
    if raw is None:
        return ()
    names = [part.strip() for part in raw.split(",") if part.strip()]
    return tuple(dict.fromkeys(names))


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def load_config(env: Mapping[str, str] | None = None) -> ReloaderConfig:
    """Load reloader config from the environment.

    Environment variables (with defaults):
        ``WATCH_NAMESPACE`` : comma-separated namespaces (cluster-wide).
        ``WORKERS``         : reconciliation worker threads (``2``).
        ``HEALTH_PORT``     : health/metrics port (``8080``).
        ``MAX_RETRY_BACKOFF_SECONDS``: retry delay cap (``30``).
        ``LOG_LEVEL``       : logging level (``INFO``).
    """
    values = env if env is not None else os.environ

    log_level = values.get("LOG_LEVEL", "INFO").strip().upper() or "INFO"

    return ReloaderConfig(
        namespaces=parse_namespaces(values.get("WATCH_NAMESPACE")),
        workers=env_int(values, "WORKERS", 2, minimum=1, maximum=64),
        health_port=env_int(values, "HEALTH_PORT", 8080, minimum=1, maximum=65535),
        max_retry_backoff_seconds=env_int(values, "MAX_RETRY_BACKOFF_SECONDS", 30, minimum=1),
        log_level=log_level,
    )
