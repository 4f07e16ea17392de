from __future__ import annotations

from collections.abc import Mapping

from reloader.src.fingerprint import fingerprint
from reloader.src.models import ConfigurationObject, WatchPolicy

ANNOTATION_PREFIX = "k8s-confsec-reloader.io"
WATCH_ANNOTATION = f"{ANNOTATION_PREFIX}/watch"
KEYS_TO_WATCH_ANNOTATION = f"{ANNOTATION_PREFIX}/keys-to-watch"


def parse_keys_to_watch(raw: str | None) -> frozenset[str]:
    """Parse a comma-separated key list; blank items are ignored."""
    if raw is None:
        return frozenset()
    return frozenset(part.strip() for part in raw.split(",") if part.strip())


def watch_policy(annotations: Mapping[str, str] | None) -> WatchPolicy:
    """Derive the watch policy from object annotations.

    Objects are tracked unless the ``watch`` annotation is present with a
    value other than ``true``.  A missing or empty ``keys-to-watch`` list
    means every key is watched.
    """
    annotations = annotations or {}
    raw_watch = annotations.get(WATCH_ANNOTATION)
    tracking_enabled = raw_watch is None or raw_watch.strip().lower() == "true"
    return WatchPolicy(
        tracking_enabled=tracking_enabled,
        watched_keys=parse_keys_to_watch(annotations.get(KEYS_TO_WATCH_ANNOTATION)),
    )


def should_propagate(old: ConfigurationObject, new: ConfigurationObject) -> bool:
    """Return True when an update transition is a qualifying change.

    The policy always comes from *new*, so narrowing ``keys-to-watch`` can
    hide a change to a key that was watched before the update.
    """
    policy = watch_policy(new.annotations)
    if not policy.tracking_enabled:
        return False
    return fingerprint(old, policy.watched_keys) != fingerprint(new, policy.watched_keys)
