from __future__ import annotations

import base64
from collections.abc import Iterable

from reloader.src.models import ConfigurationObject

FNV64_OFFSET_BASIS = 0xCBF29CE484222325
FNV64_PRIME = 0x100000001B3
_FNV64_MASK = 0xFFFFFFFFFFFFFFFF
ENTRY_SEPARATOR = ";"


def fnv1a_64(payload: bytes) -> int:
    """Return the 64-bit FNV-1a hash of *payload*.

    Pure Python, one multiply per byte: hashing costs roughly 0.15 s per
    MiB.  The change filter hashes both sides of every update on the
    watch thread, so very large Secrets delay delivery of the events
    queued behind them.
    """
    value = FNV64_OFFSET_BASIS
    for byte in payload:
        value ^= byte
        value = (value * FNV64_PRIME) & _FNV64_MASK
    return value


def _render_binary(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


def _selected_entries(
    config_object: ConfigurationObject, watched_keys: frozenset[str]
) -> list[str]:
    data = config_object.data
    binary_data = config_object.binary_data
    if not watched_keys:
        entries = [f"{k}={v}" for k, v in data.items()]
        entries.extend(f"{k}={_render_binary(v)}" for k, v in binary_data.items())
        return entries

    entries = []
    for key in watched_keys:
        if key in data:
            entries.append(f"{key}={data[key]}")
        if key in binary_data:
            entries.append(f"{key}={_render_binary(binary_data[key])}")
    return entries


def fingerprint(
    config_object: ConfigurationObject, watched_keys: Iterable[str] | None = None
) -> str:
    """Return a stable 16-character hex digest of the watched content.

    Entries are rendered as ``key=value`` (binary values as base64), sorted so
    storage order does not matter, joined with ``;`` and hashed with FNV-1a.
    With no watched keys every entry is included.  An object holding none of
    the watched keys hashes the empty string.

    Fingerprints are only comparable when computed with the same key set.
    """
    keys = frozenset(watched_keys or ())
    entries = sorted(_selected_entries(config_object, keys))
    payload = ENTRY_SEPARATOR.join(entries).encode("utf-8")
    return f"{fnv1a_64(payload):016x}"
