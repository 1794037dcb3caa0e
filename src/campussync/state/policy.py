"""Deterministic merge policy for realtime records.

Realtime notifications are authoritative over optimistic state, but a
notification carrying an older version than the one already held must not
win.  That is what keeps a stale notification from undoing a rollback.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from campussync.models._base import timestamp_seconds

DEFAULT_VERSION_FIELDS: tuple[str, ...] = ("updated_at", "created_at")


def record_version(
    record: Mapping[str, Any],
    fields: Sequence[str] = DEFAULT_VERSION_FIELDS,
) -> float | None:
    """Version of a row as epoch seconds: the first populated field wins."""
    for field in fields:
        ts = timestamp_seconds(record.get(field))
        if ts is not None:
            return ts
    return None


def should_accept_change(
    *,
    cached_version: float | None,
    incoming_version: float | None,
    skew_allowance_seconds: float,
) -> bool:
    """Decide whether an incoming realtime row replaces the cached one.

    Policy:
    - both versions known: accept unless the incoming one is older than the
      cached one by more than the skew allowance;
    - any version missing: the realtime row is authoritative.
    """
    if cached_version is None or incoming_version is None:
        return True
    return incoming_version >= (cached_version - skew_allowance_seconds)
