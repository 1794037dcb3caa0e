"""Two-tier ordered collection of records.

Records live in one of two tiers.  The pinned tier is ordered by
``pinned_at`` descending (missing values last), then ``created_at``
descending.  The unpinned tier is ordered by ``created_at`` descending.
Reading the collection yields the pinned tier followed by the unpinned
tier.  Identity ties are broken by ``id`` so that the order is total and
independent of arrival order.

Deleted identities are remembered as tombstones so that a late insert or
update notification cannot bring a removed record back.
"""

from __future__ import annotations

import bisect
import copy
import logging
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from campussync.models._base import timestamp_seconds
from campussync.state.policy import record_version, should_accept_change

_logger = logging.getLogger(__name__)

Record = dict[str, Any]
_SortKey = tuple[Any, ...]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _descending(value: Any) -> tuple[int, float]:
    ts = timestamp_seconds(value)
    if ts is None:
        return (1, 0.0)
    return (0, -ts)


@dataclass(frozen=True)
class Ordering:
    """Field names that drive the two-tier ordering."""

    id_field: str = "id"
    pinned_field: str = "is_pinned"
    pinned_at_field: str = "pinned_at"
    created_at_field: str = "created_at"
    version_fields: tuple[str, ...] = ("updated_at", "created_at")

    def is_pinned(self, record: Mapping[str, Any]) -> bool:
        return bool(record.get(self.pinned_field))

    def pinned_key(self, record: Mapping[str, Any]) -> _SortKey:
        return (
            _descending(record.get(self.pinned_at_field)),
            _descending(record.get(self.created_at_field)),
            str(record.get(self.id_field)),
        )

    def unpinned_key(self, record: Mapping[str, Any]) -> _SortKey:
        return (
            _descending(record.get(self.created_at_field)),
            str(record.get(self.id_field)),
        )

    def key_for(self, record: Mapping[str, Any]) -> _SortKey:
        return self.pinned_key(record) if self.is_pinned(record) else self.unpinned_key(record)


def is_ordered(records: Iterable[Mapping[str, Any]], ordering: Ordering | None = None) -> bool:
    """Return True if *records* satisfy the two-tier ordering invariant."""
    ordering = ordering or Ordering()
    seen_unpinned = False
    previous: _SortKey | None = None
    previous_pinned = True
    for record in records:
        pinned = ordering.is_pinned(record)
        if pinned and seen_unpinned:
            return False
        if not pinned:
            seen_unpinned = True
        key = ordering.key_for(record)
        if previous is not None and pinned == previous_pinned and key < previous:
            return False
        previous = key
        previous_pinned = pinned
    return True


class OrderedCollection:
    """Ordered view over records keyed by identity.

    All mutations go through :meth:`upsert`, :meth:`merge`, :meth:`patch`
    or :meth:`remove`, each of which leaves the collection ordered.
    """

    def __init__(
        self,
        records: Iterable[Mapping[str, Any]] = (),
        *,
        ordering: Ordering | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._ordering = ordering or Ordering()
        self._clock = clock
        self._pinned: list[Record] = []
        self._unpinned: list[Record] = []
        self._by_id: dict[Any, Record] = {}
        self._tombstones: set[Any] = set()
        for record in records:
            self.upsert(record)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    @property
    def ordering(self) -> Ordering:
        return self._ordering

    def __len__(self) -> int:
        return len(self._by_id)

    def __iter__(self) -> Iterator[Record]:
        yield from self._pinned
        yield from self._unpinned

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._by_id

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, OrderedCollection):
            return NotImplemented
        return self.records() == other.records() and self._tombstones == other._tombstones

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"OrderedCollection(pinned={len(self._pinned)}, unpinned={len(self._unpinned)})"

    def get(self, record_id: Any) -> Record | None:
        return self._by_id.get(record_id)

    def records(self) -> list[Record]:
        return [*self._pinned, *self._unpinned]

    def ids(self) -> list[Any]:
        id_field = self._ordering.id_field
        return [record[id_field] for record in self]

    def index_of(self, record_id: Any) -> int | None:
        record = self._by_id.get(record_id)
        if record is None:
            return None
        tier, index = self._locate(record)
        return index if tier is self._pinned else len(self._pinned) + index

    def is_deleted(self, record_id: Any) -> bool:
        return record_id in self._tombstones

    def version_of(self, record_id: Any) -> float | None:
        record = self._by_id.get(record_id)
        if record is None:
            return None
        return record_version(record, self._ordering.version_fields)

    def copy(self) -> OrderedCollection:
        return copy.deepcopy(self)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def upsert(self, record: Mapping[str, Any], *, pinned_at_default: datetime | None = None) -> Record:
        """Insert or replace a record, keeping both tiers sorted.

        A pinned record without ``pinned_at`` gets *pinned_at_default* (or
        the clock) so that its position is well defined.  An unpinned
        record has ``pinned_at`` cleared.
        """
        ordering = self._ordering
        record_id = record.get(ordering.id_field)
        if record_id is None:
            raise ValueError(f"record has no {ordering.id_field!r}")
        normalized = self._normalize(record, pinned_at_default)
        tier = self._pinned if ordering.is_pinned(normalized) else self._unpinned
        key = ordering.key_for(normalized)

        existing = self._by_id.get(record_id)
        if existing is not None:
            old_tier, index = self._locate(existing)
            if old_tier is tier and ordering.key_for(existing) == key:
                tier[index] = normalized
                self._by_id[record_id] = normalized
                return normalized
            del old_tier[index]

        bisect.insort(tier, normalized, key=ordering.key_for)
        self._by_id[record_id] = normalized
        self._tombstones.discard(record_id)
        return normalized

    def merge(
        self,
        record: Mapping[str, Any],
        *,
        skew_allowance_seconds: float = 0.0,
        pinned_at_default: datetime | None = None,
    ) -> bool:
        """Merge an authoritative record, subject to tombstones and versions.

        Returns True if the record was applied.
        """
        record_id = record.get(self._ordering.id_field)
        if record_id is None:
            return False
        if record_id in self._tombstones:
            _logger.debug("Ignoring change for deleted record %s", record_id)
            return False
        incoming = record_version(record, self._ordering.version_fields)
        if not should_accept_change(
            cached_version=self.version_of(record_id),
            incoming_version=incoming,
            skew_allowance_seconds=skew_allowance_seconds,
        ):
            _logger.debug("Ignoring stale change for record %s", record_id)
            return False
        self.upsert(record, pinned_at_default=pinned_at_default)
        return True

    def patch(self, record_id: Any, changes: Mapping[str, Any]) -> bool:
        """Apply field changes to an existing record.  Returns False if absent."""
        existing = self._by_id.get(record_id)
        if existing is None:
            return False
        self.upsert({**existing, **changes})
        return True

    def remove(self, record_id: Any, *, tombstone: bool = True) -> bool:
        """Remove a record.  Returns True if it was present."""
        if tombstone:
            self._tombstones.add(record_id)
        existing = self._by_id.pop(record_id, None)
        if existing is None:
            return False
        tier, index = self._locate(existing)
        del tier[index]
        return True

    def replace_all(self, records: Iterable[Mapping[str, Any]]) -> None:
        """Replace the contents with a freshly fetched authoritative list."""
        self._pinned.clear()
        self._unpinned.clear()
        self._by_id.clear()
        for record in records:
            self.upsert(record)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _normalize(self, record: Mapping[str, Any], pinned_at_default: datetime | None) -> Record:
        ordering = self._ordering
        normalized = dict(record)
        if ordering.is_pinned(normalized):
            if timestamp_seconds(normalized.get(ordering.pinned_at_field)) is None:
                stamp = pinned_at_default or self._clock()
                normalized[ordering.pinned_at_field] = stamp.isoformat()
        elif normalized.get(ordering.pinned_at_field) is not None:
            normalized[ordering.pinned_at_field] = None
        return normalized

    def _locate(self, record: Record) -> tuple[list[Record], int]:
        ordering = self._ordering
        tier = self._pinned if ordering.is_pinned(record) else self._unpinned
        key = ordering.key_for(record)
        index = bisect.bisect_left(tier, key, key=ordering.key_for)
        if index < len(tier) and tier[index] is record:
            return tier, index
        # Fallback for a record whose sort fields were mutated in place.
        for candidate_tier in (self._pinned, self._unpinned):
            for position, candidate in enumerate(candidate_tier):
                if candidate is record:
                    return candidate_tier, position
        raise KeyError(record.get(ordering.id_field))
