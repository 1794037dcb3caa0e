"""Normalized change-feed events.

The websocket layer converts raw ``postgres_changes`` payloads into these
events.  Only the reconciler is allowed to merge them into collections.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ChangeKind(StrEnum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    ALL = "*"


class ChannelStatus(StrEnum):
    SUBSCRIBED = "SUBSCRIBED"
    CLOSED = "CLOSED"
    ERROR = "ERROR"


@dataclass(frozen=True)
class SubscriptionKey:
    """Identity of a subscription: one channel per distinct key."""

    entity_set: str
    event_kind: ChangeKind = ChangeKind.ALL
    filter: str | None = None

    @property
    def channel_id(self) -> str:
        return f"{self.entity_set}_{self.event_kind.value}_{self.filter or ''}"

    def matches(self, kind: ChangeKind) -> bool:
        return self.event_kind is ChangeKind.ALL or self.event_kind is kind


class ChangeEvent(BaseModel):
    """One row-level change delivered by the realtime feed."""

    model_config = ConfigDict(frozen=True)

    entity_set: str
    kind: ChangeKind
    new: dict[str, Any] = Field(default_factory=dict, description="Row after the change")
    old: dict[str, Any] = Field(default_factory=dict, description="Row before the change (keys only for DELETE)")
    commit_timestamp: datetime | None = None
    observed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("entity_set")
    @classmethod
    def _normalize_entity_set(cls, value: str) -> str:
        entity_set = value.strip()
        if not entity_set:
            raise ValueError("entity_set must be non-empty")
        return entity_set

    @field_validator("kind")
    @classmethod
    def _concrete_kind(cls, value: ChangeKind) -> ChangeKind:
        if value is ChangeKind.ALL:
            raise ValueError("a change event must be INSERT, UPDATE or DELETE")
        return value

    @field_validator("commit_timestamp", "observed_at")
    @classmethod
    def _ensure_tz_aware(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    def record_id(self, id_field: str = "id") -> Any:
        """Identity of the affected row, from ``new`` or else ``old``."""
        value = self.new.get(id_field)
        if value is None:
            value = self.old.get(id_field)
        return value
