"""Process-scoped bus for transient user-facing status messages.

One :class:`ToastBus` lives for the lifetime of a :class:`~campussync.client.CampusClient`
and is injected into every component that needs to tell the user something.
Display timeouts belong to the consumer; the bus only keeps insertion order.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

_logger = logging.getLogger(__name__)


class Severity(StrEnum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class Position(StrEnum):
    TOP = "top"
    BOTTOM = "bottom"


class ToastMessage(BaseModel):
    """A single status message awaiting display or dismissal."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    content: str
    severity: Severity = Severity.INFO
    position: Position = Position.BOTTOM


ToastListener = Callable[[tuple[ToastMessage, ...]], None]


class ToastBus:
    """Ordered collection of live toasts with change listeners."""

    def __init__(self) -> None:
        self._messages: list[ToastMessage] = []
        self._listeners: list[ToastListener] = []

    @property
    def messages(self) -> tuple[ToastMessage, ...]:
        """Live messages in display order."""
        return tuple(self._messages)

    def post(
        self,
        content: str,
        severity: Severity = Severity.INFO,
        position: Position = Position.BOTTOM,
    ) -> str:
        """Append a message and return its fresh identifier."""
        message = ToastMessage(content=content, severity=severity, position=position)
        self._messages.append(message)
        _logger.debug("Toast posted id=%s severity=%s content=%s", message.id, severity, content)
        self._notify()
        return message.id

    def dismiss(self, message_id: str) -> None:
        """Remove a message.  Unknown identifiers are ignored."""
        remaining = [m for m in self._messages if m.id != message_id]
        if len(remaining) == len(self._messages):
            return
        self._messages = remaining
        self._notify()

    def clear(self) -> None:
        if not self._messages:
            return
        self._messages = []
        self._notify()

    def subscribe(self, listener: ToastListener) -> Callable[[], None]:
        """Register *listener*; the returned callable unregisters it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self) -> None:
        snapshot = self.messages
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                _logger.debug("Toast listener failed", exc_info=True)
