"""Local persistence of the assistant conversation."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path

from pydantic import TypeAdapter, ValidationError

from campussync._constants import MSG_HISTORY_LOAD_FAILED, MSG_HISTORY_SAVE_FAILED
from campussync.models.chat import ChatMessage
from campussync.toasts import Severity, ToastBus

_logger = logging.getLogger(__name__)

_MESSAGES = TypeAdapter(list[ChatMessage])


def save_chat_history(path: Path, messages: Sequence[ChatMessage], toasts: ToastBus | None = None) -> bool:
    """Write *messages* to *path* as JSON.  Returns False on failure."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(_MESSAGES.dump_json(list(messages), indent=2))
    except OSError:
        _logger.warning("Saving chat history to %s failed", path, exc_info=True)
        if toasts is not None:
            toasts.post(MSG_HISTORY_SAVE_FAILED, Severity.ERROR)
        return False
    return True


def load_chat_history(path: Path, toasts: ToastBus | None = None) -> list[ChatMessage]:
    """Read the saved conversation.  A missing file is an empty history."""
    if not path.exists():
        return []
    try:
        return _MESSAGES.validate_json(path.read_bytes())
    except (OSError, ValidationError):
        _logger.warning("Loading chat history from %s failed", path, exc_info=True)
        if toasts is not None:
            toasts.post(MSG_HISTORY_LOAD_FAILED, Severity.ERROR)
        return []
