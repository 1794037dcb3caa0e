"""Session state and the forced-logout side effect."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from pydantic import BaseModel, ConfigDict, Field

_logger = logging.getLogger(__name__)

#: Refresh this many seconds before the access token actually lapses.
EXPIRY_MARGIN_SECONDS: float = 30.0


class Session(BaseModel):
    """Authenticated session returned by the auth endpoints.

    Parameters
    ----------
    user_id : str
        Identity used by server-side access-control evaluation.
    access_token : str
        Bearer token for REST, storage and realtime calls.
    refresh_token : str
        Token exchanged for a new access token when it lapses.
    expires_at : float
        Epoch seconds at which ``access_token`` stops being accepted.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        str_strip_whitespace=True,
    )

    user_id: str
    access_token: str
    refresh_token: str = ""
    expires_at: float = Field(default_factory=lambda: time.time() + 3600)

    @property
    def is_expired(self) -> bool:
        """Whether the access token is (about to be) rejected."""
        return time.time() >= (self.expires_at - EXPIRY_MARGIN_SECONDS)


class SessionManager:
    """Owns the current session and the logout/redirect side effects.

    ``navigator`` is whatever moves the user to another surface (a router
    push in a UI, a no-op in tests).  It is called with ``sign_in_path``
    when the credentials expire.
    """

    def __init__(
        self,
        *,
        sign_in_path: str = "/auth",
        navigator: Callable[[str], None] | None = None,
    ) -> None:
        self._session: Session | None = None
        self._sign_in_path = sign_in_path
        self._navigator = navigator
        self._logout_listeners: list[Callable[[], None]] = []

    @property
    def current(self) -> Session | None:
        return self._session

    @property
    def is_authenticated(self) -> bool:
        return self._session is not None

    @property
    def user_id(self) -> str | None:
        return self._session.user_id if self._session is not None else None

    def login(self, session: Session) -> None:
        self._session = session
        _logger.debug("Session established user_id=%s", session.user_id)

    def logout(self) -> None:
        if self._session is None:
            return
        _logger.debug("Session cleared user_id=%s", self._session.user_id)
        self._session = None
        for listener in list(self._logout_listeners):
            try:
                listener()
            except Exception:
                _logger.debug("Logout listener failed", exc_info=True)

    def on_logout(self, listener: Callable[[], None]) -> Callable[[], None]:
        self._logout_listeners.append(listener)

        def _remove() -> None:
            if listener in self._logout_listeners:
                self._logout_listeners.remove(listener)

        return _remove

    def expire(self, current_path: str | None = None) -> None:
        """Forced logout followed by a redirect to the sign-in surface.

        The redirect is skipped when the user is already on it.
        """
        self.logout()
        if self._navigator is None:
            return
        if current_path is not None and self._sign_in_path in current_path:
            return
        try:
            self._navigator(self._sign_in_path)
        except Exception:
            _logger.debug("Sign-in navigation failed", exc_info=True)
