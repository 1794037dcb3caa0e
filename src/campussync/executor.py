"""Resilient request executor.

Every outbound call is funnelled through :meth:`ResilientExecutor.execute`,
which adds a per-attempt timeout, bounded exponential backoff for
transient failures and the user-facing status toasts for each outcome.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from campussync._constants import (
    MSG_PERMISSION_DENIED,
    MSG_REQUEST_FAILED,
    MSG_RETRYING,
    MSG_SESSION_EXPIRED,
    MSG_TIMEOUT,
    MSG_UNREACHABLE,
)
from campussync.config import RetryPolicy
from campussync.exceptions import (
    ApiError,
    CredentialExpiredError,
    NetworkTransientError,
    PermissionDeniedError,
    RateLimitedError,
    RequestTimeoutError,
    ServiceError,
    TerminalConnectionError,
)
from campussync.session import SessionManager
from campussync.toasts import Severity, ToastBus

_logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]
Sleep = Callable[[float], Awaitable[None]]

_RETRYABLE = (NetworkTransientError, RateLimitedError, ServiceError)


class ResilientExecutor:
    """Runs remote operations with timeout, retry and failure reporting.

    Parameters
    ----------
    toasts : ToastBus | None
        Where status messages are posted.  Posting failures never affect
        the outcome of the call.
    sessions : SessionManager | None
        Forced logout target for expired credentials.
    timeout : float
        Per-attempt timeout in seconds.
    policy : RetryPolicy
        Default policy when a call site does not pass its own.
    sleep : callable
        Awaitable used between attempts.
    current_path : callable
        Returns the user's current location, so that the sign-in redirect
        can be skipped when already there.
    """

    def __init__(
        self,
        *,
        toasts: ToastBus | None = None,
        sessions: SessionManager | None = None,
        timeout: float = 15.0,
        policy: RetryPolicy | None = None,
        sleep: Sleep = asyncio.sleep,
        current_path: Callable[[], str | None] | None = None,
    ) -> None:
        self._toasts = toasts
        self._sessions = sessions
        self._timeout = timeout
        self._policy = policy or RetryPolicy()
        self._sleep = sleep
        self._current_path = current_path

    @property
    def timeout(self) -> float:
        return self._timeout

    async def execute(
        self,
        operation: Operation[T],
        *,
        policy: RetryPolicy | None = None,
        label: str = "request",
        timeout: float | None = None,
    ) -> T:
        """Run *operation* until it succeeds, fails terminally or times out.

        Raises
        ------
        RequestTimeoutError
            An attempt exceeded the timeout.  Not retried.
        PermissionDeniedError
            Access control rejected the call.  Not retried.
        CredentialExpiredError
            The session is gone; the user has been logged out.
        TerminalConnectionError
            A transient failure persisted past ``policy.max_retries``.
        ApiError
            Any other backend error, after a single attempt.
        """
        effective = policy or self._policy
        limit = self._timeout if timeout is None else timeout
        attempt = 0
        while True:
            attempt += 1
            try:
                return await asyncio.wait_for(operation(), limit)
            except TimeoutError as exc:
                _logger.warning("%s timed out after %.1fs (attempt %d)", label, limit, attempt)
                self._post(MSG_TIMEOUT, Severity.ERROR)
                raise RequestTimeoutError(f"{label} timed out after {limit:.1f}s") from exc
            except PermissionDeniedError:
                _logger.warning("%s rejected by access control", label)
                self._post(MSG_PERMISSION_DENIED, Severity.ERROR)
                raise
            except CredentialExpiredError:
                _logger.warning("%s failed: credentials expired, forcing logout", label)
                self._expire_credentials()
                raise
            except _RETRYABLE as exc:
                if attempt > effective.max_retries:
                    _logger.error("%s failed after %d attempts: %s", label, attempt, exc)
                    message = MSG_UNREACHABLE if isinstance(exc, NetworkTransientError) else MSG_REQUEST_FAILED
                    self._post(message, Severity.ERROR)
                    raise TerminalConnectionError(
                        f"{label} failed after {attempt} attempts: {exc}",
                        attempts=attempt,
                    ) from exc
                delay = self._retry_delay(effective, attempt, exc)
                _logger.info(
                    "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                    label,
                    attempt,
                    effective.max_retries + 1,
                    delay,
                    exc,
                )
                self._post(MSG_RETRYING, Severity.WARNING)
                await self._sleep(delay)
            except ApiError as exc:
                _logger.warning("%s failed: %s", label, exc)
                self._post(MSG_REQUEST_FAILED, Severity.ERROR)
                raise

    @staticmethod
    def _retry_delay(policy: RetryPolicy, attempt: int, exc: Exception) -> float:
        retry_after = getattr(exc, "retry_after", None)
        if retry_after is not None and retry_after >= 0:
            return float(retry_after)
        return policy.delay_for(attempt)

    def _expire_credentials(self) -> None:
        self._post(MSG_SESSION_EXPIRED, Severity.WARNING)
        if self._sessions is None:
            return
        current_path = None
        if self._current_path is not None:
            try:
                current_path = self._current_path()
            except Exception:
                _logger.debug("current_path provider failed", exc_info=True)
        self._sessions.expire(current_path)

    def _post(self, content: str, severity: Severity) -> None:
        if self._toasts is None:
            return
        try:
            self._toasts.post(content, severity)
        except Exception:
            _logger.debug("Failed to post status toast", exc_info=True)
