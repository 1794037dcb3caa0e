"""Custom exception hierarchy for campussync."""

from __future__ import annotations


class CampusSyncError(Exception):
    """Base exception for all campussync errors."""


class ConfigError(CampusSyncError):
    """Invalid or missing configuration."""


class TransportError(CampusSyncError):
    """HTTP-level failure (invalid JSON, unexpected body shape)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class NetworkTransientError(TransportError):
    """Connection refused, DNS failure, reset.  Retried by the executor."""


class RequestTimeoutError(CampusSyncError):
    """The request did not complete within the configured timeout.

    Distinct from :class:`NetworkTransientError`: the in-flight call was
    cancelled and its result discarded.  Timeouts are not retried.
    """


class ApiError(CampusSyncError):
    """Backend answered with a non-2xx status (application-level error)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: str = "",
        endpoint: str = "",
    ) -> None:
        self.status_code = status_code
        self.code = code
        self.endpoint = endpoint
        super().__init__(message)


class PermissionDeniedError(ApiError):
    """Row-level security rejected the operation (code ``42501``).

    Fatal; never retried.
    """


class CredentialExpiredError(ApiError):
    """The refresh token is gone and the session cannot be renewed.

    Raising this forces a logout and a redirect to the sign-in surface.
    """


class RateLimitedError(ApiError):
    """Backend asked us to slow down (HTTP 429 or a "rate limit" error body).

    ``retry_after`` carries the server-directed delay in seconds, if any.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = 429,
        code: str = "",
        endpoint: str = "",
        retry_after: float | None = None,
    ) -> None:
        self.retry_after = retry_after
        super().__init__(message, status_code=status_code, code=code, endpoint=endpoint)


class ServiceError(ApiError):
    """Upstream service failure (5xx from the assistant backend).  Retryable."""


class TerminalConnectionError(CampusSyncError):
    """Retries exhausted.  ``attempts`` is the total number of tries made."""

    def __init__(self, message: str, *, attempts: int = 0) -> None:
        self.attempts = attempts
        super().__init__(message)


class UploadValidationError(CampusSyncError):
    """Media rejected before upload (unsupported type or too large)."""
