"""Shared response handling for endpoint modules."""

from __future__ import annotations

from typing import Any

from campussync._constants import (
    CREDENTIAL_EXPIRED_CODES,
    PERMISSION_DENIED_CODES,
    SERVICE_ERROR_STATUSES,
)
from campussync._transport import TransportResponse
from campussync.exceptions import (
    ApiError,
    CredentialExpiredError,
    PermissionDeniedError,
    RateLimitedError,
    ServiceError,
)


def _error_fields(body: Any) -> tuple[str, str]:
    """Pull ``(code, message)`` out of the several error shapes the backend uses.

    PostgREST sends ``{"code", "message"}``, the auth server
    ``{"error_code" | "error", "msg" | "error_description"}``, edge
    functions ``{"error": "..."}``.
    """
    if isinstance(body, dict):
        code = body.get("code") or body.get("error_code") or ""
        message = (
            body.get("message")
            or body.get("msg")
            or body.get("error_description")
            or body.get("error")
            or ""
        )
        if not code and isinstance(body.get("error"), str) and " " not in body["error"]:
            code = body["error"]
        return str(code), str(message)
    if isinstance(body, str):
        return "", body[:200]
    return "", ""


def parse_retry_after(value: str | None) -> float | None:
    """Seconds from a ``Retry-After`` header; HTTP-date forms are ignored."""
    if value is None:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def raise_for_response(
    response: TransportResponse,
    endpoint: str,
    *,
    service_errors: bool = False,
) -> None:
    """Map a non-2xx response onto the error taxonomy.

    Parameters
    ----------
    service_errors
        When ``True`` (assistant backend) 5xx statuses raise the retryable
        :class:`ServiceError` instead of a fatal :class:`ApiError`.
    """
    if response.ok:
        return

    status = response.status
    code, message = _error_fields(response.body)
    detail = f"{endpoint} failed: status={status} code={code} message={message}"

    if code in PERMISSION_DENIED_CODES:
        raise PermissionDeniedError(detail, status_code=status, code=code, endpoint=endpoint)
    if code in CREDENTIAL_EXPIRED_CODES:
        raise CredentialExpiredError(detail, status_code=status, code=code, endpoint=endpoint)
    if status == 429 or "rate limit" in message.lower():
        raise RateLimitedError(
            detail,
            status_code=status,
            code=code,
            endpoint=endpoint,
            retry_after=parse_retry_after(response.headers.get("retry-after")),
        )
    if service_errors and status in SERVICE_ERROR_STATUSES:
        raise ServiceError(detail, status_code=status, code=code, endpoint=endpoint)
    raise ApiError(detail, status_code=status, code=code, endpoint=endpoint)
