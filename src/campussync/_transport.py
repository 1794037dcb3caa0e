"""HTTP transport against the hosted backend (REST, auth, storage, functions)."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

import aiohttp

from campussync._constants import USER_AGENT
from campussync.config import CampusConfig
from campussync.exceptions import NetworkTransientError, TransportError

_logger = logging.getLogger(__name__)

_REDACTED_HEADERS: frozenset[str] = frozenset({"apikey", "authorization", "cookie"})


def redact_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Copy of *headers* safe for DEBUG logs."""
    return {k: ("<redacted>" if k.lower() in _REDACTED_HEADERS else v) for k, v in headers.items()}


@dataclass(frozen=True)
class TransportResponse:
    """Status, decoded body and headers of one HTTP exchange.

    ``body`` is the parsed JSON value when the response declared or
    contained JSON, otherwise the raw text (``None`` for an empty body).
    """

    status: int
    body: Any = None
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class Transport(Protocol):
    """Structural transport interface used by endpoint modules.

    Test doubles only need this one coroutine.
    """

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, str] | None = None,
        json_body: Any = None,
        data: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> TransportResponse:
        ...


def _decode_body(text: str, content_type: str, endpoint: str) -> Any:
    if not text:
        return None
    looks_like_json = "json" in content_type or text[:1] in ("{", "[")
    if not looks_like_json:
        return text
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        if "json" in content_type:
            raise TransportError(f"Invalid JSON from {endpoint}: {text[:200]}", endpoint=endpoint) from exc
        return text


class RestTransport:
    """aiohttp transport that stamps ``apikey`` and the caller's bearer token."""

    def __init__(
        self,
        config: CampusConfig,
        http_session: aiohttp.ClientSession,
        *,
        token_provider: Callable[[], str | None] | None = None,
    ) -> None:
        self._config = config
        self._http = http_session
        self._token_provider = token_provider

    def _build_headers(self, extra: Mapping[str, str] | None) -> dict[str, str]:
        token = self._token_provider() if self._token_provider is not None else None
        headers: dict[str, str] = {
            "accept": "application/json",
            "apikey": self._config.anon_key,
            "authorization": f"Bearer {token or self._config.anon_key}",
            "user-agent": USER_AGENT,
        }
        if extra:
            headers.update(extra)
        return headers

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, str] | None = None,
        json_body: Any = None,
        data: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> TransportResponse:
        """Perform one HTTP exchange.

        Non-2xx statuses are returned, not raised; mapping them onto the
        error taxonomy is :func:`campussync._api._common.raise_for_response`'s job.
        Only transport-level failures raise here.
        """
        url = f"{self._config.base_url}{path}"
        merged = self._build_headers(headers)

        _logger.debug("%s %s params=%s headers=%s", method, url, params, redact_headers(merged))

        try:
            async with self._http.request(
                method,
                url,
                params=dict(params) if params else None,
                json=json_body,
                data=data,
                headers=merged,
            ) as resp:
                text = await resp.text()
                content_type = resp.headers.get("Content-Type", "")
                response_headers = {k.lower(): v for k, v in resp.headers.items()}
                status = resp.status
        except aiohttp.ClientConnectionError as exc:
            raise NetworkTransientError(
                f"Request to {path} failed: {exc}",
                endpoint=path,
            ) from exc
        except aiohttp.ClientPayloadError as exc:
            raise NetworkTransientError(
                f"Connection dropped while reading {path}: {exc}",
                endpoint=path,
            ) from exc

        _logger.debug("%s %s -> HTTP %s", method, path, status)
        return TransportResponse(
            status=status,
            body=_decode_body(text, content_type, path),
            headers=response_headers,
        )
