"""Auth endpoints.

Endpoints:
  - /auth/v1/token?grant_type=password
  - /auth/v1/token?grant_type=refresh_token
  - /auth/v1/logout
"""

from __future__ import annotations

import logging
import time
from typing import Any

from campussync._api._common import raise_for_response
from campussync._constants import AUTH_PREFIX
from campussync._transport import Transport
from campussync.exceptions import ApiError
from campussync.session import Session

_logger = logging.getLogger(__name__)

TOKEN_ENDPOINT = f"{AUTH_PREFIX}/token"
LOGOUT_ENDPOINT = f"{AUTH_PREFIX}/logout"


def parse_token_response(body: Any) -> Session:
    """Build a :class:`Session` from a token grant response."""
    if not isinstance(body, dict):
        raise ApiError("Token response is not an object", endpoint=TOKEN_ENDPOINT)

    user = body.get("user")
    user_id = user.get("id") if isinstance(user, dict) else None
    access_token = body.get("access_token")
    if not isinstance(user_id, str) or not isinstance(access_token, str):
        raise ApiError("Token response missing user id or access token", endpoint=TOKEN_ENDPOINT)

    expires_at = body.get("expires_at")
    if not isinstance(expires_at, (int, float)):
        expires_in = body.get("expires_in")
        expires_at = time.time() + (float(expires_in) if isinstance(expires_in, (int, float)) else 3600.0)

    return Session(
        user_id=user_id,
        access_token=access_token,
        refresh_token=str(body.get("refresh_token") or ""),
        expires_at=float(expires_at),
    )


async def sign_in_with_password(transport: Transport, email: str, password: str) -> Session:
    response = await transport.request(
        "POST",
        TOKEN_ENDPOINT,
        params={"grant_type": "password"},
        json_body={"email": email, "password": password},
    )
    raise_for_response(response, TOKEN_ENDPOINT)
    session = parse_token_response(response.body)
    _logger.debug("Signed in user_id=%s", session.user_id)
    return session


async def refresh_session(transport: Transport, refresh_token: str) -> Session:
    """Exchange *refresh_token* for a fresh session.

    A missing or revoked refresh token surfaces as
    :class:`~campussync.exceptions.CredentialExpiredError`.
    """
    response = await transport.request(
        "POST",
        TOKEN_ENDPOINT,
        params={"grant_type": "refresh_token"},
        json_body={"refresh_token": refresh_token},
    )
    raise_for_response(response, TOKEN_ENDPOINT)
    return parse_token_response(response.body)


async def sign_out(transport: Transport) -> None:
    response = await transport.request("POST", LOGOUT_ENDPOINT)
    raise_for_response(response, LOGOUT_ENDPOINT)
