"""AI FAQ assistant endpoint.

Endpoint:
  - /functions/v1/helpchat

The function is rate limited server-side.  Rate-limit replies surface as
:class:`~campussync.exceptions.RateLimitedError`, upstream failures as
:class:`~campussync.exceptions.ServiceError`; both are retryable.
"""

from __future__ import annotations

from collections.abc import Sequence

from campussync._api._common import raise_for_response
from campussync._constants import FUNCTIONS_PREFIX
from campussync._transport import Transport
from campussync.exceptions import ServiceError
from campussync.models.chat import ChatMessage

HELPCHAT_ENDPOINT = f"{FUNCTIONS_PREFIX}/helpchat"


async def complete(transport: Transport, messages: Sequence[ChatMessage]) -> str:
    """Send the conversation and return the assistant's reply text."""
    payload = {"messages": [{"role": m.role.value, "content": m.content} for m in messages]}
    response = await transport.request("POST", HELPCHAT_ENDPOINT, json_body=payload)
    raise_for_response(response, HELPCHAT_ENDPOINT, service_errors=True)

    body = response.body
    reply = body.get("message") if isinstance(body, dict) else None
    if not isinstance(reply, str):
        raise ServiceError(
            "Failed to get AI response",
            status_code=response.status,
            endpoint=HELPCHAT_ENDPOINT,
        )
    return reply
