"""Table endpoints (PostgREST).

Endpoint:
  - /rest/v1/<table>

Filters are PostgREST operator expressions keyed by column, e.g.
``{"user_id": "eq.42"}``; :func:`eq` builds the common case.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from campussync._api._common import raise_for_response
from campussync._constants import REST_PREFIX
from campussync._transport import Transport
from campussync.exceptions import ApiError

Filters = Mapping[str, str]

#: Feed ordering: pinned first (newest pin first), then newest post first.
FEED_ORDER = "is_pinned.desc,pinned_at.desc.nullslast,created_at.desc"


def eq(value: Any) -> str:
    """``eq.<value>`` filter expression (booleans lower-cased)."""
    if isinstance(value, bool):
        return f"eq.{str(value).lower()}"
    return f"eq.{value}"


def _endpoint(table: str) -> str:
    return f"{REST_PREFIX}/{table}"


def _rows(body: Any) -> list[dict[str, Any]]:
    if body is None:
        return []
    if isinstance(body, dict):
        return [body]
    if isinstance(body, list):
        return [row for row in body if isinstance(row, dict)]
    return []


async def select(
    transport: Transport,
    table: str,
    *,
    columns: str = "*",
    filters: Filters | None = None,
    order: str | None = None,
    limit: int | None = None,
) -> list[dict[str, Any]]:
    """Fetch rows visible to the caller."""
    params: dict[str, str] = {"select": columns}
    if filters:
        params.update(filters)
    if order:
        params["order"] = order
    if limit is not None:
        params["limit"] = str(limit)

    endpoint = _endpoint(table)
    response = await transport.request("GET", endpoint, params=params)
    raise_for_response(response, endpoint)
    return _rows(response.body)


async def select_one(
    transport: Transport,
    table: str,
    *,
    columns: str = "*",
    filters: Filters | None = None,
) -> dict[str, Any] | None:
    """Fetch at most one row; ``None`` when nothing matches."""
    rows = await select(transport, table, columns=columns, filters=filters, limit=1)
    return rows[0] if rows else None


async def insert(
    transport: Transport,
    table: str,
    rows: Mapping[str, Any] | Sequence[Mapping[str, Any]],
    *,
    returning: bool = True,
) -> list[dict[str, Any]]:
    endpoint = _endpoint(table)
    payload: Any = dict(rows) if isinstance(rows, Mapping) else [dict(r) for r in rows]
    response = await transport.request(
        "POST",
        endpoint,
        json_body=payload,
        headers={"prefer": "return=representation" if returning else "return=minimal"},
    )
    raise_for_response(response, endpoint)
    return _rows(response.body)


async def update(
    transport: Transport,
    table: str,
    values: Mapping[str, Any],
    *,
    filters: Filters,
    returning: bool = True,
) -> list[dict[str, Any]]:
    """Update matching rows.  An empty filter set is refused."""
    if not filters:
        raise ApiError(f"Refusing unfiltered update on {table}", endpoint=_endpoint(table))
    endpoint = _endpoint(table)
    response = await transport.request(
        "PATCH",
        endpoint,
        params=dict(filters),
        json_body=dict(values),
        headers={"prefer": "return=representation" if returning else "return=minimal"},
    )
    raise_for_response(response, endpoint)
    return _rows(response.body)


async def delete(
    transport: Transport,
    table: str,
    *,
    filters: Filters,
) -> None:
    """Delete matching rows.  An empty filter set is refused."""
    if not filters:
        raise ApiError(f"Refusing unfiltered delete on {table}", endpoint=_endpoint(table))
    endpoint = _endpoint(table)
    response = await transport.request("DELETE", endpoint, params=dict(filters))
    raise_for_response(response, endpoint)
