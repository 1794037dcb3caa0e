"""Realtime change feed over the Phoenix websocket protocol.

One websocket carries every channel.  A channel is joined with a
``postgres_changes`` filter and then receives one ``postgres_changes``
message per committed row change.  The server confirms a join with a
``phx_reply`` and reports channel loss with ``phx_close``/``phx_error``.

Message building and parsing are plain functions so they can be exercised
without a socket.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from collections.abc import Callable
from typing import Any, Protocol

import aiohttp
from pydantic import ValidationError

from campussync._constants import REALTIME_PATH
from campussync.config import CampusConfig
from campussync.exceptions import NetworkTransientError
from campussync.models._base import parse_timestamp
from campussync.state.events import ChangeEvent, ChangeKind, ChannelStatus, SubscriptionKey

_logger = logging.getLogger(__name__)

PHOENIX_TOPIC = "phoenix"
PROTOCOL_VERSION = "1.0.0"
DEFAULT_SCHEMA = "public"

ChangeHandler = Callable[[ChangeEvent], None]
StatusHandler = Callable[[ChannelStatus], None]


class Channel(Protocol):
    """An open subscription channel."""

    async def close(self) -> None:
        ...


class ChangeFeed(Protocol):
    """Anything that can open subscription channels.

    ``on_status`` receives ``SUBSCRIBED`` once the server confirms the
    join, and ``CLOSED``/``ERROR`` when the channel is lost.  It is never
    called after :meth:`Channel.close`.
    """

    async def open_channel(
        self,
        key: SubscriptionKey,
        *,
        on_change: ChangeHandler,
        on_status: StatusHandler,
    ) -> Channel:
        ...


# ------------------------------------------------------------------
# Wire format
# ------------------------------------------------------------------


def topic_for(key: SubscriptionKey) -> str:
    return f"realtime:{key.channel_id}"


def build_socket_url(config: CampusConfig) -> str:
    return (
        f"{config.realtime_url}{REALTIME_PATH}"
        f"?apikey={config.anon_key}&eventsPerSecond={config.realtime_events_per_second}&vsn={PROTOCOL_VERSION}"
    )


def build_join_message(key: SubscriptionKey, ref: str, access_token: str | None = None) -> dict[str, Any]:
    change: dict[str, Any] = {
        "event": key.event_kind.value,
        "schema": DEFAULT_SCHEMA,
        "table": key.entity_set,
    }
    if key.filter:
        change["filter"] = key.filter
    payload: dict[str, Any] = {
        "config": {
            "broadcast": {"ack": False, "self": False},
            "presence": {"key": ""},
            "postgres_changes": [change],
        },
    }
    if access_token:
        payload["access_token"] = access_token
    return {
        "topic": topic_for(key),
        "event": "phx_join",
        "payload": payload,
        "ref": ref,
        "join_ref": ref,
    }


def build_leave_message(topic: str, ref: str) -> dict[str, Any]:
    return {"topic": topic, "event": "phx_leave", "payload": {}, "ref": ref}


def build_heartbeat_message(ref: str) -> dict[str, Any]:
    return {"topic": PHOENIX_TOPIC, "event": "heartbeat", "payload": {}, "ref": ref}


def parse_change(entity_set: str, payload: dict[str, Any]) -> ChangeEvent | None:
    """Convert a ``postgres_changes`` payload into a :class:`ChangeEvent`.

    Returns ``None`` for payloads that do not describe a row change.
    """
    data = payload.get("data")
    if not isinstance(data, dict):
        return None
    raw_kind = str(data.get("type") or data.get("eventType") or "").upper()
    try:
        kind = ChangeKind(raw_kind)
    except ValueError:
        return None
    if kind is ChangeKind.ALL:
        return None
    record = data.get("record")
    old_record = data.get("old_record")
    try:
        return ChangeEvent(
            entity_set=str(data.get("table") or entity_set),
            kind=kind,
            new=record if isinstance(record, dict) else {},
            old=old_record if isinstance(old_record, dict) else {},
            commit_timestamp=parse_timestamp(data.get("commit_timestamp")),
        )
    except ValidationError:
        _logger.debug("Discarding malformed change payload", exc_info=True)
        return None


def reply_status(payload: dict[str, Any]) -> ChannelStatus:
    return ChannelStatus.SUBSCRIBED if payload.get("status") == "ok" else ChannelStatus.ERROR


# ------------------------------------------------------------------
# Socket
# ------------------------------------------------------------------


class RealtimeChannel:
    """Channel joined on a :class:`RealtimeSocket`."""

    def __init__(
        self,
        socket: RealtimeSocket,
        key: SubscriptionKey,
        *,
        on_change: ChangeHandler,
        on_status: StatusHandler,
    ) -> None:
        self._socket = socket
        self.key = key
        self.topic = topic_for(key)
        self._on_change = on_change
        self._on_status = on_status
        self.closed = False

    def deliver(self, event: ChangeEvent) -> None:
        if self.closed:
            return
        try:
            self._on_change(event)
        except Exception:
            _logger.debug("Change handler failed for %s", self.topic, exc_info=True)

    def report(self, status: ChannelStatus) -> None:
        if self.closed:
            return
        if status is not ChannelStatus.SUBSCRIBED:
            self.closed = True
        try:
            self._on_status(status)
        except Exception:
            _logger.debug("Status handler failed for %s", self.topic, exc_info=True)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self._socket.leave(self)


class RealtimeSocket:
    """aiohttp websocket multiplexing realtime channels.

    The socket connects lazily on the first :meth:`open_channel`.  When it
    drops, every joined channel is reported ``CLOSED``; the next
    :meth:`open_channel` reconnects.
    """

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
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader: asyncio.Task[None] | None = None
        self._heartbeat: asyncio.Task[None] | None = None
        self._channels: dict[str, RealtimeChannel] = {}
        self._pending_joins: dict[str, RealtimeChannel] = {}
        self._refs = itertools.count(1)
        self._connect_lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    def _next_ref(self) -> str:
        return str(next(self._refs))

    async def connect(self) -> None:
        async with self._connect_lock:
            if self.is_connected:
                return
            url = build_socket_url(self._config)
            _logger.debug("Realtime connecting to %s", url.split("?", 1)[0])
            try:
                self._ws = await self._http.ws_connect(url, autoping=True)
            except (aiohttp.ClientError, OSError) as exc:
                raise NetworkTransientError(f"Realtime connection failed: {exc}", endpoint=REALTIME_PATH) from exc
            self._reader = asyncio.create_task(self._read_loop(self._ws), name="campussync-realtime-reader")
            self._heartbeat = asyncio.create_task(self._heartbeat_loop(), name="campussync-realtime-heartbeat")
            _logger.debug("Realtime websocket connected")

    async def open_channel(
        self,
        key: SubscriptionKey,
        *,
        on_change: ChangeHandler,
        on_status: StatusHandler,
    ) -> RealtimeChannel:
        await self.connect()
        channel = RealtimeChannel(self, key, on_change=on_change, on_status=on_status)
        previous = self._channels.get(channel.topic)
        if previous is not None:
            previous.closed = True
        self._channels[channel.topic] = channel
        ref = self._next_ref()
        self._pending_joins[ref] = channel
        token = self._token_provider() if self._token_provider is not None else None
        await self._send(build_join_message(key, ref, token))
        _logger.debug("Realtime join sent topic=%s ref=%s", channel.topic, ref)
        return channel

    async def leave(self, channel: RealtimeChannel) -> None:
        if self._channels.get(channel.topic) is channel:
            del self._channels[channel.topic]
        if not self.is_connected:
            return
        try:
            await self._send(build_leave_message(channel.topic, self._next_ref()))
        except NetworkTransientError:
            _logger.debug("Realtime leave for %s not sent", channel.topic, exc_info=True)

    async def close(self) -> None:
        """Close the socket without reporting channel loss."""
        for channel in self._channels.values():
            channel.closed = True
        self._channels.clear()
        self._pending_joins.clear()
        for task in (self._heartbeat, self._reader):
            if task is not None and not task.done():
                task.cancel()
        self._heartbeat = None
        self._reader = None
        ws = self._ws
        self._ws = None
        if ws is not None and not ws.closed:
            await ws.close()

    async def _send(self, message: dict[str, Any]) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            raise NetworkTransientError("Realtime socket is not connected", endpoint=REALTIME_PATH)
        try:
            await ws.send_str(json.dumps(message))
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            raise NetworkTransientError(f"Realtime send failed: {exc}", endpoint=REALTIME_PATH) from exc

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.heartbeat_interval)
            try:
                await self._send(build_heartbeat_message(self._next_ref()))
            except NetworkTransientError:
                _logger.warning("Realtime heartbeat failed; dropping socket", exc_info=True)
                await self._drop_socket()
                return

    async def _drop_socket(self) -> None:
        """Tear down a socket that stopped answering and report every channel closed."""
        ws = self._ws
        reader = self._reader
        self._reader = None
        if self._heartbeat is asyncio.current_task():
            self._heartbeat = None
        if ws is not None:
            self._on_socket_lost()
        if reader is not None and not reader.done():
            reader.cancel()
        if ws is not None and not ws.closed:
            await ws.close()

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type is aiohttp.WSMsgType.TEXT:
                    try:
                        message = json.loads(msg.data)
                    except json.JSONDecodeError:
                        _logger.debug("Realtime frame is not JSON: %.200s", msg.data)
                        continue
                    if isinstance(message, dict):
                        self.dispatch(message)
                elif msg.type in (aiohttp.WSMsgType.ERROR, aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED):
                    break
        finally:
            if self._ws is ws:
                self._on_socket_lost()

    def dispatch(self, message: dict[str, Any]) -> None:
        """Route one decoded server message to its channel."""
        topic = str(message.get("topic") or "")
        event = message.get("event")
        payload = message.get("payload")
        if not isinstance(payload, dict):
            payload = {}

        if event == "phx_reply":
            ref = str(message.get("ref") or "")
            joining = self._pending_joins.pop(ref, None)
            if joining is None:
                return
            status = reply_status(payload)
            if status is ChannelStatus.ERROR:
                _logger.warning("Realtime join rejected topic=%s response=%s", topic, payload.get("response"))
                if self._channels.get(joining.topic) is joining:
                    del self._channels[joining.topic]
            joining.report(status)
            return

        channel = self._channels.get(topic)
        if channel is None:
            return
        if event == "postgres_changes":
            change = parse_change(channel.key.entity_set, payload)
            if change is not None:
                channel.deliver(change)
        elif event in ("phx_close", "phx_error"):
            del self._channels[topic]
            status = ChannelStatus.CLOSED if event == "phx_close" else ChannelStatus.ERROR
            _logger.debug("Realtime channel %s reported %s", topic, status)
            channel.report(status)

    def _on_socket_lost(self) -> None:
        _logger.info("Realtime websocket disconnected")
        self._ws = None
        if self._heartbeat is not None and not self._heartbeat.done():
            self._heartbeat.cancel()
        self._heartbeat = None
        channels = list(self._channels.values())
        self._channels.clear()
        self._pending_joins.clear()
        for channel in channels:
            channel.report(ChannelStatus.CLOSED)
