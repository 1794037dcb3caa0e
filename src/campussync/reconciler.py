"""Realtime change reconciler.

Owns every live subscription, keeps each one alive with bounded
exponential backoff, and merges change notifications into
:class:`LiveCollection` instances without breaking their ordering.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from campussync._realtime import Channel, ChangeFeed
from campussync.config import RetryPolicy
from campussync.exceptions import CampusSyncError
from campussync.optimistic import OptimisticStore
from campussync.state.collection import OrderedCollection, Ordering
from campussync.state.events import ChangeEvent, ChangeKind, ChannelStatus, SubscriptionKey

_logger = logging.getLogger(__name__)

ChangeCallback = Callable[[ChangeEvent], Any]
StatusListener = Callable[[SubscriptionKey, ChannelStatus], None]
Resolver = Callable[[ChangeEvent], Awaitable[Mapping[str, Any] | None]]
Sleep = Callable[[float], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SubscriptionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"


@dataclass(eq=False)
class SubscriptionHandle:
    """A live subscription.  At most one exists per :class:`SubscriptionKey`."""

    key: SubscriptionKey
    callbacks: list[ChangeCallback] = field(default_factory=list)
    channel: Channel | None = None
    state: SubscriptionState = SubscriptionState.DISCONNECTED
    reconnect_attempts: int = 0
    dead: bool = False
    closed: bool = False
    generation: int = 0
    reconnect_task: asyncio.Task[None] | None = field(default=None, repr=False)

    @property
    def id(self) -> str:
        return self.key.channel_id


@dataclass(eq=False)
class LiveCollection:
    """An ordered collection kept current by one subscription."""

    entity_set: str
    store: OptimisticStore[OrderedCollection]
    filter: str | None = None
    resolver: Resolver | None = None
    handle: SubscriptionHandle | None = None

    @property
    def collection(self) -> OrderedCollection:
        return self.store.get_state()

    def records(self) -> list[dict[str, Any]]:
        return self.collection.records()


class RealtimeReconciler:
    """Subscription registry plus the merge step for change notifications.

    Parameters
    ----------
    feed : ChangeFeed
        Opens the underlying channels.
    policy : RetryPolicy
        Reconnect ceiling and backoff per subscription.
    stagger : float
        Pause before each channel is reopened by :meth:`resubscribe_all`.
    skew_allowance_seconds : float
        Tolerance when an incoming record version is older than the cached one.
    """

    def __init__(
        self,
        feed: ChangeFeed,
        *,
        policy: RetryPolicy | None = None,
        stagger: float = 0.1,
        skew_allowance_seconds: float = 0.0,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._feed = feed
        self._policy = policy or RetryPolicy(max_retries=5, base_delay=1.0, max_delay=16.0)
        self._stagger = stagger
        self._skew = skew_allowance_seconds
        self._sleep = sleep
        self._clock = clock
        self._handles: dict[SubscriptionKey, SubscriptionHandle] = {}
        self._status_listeners: list[StatusListener] = []
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def handles(self) -> tuple[SubscriptionHandle, ...]:
        return tuple(self._handles.values())

    def get_handle(self, key: SubscriptionKey) -> SubscriptionHandle | None:
        return self._handles.get(key)

    def add_status_listener(self, listener: StatusListener) -> Callable[[], None]:
        """Observe channel status changes.  Returns a remover."""
        self._status_listeners.append(listener)

        def _remove() -> None:
            if listener in self._status_listeners:
                self._status_listeners.remove(listener)

        return _remove

    # ------------------------------------------------------------------
    # Subscription lifecycle
    # ------------------------------------------------------------------

    async def subscribe(
        self,
        entity_set: str,
        event_kind: ChangeKind = ChangeKind.ALL,
        filter: str | None = None,
        callback: ChangeCallback | None = None,
    ) -> SubscriptionHandle:
        """Subscribe to changes of *entity_set*.

        Subscribing again with the same key returns the existing handle
        and only registers the extra callback.
        """
        key = SubscriptionKey(entity_set=entity_set, event_kind=ChangeKind(event_kind), filter=filter)
        handle = self._handles.get(key)
        if handle is not None:
            if callback is not None and callback not in handle.callbacks:
                handle.callbacks.append(callback)
            _logger.debug("Reusing subscription %s", handle.id)
            return handle

        handle = SubscriptionHandle(key=key)
        if callback is not None:
            handle.callbacks.append(callback)
        self._handles[key] = handle
        _logger.debug("Subscribing %s", handle.id)
        await self._open(handle)
        return handle

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        """Close *handle* and cancel any reconnect it has scheduled."""
        if self._handles.get(handle.key) is handle:
            del self._handles[handle.key]
        handle.closed = True
        handle.generation += 1
        handle.state = SubscriptionState.DISCONNECTED
        self._cancel_reconnect(handle)
        await self._close_channel(handle)
        _logger.debug("Unsubscribed %s", handle.id)

    async def resubscribe_all(self) -> None:
        """Tear down and re-establish every subscription, one at a time.

        Subscriptions that gave up reconnecting are included.
        """
        handles = list(self._handles.values())
        _logger.info("Resubscribing %d channel(s)", len(handles))
        for handle in handles:
            if handle.closed:
                continue
            self._cancel_reconnect(handle)
            handle.generation += 1
            await self._close_channel(handle)
            handle.state = SubscriptionState.DISCONNECTED
            await self._sleep(self._stagger)
            if handle.closed:
                continue
            handle.dead = False
            await self._open(handle)

    async def close(self) -> None:
        for handle in list(self._handles.values()):
            await self.unsubscribe(handle)
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    async def _open(self, handle: SubscriptionHandle) -> None:
        handle.generation += 1
        generation = handle.generation
        handle.state = SubscriptionState.CONNECTING

        def on_status(status: ChannelStatus) -> None:
            self._on_status(handle, generation, status)

        def on_change(event: ChangeEvent) -> None:
            self._on_change(handle, generation, event)

        try:
            channel = await self._feed.open_channel(handle.key, on_change=on_change, on_status=on_status)
        except CampusSyncError as exc:
            _logger.warning("Opening channel %s failed: %s", handle.id, exc)
            if generation == handle.generation:
                self._on_status(handle, generation, ChannelStatus.ERROR)
            return

        superseded = generation != handle.generation or handle.closed
        if superseded or handle.state is SubscriptionState.DISCONNECTED:
            await self._close_quietly(channel)
            return
        handle.channel = channel

    def _on_status(self, handle: SubscriptionHandle, generation: int, status: ChannelStatus) -> None:
        if generation != handle.generation or handle.closed:
            return
        if status is ChannelStatus.SUBSCRIBED:
            handle.state = SubscriptionState.SUBSCRIBED
            handle.reconnect_attempts = 0
            handle.dead = False
            _logger.debug("Subscribed %s", handle.id)
        else:
            handle.state = SubscriptionState.DISCONNECTED
            handle.channel = None
            _logger.info("Channel %s reported %s", handle.id, status)
        self._notify_status(handle.key, status)
        if status is not ChannelStatus.SUBSCRIBED:
            self._schedule_reconnect(handle)

    def _schedule_reconnect(self, handle: SubscriptionHandle) -> None:
        if handle.closed:
            return
        if handle.reconnect_task is not None and not handle.reconnect_task.done():
            return
        if handle.reconnect_attempts >= self._policy.max_retries:
            handle.dead = True
            _logger.error(
                "Giving up on channel %s after %d reconnect attempts",
                handle.id,
                handle.reconnect_attempts,
            )
            return
        handle.reconnect_attempts += 1
        delay = self._policy.delay_for(handle.reconnect_attempts)
        _logger.info(
            "Reconnecting %s in %.1fs (attempt %d/%d)",
            handle.id,
            delay,
            handle.reconnect_attempts,
            self._policy.max_retries,
        )
        handle.reconnect_task = asyncio.create_task(
            self._reconnect_after(handle, delay),
            name=f"campussync-reconnect-{handle.id}",
        )

    async def _reconnect_after(self, handle: SubscriptionHandle, delay: float) -> None:
        await self._sleep(delay)
        handle.reconnect_task = None
        if handle.closed:
            return
        handle.generation += 1
        await self._close_channel(handle)
        await self._open(handle)

    def _cancel_reconnect(self, handle: SubscriptionHandle) -> None:
        task = handle.reconnect_task
        handle.reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _close_channel(self, handle: SubscriptionHandle) -> None:
        channel = handle.channel
        handle.channel = None
        if channel is not None:
            await self._close_quietly(channel)

    @staticmethod
    async def _close_quietly(channel: Channel) -> None:
        try:
            await channel.close()
        except CampusSyncError:
            _logger.debug("Closing channel failed", exc_info=True)

    def _notify_status(self, key: SubscriptionKey, status: ChannelStatus) -> None:
        for listener in list(self._status_listeners):
            try:
                listener(key, status)
            except Exception:
                _logger.debug("Status listener failed", exc_info=True)

    def _on_change(self, handle: SubscriptionHandle, generation: int, event: ChangeEvent) -> None:
        if generation != handle.generation or handle.closed:
            return
        if not handle.key.matches(event.kind):
            return
        for callback in list(handle.callbacks):
            try:
                result = callback(event)
            except Exception:
                _logger.warning("Change callback failed for %s", handle.id, exc_info=True)
                continue
            if inspect.isawaitable(result):
                self._spawn(result)

    def _spawn(self, awaitable: Awaitable[Any]) -> None:
        async def _runner() -> None:
            await awaitable

        task = asyncio.create_task(_runner())
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _logger.warning("Change handler failed", exc_info=exc)

    async def drain(self) -> None:
        """Wait until every scheduled change handler has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Live collections
    # ------------------------------------------------------------------

    async def track(
        self,
        entity_set: str,
        initial_records: Iterable[Mapping[str, Any]] = (),
        *,
        filter: str | None = None,
        resolver: Resolver | None = None,
        ordering: Ordering | None = None,
    ) -> LiveCollection:
        """Keep an ordered collection of *entity_set* current.

        *resolver* turns a notification into the full record to store (for
        example, a follow-up fetch with joined relations).  When it is
        missing or fails, the notification's own row is used.
        """
        collection = OrderedCollection(initial_records, ordering=ordering, clock=self._clock)
        live = LiveCollection(
            entity_set=entity_set,
            store=OptimisticStore(collection),
            filter=filter,
            resolver=resolver,
        )

        async def _handle(event: ChangeEvent) -> None:
            await self.apply_change(live, event)

        live.handle = await self.subscribe(entity_set, ChangeKind.ALL, filter, _handle)
        return live

    async def apply_change(self, live: LiveCollection, event: ChangeEvent) -> bool:
        """Merge one notification into *live*.  Returns True if applied."""
        ordering = live.collection.ordering
        record_id = event.record_id(ordering.id_field)
        if record_id is None:
            _logger.debug("Change on %s without identity ignored", event.entity_set)
            return False

        if event.kind is ChangeKind.DELETE:
            removed: list[bool] = []

            def _delete(collection: OrderedCollection) -> OrderedCollection:
                removed.append(collection.remove(record_id))
                return collection

            live.store.apply(_delete)
            _logger.debug("Deleted %s from %s", record_id, live.entity_set)
            return bool(removed and removed[0])

        if live.collection.is_deleted(record_id):
            _logger.debug("Change for deleted %s ignored", record_id)
            return False

        record: Mapping[str, Any] | None = event.new
        if live.resolver is not None:
            try:
                resolved = await live.resolver(event)
            except CampusSyncError as exc:
                _logger.debug("Resolving %s failed, using notification row: %s", record_id, exc)
            else:
                if resolved:
                    record = resolved
        if not record or record.get(ordering.id_field) is None:
            return False

        accepted: list[bool] = []
        merged = dict(record)
        pinned_at_default = event.commit_timestamp or self._clock()

        def _merge(collection: OrderedCollection) -> OrderedCollection:
            accepted.append(
                collection.merge(
                    merged,
                    skew_allowance_seconds=self._skew,
                    pinned_at_default=pinned_at_default,
                )
            )
            return collection

        live.store.apply(_merge)
        return bool(accepted and accepted[0])
