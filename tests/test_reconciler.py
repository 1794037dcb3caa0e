from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import pytest

from campussync.config import RetryPolicy
from campussync.exceptions import ApiError
from campussync.reconciler import RealtimeReconciler, SubscriptionState
from campussync.state.collection import is_ordered
from campussync.state.events import ChangeEvent, ChangeKind, ChannelStatus

if TYPE_CHECKING:
    from conftest import FakeFeed, RecordingSleep

Settle = Callable[[], Awaitable[None]]

_RECONNECT = RetryPolicy(max_retries=5, base_delay=1.0, max_delay=16.0)


def _ts(minute: int) -> str:
    return datetime(2026, 3, 1, 12, minute, tzinfo=UTC).isoformat()


def _post(post_id: str, minute: int, **extra: Any) -> dict[str, Any]:
    return {"id": post_id, "created_at": _ts(minute), "is_pinned": False, "pinned_at": None, **extra}


def _event(kind: ChangeKind, new: dict[str, Any] | None = None, old: dict[str, Any] | None = None) -> ChangeEvent:
    return ChangeEvent(entity_set="posts", kind=kind, new=new or {}, old=old or {})


def _reconciler(feed: FakeFeed, sleep: RecordingSleep, **kwargs: Any) -> RealtimeReconciler:
    return RealtimeReconciler(feed, policy=_RECONNECT, stagger=0.1, sleep=sleep, **kwargs)


@pytest.mark.asyncio
async def test_duplicate_subscribe_reuses_single_channel(fake_feed: FakeFeed, recording_sleep: RecordingSleep) -> None:
    reconciler = _reconciler(fake_feed, recording_sleep)
    received: list[str] = []

    first = await reconciler.subscribe("posts", ChangeKind.ALL, None, lambda e: received.append("a"))
    second = await reconciler.subscribe("posts", ChangeKind.ALL, None, lambda e: received.append("b"))

    assert first is second
    assert len(fake_feed.opened) == 1
    assert first.state is SubscriptionState.SUBSCRIBED

    fake_feed.latest("posts").emit(_event(ChangeKind.INSERT, _post("p1", 1)))
    assert received == ["a", "b"]


@pytest.mark.asyncio
async def test_concurrent_duplicate_subscribe_opens_one_channel(
    fake_feed: FakeFeed, recording_sleep: RecordingSleep
) -> None:
    reconciler = _reconciler(fake_feed, recording_sleep)

    handles = await asyncio.gather(
        reconciler.subscribe("posts", ChangeKind.ALL, "author_id=eq.1"),
        reconciler.subscribe("posts", ChangeKind.ALL, "author_id=eq.1"),
    )

    assert handles[0] is handles[1]
    assert fake_feed.open_attempts == 1


@pytest.mark.asyncio
async def test_different_filters_get_separate_channels(fake_feed: FakeFeed, recording_sleep: RecordingSleep) -> None:
    reconciler = _reconciler(fake_feed, recording_sleep)

    await reconciler.subscribe("saved_posts", ChangeKind.ALL, "user_id=eq.1")
    await reconciler.subscribe("saved_posts", ChangeKind.ALL, "user_id=eq.2")
    await reconciler.subscribe("saved_posts", ChangeKind.INSERT, "user_id=eq.1")

    assert len(fake_feed.opened) == 3
    assert len(reconciler.handles) == 3


@pytest.mark.asyncio
async def test_event_kind_filter_drops_other_kinds(fake_feed: FakeFeed, recording_sleep: RecordingSleep) -> None:
    reconciler = _reconciler(fake_feed, recording_sleep)
    received: list[ChangeKind] = []

    await reconciler.subscribe("posts", ChangeKind.INSERT, None, lambda e: received.append(e.kind))
    channel = fake_feed.latest("posts")
    channel.emit(_event(ChangeKind.UPDATE, _post("p1", 1)))
    channel.emit(_event(ChangeKind.INSERT, _post("p2", 2)))

    assert received == [ChangeKind.INSERT]


@pytest.mark.asyncio
async def test_reconnect_backoff_until_ceiling(
    fake_feed: FakeFeed, recording_sleep: RecordingSleep, settle_tasks: Settle
) -> None:
    fake_feed.fail_opens = 100
    reconciler = _reconciler(fake_feed, recording_sleep)
    statuses: list[ChannelStatus] = []
    reconciler.add_status_listener(lambda _key, status: statuses.append(status))

    handle = await reconciler.subscribe("posts")
    await settle_tasks()

    assert recording_sleep.delays == [1.0, 2.0, 4.0, 8.0, 16.0]
    assert fake_feed.open_attempts == 6
    assert handle.dead
    assert handle.state is SubscriptionState.DISCONNECTED
    assert statuses == [ChannelStatus.ERROR] * 6


@pytest.mark.asyncio
async def test_reconnect_attempts_reset_on_confirmed_subscription(
    fake_feed: FakeFeed, recording_sleep: RecordingSleep, settle_tasks: Settle
) -> None:
    reconciler = _reconciler(fake_feed, recording_sleep)
    handle = await reconciler.subscribe("posts")

    fake_feed.fail_opens = 2
    fake_feed.latest("posts").report(ChannelStatus.CLOSED)
    await settle_tasks()

    assert recording_sleep.delays == [1.0, 2.0, 4.0]
    assert handle.state is SubscriptionState.SUBSCRIBED
    assert handle.reconnect_attempts == 0

    fake_feed.latest("posts").report(ChannelStatus.CLOSED)
    await settle_tasks()

    assert recording_sleep.delays == [1.0, 2.0, 4.0, 1.0]


@pytest.mark.asyncio
async def test_status_from_replaced_channel_is_ignored(
    fake_feed: FakeFeed, recording_sleep: RecordingSleep, settle_tasks: Settle
) -> None:
    reconciler = _reconciler(fake_feed, recording_sleep)
    handle = await reconciler.subscribe("posts")
    old_channel = fake_feed.latest("posts")

    await reconciler.resubscribe_all()
    old_channel.report(ChannelStatus.CLOSED)
    await settle_tasks()

    assert old_channel.closed
    assert handle.state is SubscriptionState.SUBSCRIBED
    assert len(fake_feed.opened) == 2


@pytest.mark.asyncio
async def test_unsubscribe_cancels_pending_reconnect(
    fake_feed: FakeFeed, recording_sleep: RecordingSleep, settle_tasks: Settle
) -> None:
    reconciler = _reconciler(fake_feed, recording_sleep)
    handle = await reconciler.subscribe("posts")

    fake_feed.latest("posts").report(ChannelStatus.CLOSED)
    await reconciler.unsubscribe(handle)
    await settle_tasks()

    assert len(fake_feed.opened) == 1
    assert reconciler.handles == ()


@pytest.mark.asyncio
async def test_resubscribe_all_is_staggered_and_revives_dead_handles(
    fake_feed: FakeFeed, recording_sleep: RecordingSleep, settle_tasks: Settle
) -> None:
    reconciler = _reconciler(fake_feed, recording_sleep)
    await reconciler.subscribe("posts")
    await reconciler.subscribe("saved_posts", ChangeKind.ALL, "user_id=eq.1")

    fake_feed.fail_opens = 100
    fake_feed.latest("posts").report(ChannelStatus.CLOSED)
    await settle_tasks()
    dead = reconciler.handles[0]
    assert dead.dead

    fake_feed.fail_opens = 0
    recording_sleep.delays.clear()
    first_channels = list(fake_feed.opened)
    await reconciler.resubscribe_all()

    assert recording_sleep.delays == [0.1, 0.1]
    assert all(ch.closed for ch in first_channels if ch.key.entity_set == "saved_posts")
    assert all(h.state is SubscriptionState.SUBSCRIBED for h in reconciler.handles)
    assert not dead.dead
    assert len(fake_feed.opened) == len(first_channels) + 2


@pytest.mark.asyncio
async def test_tracked_collection_stays_ordered_under_shuffled_events(
    fake_feed: FakeFeed, recording_sleep: RecordingSleep
) -> None:
    reconciler = _reconciler(fake_feed, recording_sleep)
    live = await reconciler.track("posts", [_post("a", 1), _post("b", 2)])
    channel = fake_feed.latest("posts")

    for event in [
        _event(ChangeKind.INSERT, _post("e", 5)),
        _event(ChangeKind.INSERT, _post("c", 3)),
        _event(ChangeKind.UPDATE, _post("a", 1, is_pinned=True, pinned_at=_ts(40))),
        _event(ChangeKind.INSERT, _post("d", 4)),
        _event(ChangeKind.DELETE, old={"id": "c"}),
        _event(ChangeKind.UPDATE, _post("d", 4, is_pinned=True, pinned_at=_ts(50))),
    ]:
        channel.emit(event)
    await reconciler.drain()

    assert live.collection.ids() == ["d", "a", "e", "b"]
    assert is_ordered(live.records())


@pytest.mark.asyncio
async def test_pin_notification_moves_post_to_top(fake_feed: FakeFeed, recording_sleep: RecordingSleep) -> None:
    clock_time = datetime(2026, 3, 1, 13, 0, tzinfo=UTC)
    reconciler = _reconciler(fake_feed, recording_sleep, clock=lambda: clock_time)
    live = await reconciler.track("posts", [_post(str(i), i) for i in range(8)])
    assert live.collection.index_of("2") == 5

    applied = await reconciler.apply_change(live, _event(ChangeKind.UPDATE, _post("2", 2, is_pinned=True)))

    assert applied
    assert live.collection.index_of("2") == 0
    assert live.collection.get("2")["pinned_at"] == clock_time.isoformat()


@pytest.mark.asyncio
async def test_insert_uses_resolved_record(fake_feed: FakeFeed, recording_sleep: RecordingSleep) -> None:
    async def resolver(event: ChangeEvent) -> dict[str, Any]:
        return {**event.new, "author": {"id": "u1", "name": "Ada"}}

    reconciler = _reconciler(fake_feed, recording_sleep)
    live = await reconciler.track("posts", [], resolver=resolver)

    fake_feed.latest("posts").emit(_event(ChangeKind.INSERT, _post("p1", 1)))
    await reconciler.drain()

    assert live.collection.get("p1")["author"]["name"] == "Ada"


@pytest.mark.asyncio
async def test_resolver_failure_falls_back_to_notification_row(
    fake_feed: FakeFeed, recording_sleep: RecordingSleep
) -> None:
    async def resolver(_event: ChangeEvent) -> dict[str, Any]:
        raise ApiError("lookup failed", status_code=500)

    reconciler = _reconciler(fake_feed, recording_sleep)
    live = await reconciler.track("posts", [], resolver=resolver)

    assert await reconciler.apply_change(live, _event(ChangeKind.INSERT, _post("p1", 1, content="raw")))
    assert live.collection.get("p1")["content"] == "raw"


@pytest.mark.asyncio
async def test_late_update_does_not_resurrect_deleted_record(
    fake_feed: FakeFeed, recording_sleep: RecordingSleep
) -> None:
    reconciler = _reconciler(fake_feed, recording_sleep)
    live = await reconciler.track("posts", [_post("a", 1), _post("b", 2)])

    assert await reconciler.apply_change(live, _event(ChangeKind.DELETE, old={"id": "a"}))
    assert not await reconciler.apply_change(live, _event(ChangeKind.UPDATE, _post("a", 1, content="late")))

    assert live.collection.ids() == ["b"]


@pytest.mark.asyncio
async def test_stale_update_cannot_undo_newer_state(fake_feed: FakeFeed, recording_sleep: RecordingSleep) -> None:
    reconciler = _reconciler(fake_feed, recording_sleep)
    live = await reconciler.track("posts", [_post("a", 1, updated_at=_ts(30), content="current")])

    stale = _event(ChangeKind.UPDATE, _post("a", 1, updated_at=_ts(20), content="stale"))
    assert not await reconciler.apply_change(live, stale)
    assert live.collection.get("a")["content"] == "current"


@pytest.mark.asyncio
async def test_close_unsubscribes_everything(fake_feed: FakeFeed, recording_sleep: RecordingSleep) -> None:
    reconciler = _reconciler(fake_feed, recording_sleep)
    await reconciler.subscribe("posts")
    await reconciler.subscribe("saved_posts")

    await reconciler.close()

    assert reconciler.handles == ()
    assert all(ch.closed for ch in fake_feed.opened)
