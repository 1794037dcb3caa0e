from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest

from campussync.exceptions import NetworkTransientError
from campussync.state.events import ChangeEvent, ChannelStatus, SubscriptionKey


class RecordingSleep:
    """Stand-in for ``asyncio.sleep`` that records delays without waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeChannel:
    def __init__(
        self,
        key: SubscriptionKey,
        on_change: Callable[[ChangeEvent], None],
        on_status: Callable[[ChannelStatus], None],
    ) -> None:
        self.key = key
        self._on_change = on_change
        self._on_status = on_status
        self.closed = False

    def emit(self, event: ChangeEvent) -> None:
        self._on_change(event)

    def report(self, status: ChannelStatus) -> None:
        self._on_status(status)

    async def close(self) -> None:
        self.closed = True


class FakeFeed:
    """In-memory change feed.

    ``auto_subscribe`` confirms every join immediately; ``fail_opens`` makes
    that many consecutive opens raise a transient network error.
    """

    def __init__(self, *, auto_subscribe: bool = True, fail_opens: int = 0) -> None:
        self.auto_subscribe = auto_subscribe
        self.fail_opens = fail_opens
        self.opened: list[FakeChannel] = []
        self.open_attempts = 0

    async def open_channel(
        self,
        key: SubscriptionKey,
        *,
        on_change: Callable[[ChangeEvent], None],
        on_status: Callable[[ChannelStatus], None],
    ) -> FakeChannel:
        self.open_attempts += 1
        if self.fail_opens:
            self.fail_opens -= 1
            raise NetworkTransientError("realtime unreachable")
        channel = FakeChannel(key, on_change, on_status)
        self.opened.append(channel)
        if self.auto_subscribe:
            on_status(ChannelStatus.SUBSCRIBED)
        return channel

    def channels_for(self, entity_set: str) -> list[FakeChannel]:
        return [ch for ch in self.opened if ch.key.entity_set == entity_set]

    def latest(self, entity_set: str) -> FakeChannel:
        return self.channels_for(entity_set)[-1]


async def settle(rounds: int = 50) -> None:
    """Let scheduled tasks run to completion."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def fake_feed() -> FakeFeed:
    return FakeFeed()


@pytest.fixture
def settle_tasks() -> Callable[..., object]:
    return settle
