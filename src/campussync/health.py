"""Connection health monitor.

Watches the device's network state and the status of realtime channels,
and decides when every subscription has to be re-established.  Each
transition is announced exactly once.
"""

from __future__ import annotations

import asyncio
import logging

from campussync._constants import MSG_BACK_ONLINE, MSG_CONNECTION_LOST, MSG_OFFLINE, MSG_RECONNECTED
from campussync.reconciler import RealtimeReconciler
from campussync.state.events import ChannelStatus, SubscriptionKey
from campussync.toasts import Severity, ToastBus

_logger = logging.getLogger(__name__)


class ConnectionHealthMonitor:
    """Turns connectivity transitions into resubscription and status toasts.

    Going offline never tears down subscriptions; coming back online
    resubscribes everything and confirms it.  A channel drop while online
    is announced once, and the first confirmation after it triggers a
    full resubscription.
    """

    def __init__(
        self,
        reconciler: RealtimeReconciler,
        toasts: ToastBus,
        *,
        initially_online: bool = True,
    ) -> None:
        self._reconciler = reconciler
        self._toasts = toasts
        self._online = initially_online
        self._channel_dropped = False
        self._resyncing = False
        self._task: asyncio.Task[None] | None = None
        self._remove_listener = reconciler.add_status_listener(self._on_channel_status)

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def channel_dropped(self) -> bool:
        return self._channel_dropped

    @property
    def is_resyncing(self) -> bool:
        return self._resyncing

    async def set_online(self, online: bool) -> None:
        if online:
            await self.handle_online()
        else:
            self.handle_offline()

    def handle_offline(self) -> None:
        if not self._online:
            return
        self._online = False
        _logger.info("Network offline")
        self._post(MSG_OFFLINE, Severity.WARNING)

    async def handle_online(self) -> None:
        if self._online:
            return
        self._online = True
        self._channel_dropped = False
        _logger.info("Network back online, resubscribing")
        await self._resync(MSG_BACK_ONLINE)

    def _on_channel_status(self, key: SubscriptionKey, status: ChannelStatus) -> None:
        if self._resyncing:
            return
        if status is ChannelStatus.SUBSCRIBED:
            if self._channel_dropped and self._online:
                self._channel_dropped = False
                _logger.info("Channel %s recovered, resubscribing all", key.channel_id)
                self._task = asyncio.create_task(self._resync(MSG_RECONNECTED), name="campussync-resync")
            return
        if not self._online or self._channel_dropped:
            return
        self._channel_dropped = True
        _logger.warning("Channel %s lost (%s)", key.channel_id, status)
        self._post(MSG_CONNECTION_LOST, Severity.WARNING)

    async def _resync(self, confirmation: str) -> None:
        if self._resyncing:
            return
        self._resyncing = True
        try:
            await self._reconciler.resubscribe_all()
        finally:
            self._resyncing = False
        self._post(confirmation, Severity.SUCCESS)

    async def wait_idle(self) -> None:
        task = self._task
        if task is not None and not task.done():
            await task

    async def close(self) -> None:
        self._remove_listener()
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def _post(self, content: str, severity: Severity) -> None:
        try:
            self._toasts.post(content, severity)
        except Exception:
            _logger.debug("Failed to post status toast", exc_info=True)
