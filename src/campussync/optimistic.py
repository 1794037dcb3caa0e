"""Optimistic mutation store.

The store applies a patch locally before the remote operation runs and
rolls it back if the remote operation fails.  Mutations on the same key
are serialized; mutations on different keys run concurrently.

Rollback is a rebase rather than a blind restore: the snapshot taken
before the failed patch is restored and every patch journaled after it
(other optimistic patches and authoritative changes) is replayed on top.
With nothing interleaved this is exactly the pre-update snapshot.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

_logger = logging.getLogger(__name__)

S = TypeVar("S")

Patch = Callable[[S], S]
StateListener = Callable[[S], None]


@dataclass
class PendingMutation(Generic[S]):
    """An optimistic patch whose remote operation has not settled yet."""

    key: str
    seq: int
    forward_patch: Callable[[S], S]
    inverse_snapshot: S


@dataclass(frozen=True)
class _JournalEntry:
    seq: int
    key: str | None
    patch: Callable[[Any], Any]


class OptimisticStore(Generic[S]):
    """Observable state with optimistic, rollback-capable updates.

    Patches receive the current state and return the new state.  They may
    mutate the state in place; the store snapshots with *copier* before an
    optimistic patch runs.
    """

    def __init__(
        self,
        initial_state: S,
        *,
        copier: Callable[[S], S] = copy.deepcopy,
    ) -> None:
        self._state = initial_state
        self._copy = copier
        self._listeners: list[StateListener[S]] = []
        self._pending: dict[str, PendingMutation[S]] = {}
        self._journal: list[_JournalEntry] = []
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._seq = 0

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def get_state(self) -> S:
        return self._state

    @property
    def state(self) -> S:
        return self._state

    @property
    def pending_keys(self) -> frozenset[str]:
        return frozenset(self._pending)

    def is_pending(self, key: str) -> bool:
        return key in self._pending

    def subscribe(self, listener: StateListener[S]) -> Callable[[], None]:
        """Register a state listener.  Returns a callable that removes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def apply(self, patch: Patch[S]) -> S:
        """Apply an authoritative patch (realtime change, refetch)."""
        self._state = patch(self._state)
        if self._pending:
            self._seq += 1
            self._journal.append(_JournalEntry(self._seq, None, patch))
        self._notify()
        return self._state

    def replace(self, state: S) -> S:
        """Replace the whole state authoritatively."""
        return self.apply(lambda _current: self._copy(state))

    async def update(
        self,
        key: str,
        forward_patch: Patch[S],
        remote_operation: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Apply *forward_patch* now and confirm it with *remote_operation*.

        Returns the remote operation's result.  If it raises, the patch is
        rolled back, listeners are notified and the error propagates.
        """
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                return await self._run(key, forward_patch, remote_operation)
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    async def _run(
        self,
        key: str,
        forward_patch: Patch[S],
        remote_operation: Callable[[], Awaitable[Any]],
    ) -> Any:
        snapshot = self._copy(self._state)
        self._state = forward_patch(self._state)
        self._seq += 1
        mutation = PendingMutation(key=key, seq=self._seq, forward_patch=forward_patch, inverse_snapshot=snapshot)
        self._pending[key] = mutation
        self._journal.append(_JournalEntry(mutation.seq, key, forward_patch))
        self._notify()

        try:
            result = await remote_operation()
        except BaseException:
            _logger.debug("Remote operation for %s failed; rolling back", key)
            self._rollback(mutation)
            raise

        self._settle(mutation)
        _logger.debug("Optimistic update %s committed", key)
        self._notify()
        return result

    def _rollback(self, mutation: PendingMutation[S]) -> None:
        # Later pending mutations were snapshotted with this patch applied;
        # their snapshots are rebuilt from the rebased state as replay reaches them.
        later = {pending.seq: pending for pending in self._pending.values() if pending.seq > mutation.seq}
        state = self._copy(mutation.inverse_snapshot)
        for entry in self._journal:
            if entry.seq <= mutation.seq:
                continue
            rebased = later.get(entry.seq)
            if rebased is not None:
                rebased.inverse_snapshot = self._copy(state)
            state = entry.patch(state)
        self._state = state
        self._journal = [entry for entry in self._journal if entry.seq != mutation.seq]
        self._settle(mutation)
        self._notify()

    def _settle(self, mutation: PendingMutation[S]) -> None:
        self._pending.pop(mutation.key, None)
        if not self._pending:
            self._journal.clear()
            return
        oldest = min(pending.seq for pending in self._pending.values())
        self._journal = [entry for entry in self._journal if entry.seq > oldest]

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception:
                _logger.debug("State listener failed", exc_info=True)
