"""High-level async client for the campus social feed."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from datetime import UTC, datetime
from typing import Any, TypeVar

import aiohttp

from campussync._api import assistant as _assistant_api
from campussync._api import auth as _auth_api
from campussync._api import storage as _storage_api
from campussync._api import tables as _tables_api
from campussync._api.tables import FEED_ORDER, eq
from campussync._realtime import ChangeFeed, RealtimeSocket
from campussync._transport import RestTransport, Transport
from campussync.config import CampusConfig, RetryPolicy
from campussync.exceptions import ApiError, CampusSyncError, CredentialExpiredError, UploadValidationError
from campussync.executor import ResilientExecutor
from campussync.health import ConnectionHealthMonitor
from campussync.models.chat import ChatMessage, ChatRole
from campussync.models.media import UploadResult
from campussync.models.post import POST_COLUMNS, Post, likes_of
from campussync.reconciler import LiveCollection, RealtimeReconciler
from campussync.request_queue import SerialRequestQueue
from campussync.session import Session, SessionManager
from campussync.state.collection import OrderedCollection
from campussync.state.events import ChangeEvent, ChangeKind
from campussync.toasts import Severity, ToastBus

_logger = logging.getLogger(__name__)

T = TypeVar("T")

POSTS_TABLE = "posts"
LIKES_TABLE = "post_likes"
SAVED_TABLE = "saved_posts"
PROFILES_TABLE = "profiles"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class CampusClient:
    """Async client for the campus feed, assistant and media uploads.

    Usage::

        async with CampusClient(CampusConfig.from_env()) as client:
            await client.sign_in(email, password)
            await client.open_feed()
            await client.toggle_like(post_id)

    *transport* and *feed* replace the aiohttp-backed defaults (tests pass
    fakes).  *navigator* receives the sign-in path on forced logout and
    *current_path* reports where the user currently is.
    """

    def __init__(
        self,
        config: CampusConfig,
        *,
        session: aiohttp.ClientSession | None = None,
        transport: Transport | None = None,
        feed: ChangeFeed | None = None,
        toasts: ToastBus | None = None,
        navigator: Callable[[str], None] | None = None,
        current_path: Callable[[], str | None] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._config = config
        self._external_session = session is not None
        self._http_session = session
        self._transport = transport
        self._feed_source = feed
        self._owned_socket: RealtimeSocket | None = None
        self._sleep = sleep
        self._clock = clock

        self.toasts = toasts or ToastBus()
        self.sessions = SessionManager(sign_in_path=config.sign_in_path, navigator=navigator)
        self.executor = ResilientExecutor(
            toasts=self.toasts,
            sessions=self.sessions,
            timeout=config.request_timeout,
            policy=config.rest_retry,
            sleep=sleep,
            current_path=current_path,
        )
        self._assistant_queue: SerialRequestQueue[list[ChatMessage], str] = SerialRequestQueue(
            self._dispatch_assistant,
            name="assistant",
        )
        self._reconciler: RealtimeReconciler | None = None
        self._monitor: ConnectionHealthMonitor | None = None
        self._feed: LiveCollection | None = None

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> CampusClient:
        if self._transport is None or self._feed_source is None:
            if self._http_session is None:
                self._http_session = aiohttp.ClientSession()
        if self._transport is None:
            self._transport = RestTransport(self._config, self._http_session, token_provider=self._access_token)
        if self._feed_source is None:
            self._owned_socket = RealtimeSocket(self._config, self._http_session, token_provider=self._access_token)
            self._feed_source = self._owned_socket
        self._reconciler = RealtimeReconciler(
            self._feed_source,
            policy=self._config.realtime_reconnect,
            stagger=self._config.resubscribe_stagger,
            skew_allowance_seconds=self._config.skew_allowance_seconds,
            sleep=self._sleep,
            clock=self._clock,
        )
        self._monitor = ConnectionHealthMonitor(self._reconciler, self.toasts)
        return self

    async def __aexit__(self, *exc: Any) -> None:
        if self._monitor is not None:
            await self._monitor.close()
            self._monitor = None
        if self._reconciler is not None:
            await self._reconciler.close()
            self._reconciler = None
        await self._assistant_queue.close()
        self._feed = None
        if self._owned_socket is not None:
            await self._owned_socket.close()
            self._owned_socket = None
            self._feed_source = None
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def config(self) -> CampusConfig:
        return self._config

    @property
    def reconciler(self) -> RealtimeReconciler:
        if self._reconciler is None:
            raise CampusSyncError("Client not initialized. Use 'async with CampusClient(...) as client:'")
        return self._reconciler

    @property
    def monitor(self) -> ConnectionHealthMonitor:
        if self._monitor is None:
            raise CampusSyncError("Client not initialized. Use 'async with CampusClient(...) as client:'")
        return self._monitor

    @property
    def feed(self) -> LiveCollection | None:
        return self._feed

    def _require_transport(self) -> Transport:
        if self._transport is None:
            raise CampusSyncError("Client not initialized. Use 'async with CampusClient(...) as client:'")
        return self._transport

    def _require_feed(self) -> LiveCollection:
        if self._feed is None:
            raise CampusSyncError("Feed not open. Call open_feed() first")
        return self._feed

    def _require_user_id(self) -> str:
        user_id = self.sessions.user_id
        if user_id is None:
            raise CampusSyncError("Not signed in")
        return user_id

    def _access_token(self) -> str | None:
        current = self.sessions.current
        return current.access_token if current is not None else None

    async def _call(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        label: str,
        policy: RetryPolicy | None = None,
    ) -> T:
        return await self.executor.execute(operation, policy=policy or self._config.rest_retry, label=label)

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def sign_in(self, email: str, password: str) -> Session:
        transport = self._require_transport()
        session = await self._call(
            lambda: _auth_api.sign_in_with_password(transport, email, password),
            label="sign_in",
        )
        self.sessions.login(session)
        return session

    async def sign_out(self) -> None:
        """End the session remotely (best effort) and drop local feed state."""
        transport = self._require_transport()
        try:
            if self.sessions.is_authenticated:
                await _auth_api.sign_out(transport)
        except CampusSyncError:
            _logger.debug("Remote sign-out failed", exc_info=True)
        finally:
            self.sessions.logout()
            if self._reconciler is not None:
                for handle in self._reconciler.handles:
                    await self._reconciler.unsubscribe(handle)
            self._feed = None

    async def ensure_session(self) -> Session:
        """Return an active session, refreshing the access token if needed.

        Raises
        ------
        CredentialExpiredError
            The session could not be refreshed; the user has been logged out.
        """
        current = self.sessions.current
        if current is None:
            raise CampusSyncError("Not signed in")
        if not current.is_expired:
            return current
        if not current.refresh_token:
            self.sessions.expire()
            raise CredentialExpiredError("Session expired and no refresh token is available")

        transport = self._require_transport()
        try:
            refreshed = await self._call(
                lambda: _auth_api.refresh_session(transport, current.refresh_token),
                label="refresh_session",
            )
        except CredentialExpiredError:
            raise
        except ApiError as exc:
            self.sessions.expire()
            raise CredentialExpiredError(
                f"Session refresh rejected: {exc}",
                status_code=exc.status_code,
                code=exc.code,
                endpoint=exc.endpoint,
            ) from exc
        self.sessions.login(refreshed)
        return refreshed

    async def check_connection(self, timeout: float | None = None) -> bool:
        """Cheap reachability probe.  Never raises and never posts toasts."""
        transport = self._require_transport()
        limit = self._config.connection_check_timeout if timeout is None else timeout
        try:
            await asyncio.wait_for(
                _tables_api.select(transport, PROFILES_TABLE, columns="id", limit=1),
                limit,
            )
        except (TimeoutError, CampusSyncError) as exc:
            _logger.debug("Connection check failed: %s", exc)
            return False
        return True

    async def set_online(self, online: bool) -> None:
        """Feed a network online/offline transition to the health monitor."""
        await self.monitor.set_online(online)

    # ------------------------------------------------------------------
    # Feed
    # ------------------------------------------------------------------

    async def open_feed(self) -> LiveCollection:
        """Load the ordered feed and keep it current through realtime changes."""
        await self.ensure_session()
        user_id = self._require_user_id()
        transport = self._require_transport()

        rows = await self._call(
            lambda: _tables_api.select(transport, POSTS_TABLE, columns=POST_COLUMNS, order=FEED_ORDER),
            label="load_feed",
        )
        saved_rows = await self._call(
            lambda: _tables_api.select(transport, SAVED_TABLE, columns="post_id", filters={"user_id": eq(user_id)}),
            label="load_saved_posts",
        )
        saved_ids = {row.get("post_id") for row in saved_rows}
        records = [{**row, "is_saved": row.get("id") in saved_ids} for row in rows]

        if self._feed is not None and self._feed.handle is not None:
            await self.reconciler.unsubscribe(self._feed.handle)
        live = await self.reconciler.track(POSTS_TABLE, records, resolver=self._resolve_post)
        self._feed = live
        await self.reconciler.subscribe(
            SAVED_TABLE,
            ChangeKind.ALL,
            f"user_id=eq.{user_id}",
            self._on_saved_change,
        )
        _logger.debug("Feed opened with %d posts", len(records))
        return live

    def feed_posts(self) -> list[Post]:
        return [Post.model_validate(record) for record in self._require_feed().records()]

    async def _resolve_post(self, event: ChangeEvent) -> dict[str, Any] | None:
        post_id = event.record_id()
        transport = self._require_transport()
        row = await self._call(
            lambda: _tables_api.select_one(
                transport,
                POSTS_TABLE,
                columns=POST_COLUMNS,
                filters={"id": eq(post_id)},
            ),
            label="resolve_post",
        )
        if row is None:
            return None
        if event.kind is ChangeKind.INSERT:
            return {**row, "is_saved": await self._is_saved(post_id)}
        existing = self._feed.collection.get(post_id) if self._feed is not None else None
        return {**row, "is_saved": bool(existing and existing.get("is_saved"))}

    async def _is_saved(self, post_id: str) -> bool:
        user_id = self.sessions.user_id
        if user_id is None:
            return False
        transport = self._require_transport()
        saved = await self._call(
            lambda: _tables_api.select_one(
                transport,
                SAVED_TABLE,
                columns="post_id",
                filters={"post_id": eq(post_id), "user_id": eq(user_id)},
            ),
            label="resolve_saved",
        )
        return saved is not None

    def _on_saved_change(self, event: ChangeEvent) -> None:
        live = self._feed
        if live is None:
            return
        post_id = event.new.get("post_id") or event.old.get("post_id")
        if post_id is None:
            return
        saved = event.kind is not ChangeKind.DELETE

        def _mark(collection: OrderedCollection) -> OrderedCollection:
            collection.patch(post_id, {"is_saved": saved})
            return collection

        live.store.apply(_mark)

    # ------------------------------------------------------------------
    # Optimistic feed mutations
    # ------------------------------------------------------------------

    async def toggle_like(self, post_id: str) -> bool:
        """Like or unlike a post.  Returns the new liked state."""
        live = self._require_feed()
        user_id = self._require_user_id()
        transport = self._require_transport()
        self._require_post(live, post_id)
        intent: dict[str, bool] = {}

        def forward(collection: OrderedCollection) -> OrderedCollection:
            record = collection.get(post_id)
            if record is None:
                return collection
            likes = likes_of(record)
            liked = any(like.get("user_id") == user_id for like in likes)
            intent["like"] = not liked
            remaining = [like for like in likes if like.get("user_id") != user_id]
            if not liked:
                remaining.append({"post_id": post_id, "user_id": user_id, "created_at": self._clock().isoformat()})
            collection.patch(post_id, {"likes": remaining})
            return collection

        async def remote() -> None:
            if "like" not in intent:
                return
            if intent.get("like", True):
                await self._call(
                    lambda: _tables_api.insert(
                        transport,
                        LIKES_TABLE,
                        {"post_id": post_id, "user_id": user_id},
                        returning=False,
                    ),
                    label="like_post",
                )
            else:
                await self._call(
                    lambda: _tables_api.delete(
                        transport,
                        LIKES_TABLE,
                        filters={"post_id": eq(post_id), "user_id": eq(user_id)},
                    ),
                    label="unlike_post",
                )

        await live.store.update(f"like:{post_id}", forward, remote)
        return intent.get("like", True)

    async def toggle_pin(self, post_id: str) -> bool:
        """Pin or unpin a post.  Returns the new pinned state."""
        live = self._require_feed()
        user_id = self._require_user_id()
        transport = self._require_transport()
        self._require_post(live, post_id)
        changes: dict[str, Any] = {}

        def forward(collection: OrderedCollection) -> OrderedCollection:
            record = collection.get(post_id)
            if record is None:
                return collection
            pinned = not bool(record.get("is_pinned"))
            changes.clear()
            changes.update(
                is_pinned=pinned,
                pinned_at=self._clock().isoformat() if pinned else None,
                pinned_by=user_id if pinned else None,
            )
            collection.patch(post_id, changes)
            return collection

        async def remote() -> None:
            if not changes:
                return
            await self._call(
                lambda: _tables_api.update(
                    transport,
                    POSTS_TABLE,
                    dict(changes),
                    filters={"id": eq(post_id)},
                    returning=False,
                ),
                label="pin_post",
            )

        await live.store.update(f"pin:{post_id}", forward, remote)
        return bool(changes.get("is_pinned"))

    async def toggle_save(self, post_id: str) -> bool:
        """Save or unsave a post.  Returns the new saved state."""
        live = self._require_feed()
        user_id = self._require_user_id()
        transport = self._require_transport()
        self._require_post(live, post_id)
        intent: dict[str, bool] = {}

        def forward(collection: OrderedCollection) -> OrderedCollection:
            record = collection.get(post_id)
            if record is None:
                return collection
            intent["save"] = not bool(record.get("is_saved"))
            collection.patch(post_id, {"is_saved": intent["save"]})
            return collection

        async def remote() -> None:
            if "save" not in intent:
                return
            if intent.get("save", True):
                await self._call(
                    lambda: _tables_api.insert(
                        transport,
                        SAVED_TABLE,
                        {"post_id": post_id, "user_id": user_id},
                        returning=False,
                    ),
                    label="save_post",
                )
            else:
                await self._call(
                    lambda: _tables_api.delete(
                        transport,
                        SAVED_TABLE,
                        filters={"post_id": eq(post_id), "user_id": eq(user_id)},
                    ),
                    label="unsave_post",
                )

        await live.store.update(f"save:{post_id}", forward, remote)
        return intent.get("save", True)

    async def delete_post(self, post_id: str) -> None:
        live = self._require_feed()
        transport = self._require_transport()
        self._require_post(live, post_id)

        def forward(collection: OrderedCollection) -> OrderedCollection:
            collection.remove(post_id)
            return collection

        async def remote() -> None:
            await self._call(
                lambda: _tables_api.delete(transport, POSTS_TABLE, filters={"id": eq(post_id)}),
                label="delete_post",
            )

        await live.store.update(f"post:{post_id}", forward, remote)

    @staticmethod
    def _require_post(live: LiveCollection, post_id: str) -> None:
        if post_id not in live.collection:
            raise CampusSyncError(f"Unknown post {post_id}")

    # ------------------------------------------------------------------
    # Assistant
    # ------------------------------------------------------------------

    async def ask_assistant(self, history: Sequence[ChatMessage]) -> ChatMessage:
        """Send the recent conversation and return the assistant's reply.

        Requests are serialized: a second question waits until the first one
        has settled, including its retries.
        """
        if not history:
            raise ValueError("history must contain at least one message")
        recent = list(history)[-self._config.assistant_history_limit :]
        reply = await self._assistant_queue.enqueue(recent)
        return ChatMessage(role=ChatRole.ASSISTANT, content=reply, timestamp=self._clock())

    async def _dispatch_assistant(self, messages: list[ChatMessage]) -> str:
        transport = self._require_transport()
        return await self._call(
            lambda: _assistant_api.complete(transport, messages),
            label="assistant",
            policy=self._config.assistant_retry,
        )

    # ------------------------------------------------------------------
    # Media
    # ------------------------------------------------------------------

    async def upload_media(
        self,
        filename: str,
        data: bytes,
        content_type: str,
        *,
        bucket: str = "posts",
        on_progress: Callable[[int], None] | None = None,
    ) -> UploadResult:
        """Validate and upload a media file for a post, message or profile."""
        user_id = self._require_user_id()
        transport = self._require_transport()
        try:
            _storage_api.validate_media(content_type, len(data))
        except UploadValidationError as exc:
            self.toasts.post(str(exc), Severity.ERROR)
            raise
        return await self._call(
            lambda: _storage_api.upload_media(
                transport,
                self._config.base_url,
                user_id=user_id,
                filename=filename,
                data=data,
                content_type=content_type,
                bucket=bucket,
                on_progress=on_progress,
            ),
            label="upload_media",
        )
