# src/services/notification_store.py

"""Per-user notification list kept in sync with the backend.

The store merges one bulk load with the live change stream of the bound
user. Its lifecycle::

    UNBOUND ──bind(user)──▶ LOADING ──ok──▶ LIVE
                              │               │ stream lost
                              ▼ failed        ▼
                            ERROR ◀──────▶ RECONNECTING
                              └──retry ok──▶ LIVE

Mutation methods only call the backend; ``items`` changes exclusively
through :meth:`NotificationStore.apply_event` and full reloads, so the
list cannot diverge from what the stream reports. The unread count is
always derived from ``items``.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum

from src.config.settings import Settings
from src.models.notification import ChangeEvent, ChangeKind, Notification
from src.storage.notification_backend import (
    BackendError,
    NotificationBackend,
    Subscription,
)

logger = logging.getLogger("marketplace_hub.notifications")

StoreListener = Callable[["NotificationStore"], None]
ToastHandler = Callable[[Notification], None]
Sleeper = Callable[[float], Awaitable[None]]


class SyncState(str, Enum):
    """Lifecycle of the store for the bound user."""

    UNBOUND = "unbound"
    LOADING = "loading"
    LIVE = "live"
    ERROR = "error"
    RECONNECTING = "reconnecting"


class NotificationStore:
    """Eventually-consistent, newest-first notification list for one user."""

    def __init__(
        self,
        backend: NotificationBackend,
        on_new_notification: ToastHandler | None = None,
        reconcile_interval: float | None = (
            Settings.NOTIFICATION_RECONCILE_INTERVAL
        ),
        retry_base_delay: float = Settings.NOTIFICATION_RETRY_BASE_DELAY,
        retry_max_delay: float = Settings.NOTIFICATION_RETRY_MAX_DELAY,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self._backend = backend
        self._on_new_notification = on_new_notification
        self._reconcile_interval = reconcile_interval
        self._retry_base_delay = retry_base_delay
        self._retry_max_delay = retry_max_delay
        self._sleep = sleep

        self._items: list[Notification] = []
        self._user_id: str | None = None
        self._state = SyncState.UNBOUND
        self._error: str | None = None
        self._generation = 0
        # Bumped by every applied stream change
        self._revision = 0
        self._attempts = 0
        self._subscription: Subscription | None = None
        self._retry_task: asyncio.Task[None] | None = None
        self._reconcile_task: asyncio.Task[None] | None = None
        self._listeners: list[StoreListener] = []

    # ── Read side ────────────────────────────────────────

    @property
    def user_id(self) -> str | None:
        return self._user_id

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def is_streaming(self) -> bool:
        return self._subscription is not None

    def list(self) -> list[Notification]:
        """Notifications of the bound user, most recent first."""
        return list(self._items)

    def unread_count(self) -> int:
        return sum(1 for n in self._items if not n.is_read)

    def get(self, notification_id: str) -> Notification | None:
        return next(
            (n for n in self._items if n.id == notification_id), None
        )

    # ── Listeners ────────────────────────────────────────

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        """Call ``listener`` after every state or items change."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _changed(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.error(
                    "Notification listener %r failed",
                    listener,
                    exc_info=True,
                )

    def _set_state(self, state: SyncState, error: str | None = None) -> None:
        if state is not self._state:
            logger.debug(
                "Store for user %s: %s -> %s",
                self._user_id,
                self._state.value,
                state.value,
            )
        self._state = state
        self._error = error

    # ── Binding ──────────────────────────────────────────

    async def bind(self, user_id: str | None) -> None:
        """Switch the store to ``user_id`` (``None`` logs out).

        The previous user's stream and background tasks are torn down
        before anything of the new user is loaded.
        """
        if user_id == self._user_id and self._state is not SyncState.UNBOUND:
            return
        if user_id is None and self._state is SyncState.UNBOUND:
            return

        self._teardown()
        self._generation += 1
        self._attempts = 0
        self._user_id = user_id
        self._items = []

        if user_id is None:
            self._set_state(SyncState.UNBOUND)
            self._changed()
            return

        self._set_state(SyncState.LOADING)
        self._changed()
        await self._load_and_attach(self._generation)

    async def close(self) -> None:
        """Unbind and stop every background task."""
        await self.bind(None)

    def _teardown(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        for task in (self._retry_task, self._reconcile_task):
            if task is not None and not task.done():
                task.cancel()
        self._retry_task = None
        self._reconcile_task = None

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation and self._user_id is not None

    async def _load_and_attach(self, generation: int) -> bool:
        """Bulk load, then attach the stream. Returns True on success."""
        user_id = self._user_id
        if user_id is None:
            return False
        try:
            rows = await self._backend.fetch_for_user(user_id)
        except Exception as exc:
            if not self._is_current(generation):
                return False
            logger.warning(
                "Notification load failed for user %s: %s",
                user_id,
                exc,
                exc_info=True,
            )
            # A lost stream keeps its stale items; a first load has none
            failed_state = (
                SyncState.RECONNECTING
                if self._state is SyncState.RECONNECTING
                else SyncState.ERROR
            )
            self._set_state(failed_state, str(exc))
            self._changed()
            self._schedule_retry(generation)
            return False

        if not self._is_current(generation):
            logger.debug("Discarding stale load for user %s", user_id)
            return False

        self._items = sorted(rows, key=lambda n: n.created_at, reverse=True)
        if self._subscription is None:
            self._subscription = self._backend.subscribe(
                user_id,
                lambda event: self._on_stream_event(generation, event),
                lambda: self._on_stream_lost(generation),
            )
        self._attempts = 0
        self._set_state(SyncState.LIVE)
        logger.info(
            "Loaded %d notifications for user %s (%d unread)",
            len(self._items),
            user_id,
            self.unread_count(),
        )
        self._changed()
        self._start_reconcile(generation)
        return True

    # ── Stream handling ──────────────────────────────────

    def _on_stream_event(self, generation: int, event: ChangeEvent) -> None:
        if not self._is_current(generation):
            return
        self.apply_event(event)

    def _on_stream_lost(self, generation: int) -> None:
        if not self._is_current(generation):
            return
        logger.warning(
            "Change stream lost for user %s, reconnecting", self._user_id
        )
        self._subscription = None
        self._set_state(SyncState.RECONNECTING)
        self._changed()
        self._schedule_retry(generation)

    def apply_event(self, event: ChangeEvent) -> bool:
        """Merge one change into ``items``; returns True if it changed.

        Duplicate inserts and updates/deletes of unknown ids are no-ops.
        """
        changed = False
        if event.kind is ChangeKind.INSERT:
            changed = self._apply_insert(event)
        elif event.kind is ChangeKind.UPDATE:
            changed = self._apply_update(event)
        elif event.kind is ChangeKind.DELETE:
            changed = self._apply_delete(event.notification_id)

        if changed:
            self._revision += 1
            self._changed()
        return changed

    def apply_payload(self, payload: dict[str, object]) -> bool:
        """Parse a raw realtime payload and apply it; bad payloads are dropped."""
        try:
            event = ChangeEvent.from_payload(payload)
        except ValueError as exc:
            logger.warning("Dropping malformed change payload: %s", exc)
            return False
        return self.apply_event(event)

    def _apply_insert(self, event: ChangeEvent) -> bool:
        notification = event.notification
        if notification is None or self.get(notification.id) is not None:
            return False
        if self._user_id is not None and notification.user_id != self._user_id:
            logger.warning(
                "Ignoring insert for foreign user %s", notification.user_id
            )
            return False

        index = next(
            (
                i
                for i, item in enumerate(self._items)
                if item.created_at <= notification.created_at
            ),
            len(self._items),
        )
        self._items.insert(index, notification)
        logger.debug("Inserted notification %s at %d", notification.id, index)
        if self._on_new_notification is not None:
            try:
                self._on_new_notification(notification)
            except Exception:
                logger.error("New-notification callback failed", exc_info=True)
        return True

    def _apply_update(self, event: ChangeEvent) -> bool:
        notification = event.notification
        if notification is None:
            return False
        for i, item in enumerate(self._items):
            if item.id == notification.id:
                if item == notification:
                    return False
                self._items[i] = notification
                return True
        return False

    def _apply_delete(self, notification_id: str) -> bool:
        before = len(self._items)
        self._items = [n for n in self._items if n.id != notification_id]
        return len(self._items) != before

    # ── Recovery ─────────────────────────────────────────

    def _backoff_delay(self) -> float:
        delay = self._retry_base_delay * (2 ** self._attempts)
        return min(delay, self._retry_max_delay)

    def _schedule_retry(self, generation: int) -> None:
        if self._retry_task is not None and not self._retry_task.done():
            return
        delay = self._backoff_delay()
        self._attempts += 1
        logger.info(
            "Retrying notification sync for user %s in %.1fs (attempt %d)",
            self._user_id,
            delay,
            self._attempts,
        )
        self._retry_task = asyncio.get_running_loop().create_task(
            self._retry_after(generation, delay)
        )

    async def _retry_after(self, generation: int, delay: float) -> None:
        await self._sleep(delay)
        if not self._is_current(generation):
            return
        self._retry_task = None
        await self._load_and_attach(generation)

    def _start_reconcile(self, generation: int) -> None:
        if self._reconcile_interval is None:
            return
        if self._reconcile_task is not None and not self._reconcile_task.done():
            return
        self._reconcile_task = asyncio.get_running_loop().create_task(
            self._reconcile_loop(generation, self._reconcile_interval)
        )

    async def _reconcile_loop(self, generation: int, interval: float) -> None:
        while self._is_current(generation):
            await self._sleep(interval)
            if not self._is_current(generation):
                return
            if self._state is SyncState.LIVE:
                await self.reload()

    async def reload(self) -> bool:
        """Replace ``items`` with a fresh bulk load.

        On failure the current items are kept and False is returned. A
        snapshot fetched while stream changes were being applied is
        dropped, since it may predate them.
        """
        user_id = self._user_id
        if user_id is None:
            return False
        generation = self._generation
        revision = self._revision
        try:
            rows = await self._backend.fetch_for_user(user_id)
        except Exception as exc:
            logger.warning(
                "Notification reconcile failed for user %s: %s",
                user_id,
                exc,
                exc_info=True,
            )
            return False
        if not self._is_current(generation):
            return False
        if self._revision != revision:
            logger.debug(
                "Skipping reconcile for user %s, stream changed during fetch",
                user_id,
            )
            return False
        fresh = sorted(rows, key=lambda n: n.created_at, reverse=True)
        if fresh != self._items:
            logger.info(
                "Reconciled notifications for user %s (%d -> %d items)",
                user_id,
                len(self._items),
                len(fresh),
            )
            self._items = fresh
            self._changed()
        return True

    # ── Mutations ────────────────────────────────────────

    def _require_user(self) -> str:
        if self._user_id is None:
            raise BackendError("no user is signed in")
        return self._user_id

    async def mark_read(self, notification_id: str) -> None:
        """Ask the backend to mark one notification read."""
        user_id = self._require_user()
        await self._backend.mark_read(user_id, notification_id)

    async def mark_all_read(self) -> int:
        """Mark every unread notification read; returns the backend count."""
        if self._user_id is None:
            return 0
        return await self._backend.mark_all_read(self._user_id)

    async def delete(self, notification_id: str) -> None:
        user_id = self._require_user()
        await self._backend.delete(user_id, notification_id)

    async def delete_all(self) -> int:
        """Delete every notification of the bound user."""
        if self._user_id is None:
            return 0
        return await self._backend.delete_all(self._user_id)
