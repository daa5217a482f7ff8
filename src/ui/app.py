# src/ui/app.py

"""Terminal notification center with live CNY→BRL price conversion."""

import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import cast

from rich.text import Text
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Container, Horizontal
from textual.widgets import (
    Button,
    DataTable,
    Footer,
    Header,
    Input,
    Static,
)

from src.models.exchange_rate import RateState
from src.models.notification import Notification, NotificationType
from src.services.notification_store import NotificationStore, SyncState
from src.services.rate_cache import RateCache, get_rate_cache
from src.storage.notification_backend import (
    BackendError,
    NotificationBackend,
)
from src.storage.notification_db import SQLiteNotificationBackend
from src.utils.formatting import (
    format_brl,
    format_relative_time,
    parse_amount,
)

logger = logging.getLogger("marketplace_hub.ui")

_TYPE_ICONS: dict[NotificationType, str] = {
    NotificationType.MENTION: "@",
    NotificationType.PRODUCT: "📦",
    NotificationType.ALERT: "⚠️",
    NotificationType.COMMUNITY: "💬",
    NotificationType.ANNOUNCEMENT: "📣",
    NotificationType.POST_APPROVED: "✅",
    NotificationType.POST_REJECTED: "❌",
}

_STATE_LABELS: dict[SyncState, str] = {
    SyncState.UNBOUND: "Not signed in",
    SyncState.LOADING: "Loading notifications...",
    SyncState.LIVE: "Live",
    SyncState.ERROR: "Could not load notifications",
    SyncState.RECONNECTING: "Reconnecting...",
}


def format_price_line(amount: float, cache: RateCache) -> str:
    """``¥ 10,00 (≈ R$ 7,50)``; the conversion is omitted without a rate."""
    origin = f"¥ {format_brl(amount)}"
    converted = cache.format_converted(amount)
    if converted is None:
        return origin
    return f"{origin} (≈ R$ {converted})"


def describe_rate(state: RateState) -> str:
    """One-line summary of the rate cache for the status bar."""
    if state.is_loading and state.rate is None:
        return "💱 Fetching exchange rate..."
    if state.rate is None:
        return f"💱 {state.error or 'No exchange rate'}"
    line = f"💱 ¥ 1,00 ≈ R$ {format_brl(state.rate)}"
    if state.error:
        line += f" (stale: {state.error})"
    return line


class NotificationCenterApp(App[object]):
    """Terminal notification center for one signed-in member."""

    CSS_PATH = "styles.css"
    TITLE = "Marketplace Hub"

    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("m", "mark_read", "Mark read"),
        Binding("a", "mark_all_read", "Mark all read"),
        Binding("d", "delete", "Delete"),
        Binding("x", "clear", "Clear all"),
        Binding("r", "refresh_rate", "Refresh rate"),
    ]

    def __init__(
        self,
        user_id: str | None = None,
        db_path: Path | None = None,
        backend: NotificationBackend | None = None,
        rate_cache: RateCache | None = None,
    ) -> None:
        super().__init__()
        self._owns_backend = backend is None
        self.backend: NotificationBackend = (
            backend or SQLiteNotificationBackend(db_path)
        )
        self.rate_cache = rate_cache or get_rate_cache()
        self.store = NotificationStore(
            self.backend, on_new_notification=self._toast
        )
        self.initial_user = user_id
        self.price_text = ""
        self.price_line = ""
        self.notifications: list[Notification] = []
        self._unsubscribers: list[Callable[[], None]] = []

    def compose(self) -> ComposeResult:
        """Build the widget tree for the TUI."""
        yield Header()
        yield Container(
            Static("🔔 Notifications", id="title"),
            Static("", id="rate_status"),
            Horizontal(
                Input(placeholder="¥ price to convert", id="price_input"),
                Static("", id="price_line"),
                id="price_bar",
            ),
            Horizontal(
                Input(placeholder="User id...", id="user_input"),
                Button("Sign in", variant="primary", id="bind_btn"),
                id="user_bar",
            ),
            Static("Not signed in", id="status"),
            cast(
                DataTable[str | Text],
                DataTable(
                    id="notifications_table",
                    zebra_stripes=True,
                    cursor_type="row",
                ),
            ),
            id="main_container",
        )
        yield Footer()

    async def on_mount(self) -> None:
        """Wire the store and the rate cache, then bind the initial user."""
        table = self._table()
        table.add_columns("", "Type", "Title", "Message", "When")

        self._unsubscribers.append(
            self.store.subscribe(lambda _store: self.populate_table())
        )
        self._unsubscribers.append(
            self.rate_cache.subscribe(self._on_rate_changed)
        )
        self._on_rate_changed(self.rate_cache.get_rate())

        if self.initial_user:
            self.query_one("#user_input", Input).value = self.initial_user
            await self.store.bind(self.initial_user)

    async def on_unmount(self) -> None:
        """Detach listeners and tear the stream down."""
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        await self.store.close()
        if self._owns_backend and isinstance(
            self.backend, SQLiteNotificationBackend
        ):
            self.backend.close()

    # ── Events ───────────────────────────────────────────

    async def on_button_pressed(self, event: Button.Pressed) -> None:
        if event.button.id == "bind_btn":
            await self.switch_user()

    async def on_input_submitted(self, event: Input.Submitted) -> None:
        if event.input.id == "user_input":
            await self.switch_user()

    def on_input_changed(self, event: Input.Changed) -> None:
        if event.input.id == "price_input":
            self.price_text = event.value
            self.render_price()

    async def on_data_table_row_selected(
        self, event: DataTable.RowSelected
    ) -> None:
        """Selecting an unread notification marks it read."""
        if 0 <= event.cursor_row < len(self.notifications):
            target = self.notifications[event.cursor_row]
            if not target.is_read:
                await self._mutate(self.store.mark_read(target.id), None)

    async def switch_user(self) -> None:
        """Bind the store to the user typed in the input (empty = sign out)."""
        user_id = self.query_one("#user_input", Input).value.strip() or None
        logger.info("Switching notification center to user %s", user_id)
        await self.store.bind(user_id)

    # ── Rendering ────────────────────────────────────────

    def _table(self) -> DataTable[str | Text]:
        return cast(
            DataTable[str | Text],
            self.query_one("#notifications_table", DataTable),
        )

    def _on_rate_changed(self, state: RateState) -> None:
        self.query_one("#rate_status", Static).update(describe_rate(state))
        self.render_price()

    def render_price(self) -> None:
        """Show the typed ¥ price with its R$ conversion."""
        amount = parse_amount(self.price_text)
        line = (
            format_price_line(amount, self.rate_cache)
            if amount is not None
            else ""
        )
        self.price_line = line
        self.query_one("#price_line", Static).update(line)

    def _toast(self, notification: Notification) -> None:
        self.notify(
            notification.message,
            title=notification.title,
            severity="information",
        )

    def populate_table(self) -> None:
        """Re-render the table and the status line from the store."""
        self.notifications = self.store.list()
        table = self._table()
        table.clear()
        for n in self.notifications:
            style = "" if n.is_read else "bold"
            table.add_row(
                "" if n.is_read else "●",
                _TYPE_ICONS.get(n.type, "•"),
                Text(n.title[:40], style=style),
                n.message[:60],
                format_relative_time(n.created_at),
            )

        status = self.query_one("#status", Static)
        label = _STATE_LABELS[self.store.state]
        if self.store.state is SyncState.LIVE:
            status.update(
                f"{label}: {len(self.notifications)} notifications, "
                f"{self.store.unread_count()} unread"
            )
        elif self.store.error:
            status.update(f"{label}: {self.store.error}")
        else:
            status.update(label)

    # ── Actions ──────────────────────────────────────────

    def _selected(self) -> Notification | None:
        row = self._table().cursor_row
        if 0 <= row < len(self.notifications):
            return self.notifications[row]
        return None

    async def _mutate(
        self, operation: Awaitable[object], success: str | None,
    ) -> None:
        """Await a store mutation and turn the outcome into a toast."""
        try:
            await operation
        except BackendError as exc:
            logger.error("Notification action failed: %s", exc, exc_info=True)
            self.notify(f"Error: {exc}", severity="error")
            return
        if success:
            self.notify(success)

    async def action_mark_read(self) -> None:
        target = self._selected()
        if target is None or target.is_read:
            return
        await self._mutate(self.store.mark_read(target.id), None)

    async def action_mark_all_read(self) -> None:
        if not self.store.unread_count():
            self.notify("Nothing unread", severity="warning")
            return
        await self._mutate(
            self.store.mark_all_read(),
            "All notifications marked as read",
        )

    async def action_delete(self) -> None:
        target = self._selected()
        if target is None:
            return
        await self._mutate(self.store.delete(target.id), "Notification removed")

    async def action_clear(self) -> None:
        count = len(self.notifications)
        if not count:
            self.notify("No notifications to clear", severity="warning")
            return
        await self._mutate(
            self.store.delete_all(),
            f"{count} notification{'s' if count != 1 else ''} removed",
        )

    async def action_refresh_rate(self) -> None:
        """Drop the cached rate and fetch a new one."""
        self.rate_cache.invalidate()
        state = await self.rate_cache.refresh()
        if state.error:
            self.notify(state.error, severity="warning")
