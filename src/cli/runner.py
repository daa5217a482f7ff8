# src/cli/runner.py

"""Headless CLI commands built on the rate cache and notification store."""

import functools
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path

from rich.console import Console
from rich.table import Table

from src.models.notification import Notification, NotificationType
from src.services.notification_store import NotificationStore
from src.services.rate_cache import RateCache, get_rate_cache
from src.storage.notification_backend import BackendError
from src.storage.notification_db import SQLiteNotificationBackend
from src.utils.formatting import format_relative_time

logger = logging.getLogger("marketplace_hub.cli")

# Stderr console for status messages so stdout stays clean for JSON
_err = Console(stderr=True)


def _open_backend(db_path: str | None) -> SQLiteNotificationBackend:
    return SQLiteNotificationBackend(Path(db_path) if db_path else None)


def _notifications_to_dicts(
    notifications: list[Notification],
) -> list[dict[str, object]]:
    return [n.to_row() for n in notifications]


def _print_notifications(notifications: list[Notification]) -> None:
    """Render a Rich table of notifications to stdout."""
    table = Table(
        title="Notifications",
        show_lines=True,
        title_style="bold cyan",
    )
    table.add_column("", width=2)
    table.add_column("Type", style="magenta")
    table.add_column("Title", max_width=40)
    table.add_column("Message", max_width=60)
    table.add_column("When", style="dim")
    table.add_column("ID", overflow="fold", style="dim")

    for n in notifications:
        table.add_row(
            "" if n.is_read else "[bold blue]●[/bold blue]",
            n.type.value,
            n.title,
            n.message,
            format_relative_time(n.created_at),
            n.id,
        )

    Console().print(table)


# ── Currency ─────────────────────────────────────────────


async def run_rate(
    amounts: list[float],
    invalidate: bool = False,
    output_format: str = "json",
    cache: RateCache | None = None,
) -> int:
    """Print the current rate and the conversion of ``amounts``."""
    rate_cache = cache or get_rate_cache()
    if invalidate:
        rate_cache.invalidate()

    state = await rate_cache.refresh()
    if state.error:
        _err.print(f"[yellow]{state.error}[/yellow]")
    if state.rate is None:
        _err.print("[red]No exchange rate available.[/red]")
        return 1

    conversions = [
        {"amount": amount, "converted": rate_cache.convert(amount)}
        for amount in amounts
    ]

    if output_format == "table":
        table = Table(
            title=f"Rate {state.rate:.4f}",
            title_style="bold cyan",
        )
        table.add_column("¥", justify="right")
        table.add_column("R$", justify="right", style="green")
        for amount in amounts:
            table.add_row(
                f"{amount:,.2f}",
                rate_cache.format_converted(amount) or "—",
            )
        Console().print(table)
    else:
        json.dump(
            {
                "rate": state.rate,
                "stale": state.error is not None,
                "conversions": conversions,
            },
            sys.stdout,
            indent=2,
        )
        sys.stdout.write("\n")
    return 0


# ── Notifications (read side) ────────────────────────────


async def run_list(
    user_id: str,
    output_format: str = "json",
    db_path: str | None = None,
) -> int:
    """Load and print the notifications of ``user_id``."""
    backend = _open_backend(db_path)
    store = NotificationStore(backend, reconcile_interval=None)
    try:
        await store.bind(user_id)
        if store.error:
            _err.print(f"[red]Could not load notifications: {store.error}[/red]")
            return 1
        notifications = store.list()
        _err.print(
            f"[bold]{len(notifications)}[/bold] notifications, "
            f"[bold blue]{store.unread_count()}[/bold blue] unread"
        )
        if output_format == "table":
            _print_notifications(notifications)
        else:
            json.dump(
                _notifications_to_dicts(notifications),
                sys.stdout,
                ensure_ascii=False,
                indent=2,
            )
            sys.stdout.write("\n")
        return 0
    finally:
        await store.close()
        backend.close()


# ── Notifications (mutations) ────────────────────────────


async def _with_store(
    user_id: str,
    db_path: str | None,
    action: Callable[[NotificationStore], Awaitable[str]],
) -> int:
    """Bind a store to ``user_id``, run ``action`` and report the outcome."""
    backend = _open_backend(db_path)
    store = NotificationStore(backend, reconcile_interval=None)
    try:
        await store.bind(user_id)
        message = await action(store)
    except BackendError as exc:
        logger.error("Notification action failed: %s", exc, exc_info=True)
        _err.print(f"[red]Error: {exc}[/red]")
        return 1
    finally:
        await store.close()
        backend.close()
    _err.print(f"[green]✓ {message}[/green]")
    return 0


async def run_mark_read(
    user_id: str, notification_id: str, db_path: str | None = None,
) -> int:
    async def action(store: NotificationStore) -> str:
        await store.mark_read(notification_id)
        return "Notification marked as read"

    return await _with_store(user_id, db_path, action)


async def run_mark_all_read(user_id: str, db_path: str | None = None) -> int:
    async def action(store: NotificationStore) -> str:
        count = await store.mark_all_read()
        return f"All notifications marked as read ({count})"

    return await _with_store(user_id, db_path, action)


async def run_delete(
    user_id: str, notification_id: str, db_path: str | None = None,
) -> int:
    async def action(store: NotificationStore) -> str:
        await store.delete(notification_id)
        return "Notification removed"

    return await _with_store(user_id, db_path, action)


async def run_clear(user_id: str, db_path: str | None = None) -> int:
    async def action(store: NotificationStore) -> str:
        count = await store.delete_all()
        return f"{count} notification{'s' if count != 1 else ''} removed"

    return await _with_store(user_id, db_path, action)


# ── Producers ────────────────────────────────────────────


def run_profile(
    user_id: str, name: str, role: str, db_path: str | None = None,
) -> int:
    """Register or update a member profile."""
    backend = _open_backend(db_path)
    try:
        profile = backend.register_profile(user_id, name, role)
    except BackendError as exc:
        _err.print(f"[red]Error: {exc}[/red]")
        return 1
    finally:
        backend.close()
    _err.print(
        f"[green]✓ Profile {profile.name} ({profile.role}) saved[/green]"
    )
    return 0


async def run_notify(
    user_id: str,
    notification_type: str,
    title: str,
    message: str,
    link: str | None = None,
    db_path: str | None = None,
) -> int:
    """Create one notification for ``user_id``."""
    backend = _open_backend(db_path)
    try:
        notification = await backend.create_notification(
            user_id, NotificationType(notification_type), title, message, link
        )
    finally:
        backend.close()
    if notification is None:
        _err.print(
            f"[yellow]{user_id} opted out of {notification_type} "
            "notifications.[/yellow]"
        )
        return 1
    _err.print(f"[green]✓ Notification {notification.id} created[/green]")
    return 0


async def run_broadcast(
    notification_type: str,
    title: str,
    message: str,
    link: str | None = None,
    roles: list[str] | None = None,
    db_path: str | None = None,
) -> int:
    """Send one notification to every profile matching ``roles``."""
    backend = _open_backend(db_path)
    try:
        count = await backend.send_bulk_notification(
            notification_type, title, message, link, roles
        )
    except BackendError as exc:
        _err.print(f"[red]Error: {exc}[/red]")
        return 1
    finally:
        backend.close()
    if not count:
        _err.print("[yellow]No matching profiles.[/yellow]")
        return 1
    _err.print(f"[green]✓ Sent to {count} profiles[/green]")
    return 0


async def run_mention(
    sender_id: str,
    text: str,
    link: str | None = None,
    db_path: str | None = None,
) -> int:
    """Notify every member mentioned in ``text``."""
    backend = _open_backend(db_path)
    try:
        created = await backend.notify_mentions(text, sender_id, link)
    finally:
        backend.close()
    if not created:
        _err.print("[yellow]No known members mentioned.[/yellow]")
        return 1
    _err.print(f"[green]✓ {len(created)} mention notifications sent[/green]")
    return 0


# ── Delivery preferences ─────────────────────────────────


def run_settings(
    user_id: str,
    changes: dict[str, bool] | None = None,
    db_path: str | None = None,
) -> int:
    """Show, and optionally update, the delivery preferences of a member."""
    backend = _open_backend(db_path)
    try:
        if changes:
            settings = backend.update_notification_settings(
                user_id, **changes
            )
            _err.print("[green]✓ Notification settings saved[/green]")
        else:
            settings = backend.get_notification_settings(user_id)
    except BackendError as exc:
        _err.print(f"[red]Error: {exc}[/red]")
        return 1
    finally:
        backend.close()
    json.dump(settings.to_dict(), sys.stdout, indent=2)
    sys.stdout.write("\n")
    return 0


# ── Health ───────────────────────────────────────────────


async def run_health_check(db_path: str | None = None) -> int:
    """Probe the rate provider and the notification database."""
    from src.services import health_checker

    _err.print("[bold]Running health check...[/bold]")
    checker = health_checker.HealthChecker(
        probes=[
            health_checker.probe_rate_provider,
            functools.partial(
                health_checker.probe_notification_db,
                db_path=Path(db_path) if db_path else None,
            ),
        ]
    )
    results = await checker.check_all()

    table = Table(
        title="Health Check",
        show_lines=True,
        title_style="bold cyan",
    )
    table.add_column("Component", style="bold")
    table.add_column("Status", justify="center")
    table.add_column("Latency", justify="right")
    table.add_column("Notes", style="dim")

    any_down = False
    for r in results:
        if r.status == "ok":
            status = "[green]✅ OK[/green]"
        elif r.status == "slow":
            status = "[yellow]⚠️  SLOW[/yellow]"
        else:
            status = "[red]❌ DOWN[/red]"
            any_down = True
        latency = f"{r.latency_ms:.0f}ms" if r.latency_ms > 0 else "—"
        table.add_row(r.component, status, latency, r.message)

    Console().print(table)
    return 1 if any_down else 0
