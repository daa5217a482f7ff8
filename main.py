# main.py

"""Entry point for marketplace_hub (notification center TUI or headless CLI)."""

import argparse
import asyncio
import logging
import sys

from src.config.logging_config import setup_logging
from src.models.notification import NotificationType
from src.models.notification_settings import NotificationSettings
from src.models.profile import ROLES

logger = logging.getLogger("marketplace_hub.main")

_TYPES = [t.value for t in NotificationType]


def _build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="marketplace_hub",
        description="Marketplace notification center and price converter.",
        epilog="Run without a command to launch the interactive TUI.",
    )
    parser.add_argument(
        "--db",
        default=None,
        dest="db_path",
        help="Notification database path (default: data/notifications.db).",
    )
    parser.add_argument(
        "--user",
        default=None,
        dest="tui_user",
        help="User to bind when launching the TUI.",
    )
    sub = parser.add_subparsers(dest="command")

    rate = sub.add_parser("rate", help="Show the CNY→BRL rate.")
    rate.add_argument("amounts", nargs="*", type=float, help="¥ amounts.")
    rate.add_argument(
        "--invalidate",
        action="store_true",
        help="Ignore the cached rate and refetch.",
    )
    rate.add_argument(
        "-f", "--format", choices=["json", "table"], default="json",
        dest="output_format",
    )

    listing = sub.add_parser("list", help="List a user's notifications.")
    listing.add_argument("user")
    listing.add_argument(
        "-f", "--format", choices=["json", "table"], default="json",
        dest="output_format",
    )

    notify = sub.add_parser("notify", help="Create a notification.")
    notify.add_argument("user")
    notify.add_argument("--type", choices=_TYPES, default="alert")
    notify.add_argument("--title", required=True)
    notify.add_argument("--message", required=True)
    notify.add_argument("--link", default=None)

    broadcast = sub.add_parser(
        "broadcast", help="Notify every profile (optionally by role)."
    )
    broadcast.add_argument("--type", choices=_TYPES, default="announcement")
    broadcast.add_argument("--title", required=True)
    broadcast.add_argument("--message", required=True)
    broadcast.add_argument("--link", default=None)
    broadcast.add_argument(
        "--role", action="append", choices=list(ROLES), dest="roles",
        help="Target role; repeat for several (default: everyone).",
    )

    mention = sub.add_parser("mention", help="Notify @mentioned members.")
    mention.add_argument("sender")
    mention.add_argument("text")
    mention.add_argument("--link", default=None)

    profile = sub.add_parser("profile", help="Register a member profile.")
    profile.add_argument("user")
    profile.add_argument("name")
    profile.add_argument("--role", choices=list(ROLES), default="member")

    for name, help_text in (
        ("mark-read", "Mark one notification as read."),
        ("delete", "Delete one notification."),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("user")
        cmd.add_argument("notification_id")

    for name, help_text in (
        ("mark-all-read", "Mark all of a user's notifications as read."),
        ("clear", "Delete all of a user's notifications."),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("user")

    settings = sub.add_parser(
        "settings", help="Show or change a member's delivery preferences."
    )
    settings.add_argument("user")
    for flag in NotificationSettings.preference_names():
        settings.add_argument(
            f"--{flag.replace('_', '-')}",
            choices=["on", "off"],
            default=None,
            dest=flag,
        )

    sub.add_parser("health", help="Probe the rate API and the database.")
    return parser


def _run_tui(user_id: str | None, db_path: str | None) -> None:
    """Launch the interactive Textual notification center."""
    from pathlib import Path

    from src.ui.app import NotificationCenterApp

    try:
        app = NotificationCenterApp(
            user_id=user_id,
            db_path=Path(db_path) if db_path else None,
        )
        app.run()
    except Exception:
        logger.critical("Fatal error during TUI run", exc_info=True)
        raise
    finally:
        logger.info("marketplace_hub TUI shutting down")


def _dispatch(args: argparse.Namespace) -> int:
    """Run the selected headless command and return its exit code."""
    from src.cli import runner

    db = args.db_path
    command = args.command
    if command == "rate":
        return asyncio.run(
            runner.run_rate(args.amounts, args.invalidate, args.output_format)
        )
    if command == "list":
        return asyncio.run(runner.run_list(args.user, args.output_format, db))
    if command == "notify":
        return asyncio.run(
            runner.run_notify(
                args.user, args.type, args.title, args.message, args.link, db
            )
        )
    if command == "broadcast":
        return asyncio.run(
            runner.run_broadcast(
                args.type, args.title, args.message, args.link, args.roles, db
            )
        )
    if command == "mention":
        return asyncio.run(
            runner.run_mention(args.sender, args.text, args.link, db)
        )
    if command == "profile":
        return runner.run_profile(args.user, args.name, args.role, db)
    if command == "mark-read":
        return asyncio.run(
            runner.run_mark_read(args.user, args.notification_id, db)
        )
    if command == "delete":
        return asyncio.run(
            runner.run_delete(args.user, args.notification_id, db)
        )
    if command == "mark-all-read":
        return asyncio.run(runner.run_mark_all_read(args.user, db))
    if command == "clear":
        return asyncio.run(runner.run_clear(args.user, db))
    if command == "settings":
        changes = {
            flag: getattr(args, flag) == "on"
            for flag in NotificationSettings.preference_names()
            if getattr(args, flag) is not None
        }
        return runner.run_settings(args.user, changes, db)
    if command == "health":
        return asyncio.run(runner.run_health_check(db))
    raise ValueError(f"Unknown command: {command}")


def main() -> None:
    """Route to the TUI (no command) or a headless CLI command."""
    log_file = setup_logging()
    logger.info("marketplace_hub starting, log file: %s", log_file)

    parser = _build_parser()
    args = parser.parse_args()

    if args.command is None:
        _run_tui(args.tui_user, args.db_path)
    else:
        sys.exit(_dispatch(args))


if __name__ == "__main__":
    main()
