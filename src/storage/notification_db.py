# src/storage/notification_db.py

"""SQLite-backed notification backend with an in-process change feed.

Stands in for the managed database: row ownership is enforced on every
mutation (the row-level security analogue), committed changes are
published to the owning user's subscribers, and the server-side
producers (direct notification, role-targeted broadcast, mention
fan-out) live here as well.
"""

import asyncio
import logging
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path

from src.config.settings import Settings
from src.filters.mention_parser import extract_mentions
from src.models.notification import (
    ChangeEvent,
    Notification,
    NotificationType,
    parse_timestamp,
)
from src.models.notification_settings import NotificationSettings
from src.models.profile import ROLES, Profile
from src.storage.notification_backend import (
    BackendError,
    ChangeFeed,
    DisconnectHandler,
    EventHandler,
    NotificationBackend,
    Subscription,
)

logger = logging.getLogger("marketplace_hub.notification_db")

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS profiles (
    id    TEXT PRIMARY KEY,
    name  TEXT NOT NULL,
    role  TEXT NOT NULL DEFAULT 'member'
);

CREATE TABLE IF NOT EXISTS notifications (
    id         TEXT    PRIMARY KEY,
    user_id    TEXT    NOT NULL,
    type       TEXT    NOT NULL,
    title      TEXT    NOT NULL,
    message    TEXT    NOT NULL,
    link       TEXT,
    is_read    INTEGER NOT NULL DEFAULT 0,
    created_at TEXT    NOT NULL,
    sender_id  TEXT
);

CREATE INDEX IF NOT EXISTS idx_notifications_user_date
    ON notifications(user_id, created_at);

CREATE TABLE IF NOT EXISTS notification_settings (
    user_id            TEXT    PRIMARY KEY,
    new_products       INTEGER NOT NULL DEFAULT 1,
    bazar_alerts       INTEGER NOT NULL DEFAULT 0,
    community_messages INTEGER NOT NULL DEFAULT 1,
    updated_at         TEXT    NOT NULL
);
"""

_COLUMNS = (
    "id, user_id, type, title, message, link, "
    "is_read, created_at, sender_id"
)


def _timestamp(moment: datetime) -> str:
    """Fixed-width UTC ISO string so text order equals time order."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    utc = moment.astimezone(timezone.utc)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _row_to_notification(row: sqlite3.Row) -> Notification:
    return Notification.from_row(dict(row))


class SQLiteNotificationBackend(NotificationBackend):
    """Notification backend persisted in a local SQLite file."""

    def __init__(self, db_path: Path | None = None) -> None:
        path = db_path or Settings.NOTIFICATION_DB_PATH
        path.parent.mkdir(parents=True, exist_ok=True)
        self.path = path
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)
        self.feed = ChangeFeed()
        logger.debug("SQLiteNotificationBackend opened at %s", path)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    # ── Change stream ────────────────────────────────────

    def subscribe(
        self,
        user_id: str,
        on_event: EventHandler,
        on_disconnect: DisconnectHandler | None = None,
    ) -> Subscription:
        return self.feed.add(user_id, on_event, on_disconnect)

    def _publish(self, user_id: str, events: list[ChangeEvent]) -> None:
        for event in events:
            self.feed.publish(user_id, event)

    # ── Queries ──────────────────────────────────────────

    async def fetch_for_user(self, user_id: str) -> list[Notification]:
        return await asyncio.to_thread(self._fetch_sync, user_id)

    def _fetch_sync(self, user_id: str) -> list[Notification]:
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_COLUMNS} FROM notifications "
                "WHERE user_id = ? "
                "ORDER BY created_at DESC, rowid DESC",
                (user_id,),
            ).fetchall()
        return [_row_to_notification(r) for r in rows]

    def ping(self) -> int:
        """Cheap connectivity probe; returns the notification count."""
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) FROM notifications"
            ).fetchone()
        return int(row[0])

    # ── Mutations ────────────────────────────────────────

    def _owned_row(
        self, user_id: str, notification_id: str,
    ) -> sqlite3.Row:
        row = self._conn.execute(
            f"SELECT {_COLUMNS} FROM notifications WHERE id = ?",
            (notification_id,),
        ).fetchone()
        if row is None:
            raise BackendError(
                f"notification not found: {notification_id}"
            )
        if row["user_id"] != user_id:
            logger.warning(
                "User %s denied access to notification %s",
                user_id,
                notification_id,
            )
            raise BackendError(
                "permission denied for notification "
                f"{notification_id}"
            )
        return row

    async def mark_read(self, user_id: str, notification_id: str) -> None:
        events = await asyncio.to_thread(
            self._mark_read_sync, user_id, notification_id
        )
        self._publish(user_id, events)

    def _mark_read_sync(
        self, user_id: str, notification_id: str,
    ) -> list[ChangeEvent]:
        with self._lock:
            row = self._owned_row(user_id, notification_id)
            self._conn.execute(
                "UPDATE notifications SET is_read = 1 WHERE id = ?",
                (notification_id,),
            )
            self._conn.commit()
        updated = _row_to_notification(row).mark_read()
        return [ChangeEvent.update(updated)]

    async def mark_all_read(self, user_id: str) -> int:
        events = await asyncio.to_thread(self._mark_all_read_sync, user_id)
        self._publish(user_id, events)
        logger.info(
            "Marked %d notifications read for user %s",
            len(events),
            user_id,
        )
        return len(events)

    def _mark_all_read_sync(self, user_id: str) -> list[ChangeEvent]:
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_COLUMNS} FROM notifications "
                "WHERE user_id = ? AND is_read = 0",
                (user_id,),
            ).fetchall()
            self._conn.execute(
                "UPDATE notifications SET is_read = 1 "
                "WHERE user_id = ? AND is_read = 0",
                (user_id,),
            )
            self._conn.commit()
        return [
            ChangeEvent.update(_row_to_notification(r).mark_read())
            for r in rows
        ]

    async def delete(self, user_id: str, notification_id: str) -> None:
        events = await asyncio.to_thread(
            self._delete_sync, user_id, notification_id
        )
        self._publish(user_id, events)

    def _delete_sync(
        self, user_id: str, notification_id: str,
    ) -> list[ChangeEvent]:
        with self._lock:
            self._owned_row(user_id, notification_id)
            self._conn.execute(
                "DELETE FROM notifications WHERE id = ?",
                (notification_id,),
            )
            self._conn.commit()
        return [ChangeEvent.delete(notification_id)]

    async def delete_all(self, user_id: str) -> int:
        events = await asyncio.to_thread(self._delete_all_sync, user_id)
        self._publish(user_id, events)
        logger.info(
            "Deleted %d notifications for user %s", len(events), user_id
        )
        return len(events)

    def _delete_all_sync(self, user_id: str) -> list[ChangeEvent]:
        with self._lock:
            ids = [
                r["id"]
                for r in self._conn.execute(
                    "SELECT id FROM notifications WHERE user_id = ?",
                    (user_id,),
                ).fetchall()
            ]
            self._conn.execute(
                "DELETE FROM notifications WHERE user_id = ?",
                (user_id,),
            )
            self._conn.commit()
        return [ChangeEvent.delete(i) for i in ids]

    # ── Profiles ─────────────────────────────────────────

    def register_profile(
        self, user_id: str, name: str, role: str = "member",
    ) -> Profile:
        """Insert or update a member profile."""
        if role not in ROLES:
            raise BackendError(f"unknown role: {role}")
        with self._lock:
            self._conn.execute(
                "INSERT INTO profiles (id, name, role) VALUES (?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET "
                "name=excluded.name, role=excluded.role",
                (user_id, name, role),
            )
            self._conn.commit()
        return Profile(id=user_id, name=name, role=role)

    def list_profiles(
        self, roles: list[str] | None = None,
    ) -> list[Profile]:
        """Profiles ordered by name, optionally limited to ``roles``."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT id, name, role FROM profiles ORDER BY name"
            ).fetchall()
        profiles = [Profile(id=r[0], name=r[1], role=r[2]) for r in rows]
        if roles is None:
            return profiles
        return [p for p in profiles if p.role in roles]

    def _profiles_by_name(self) -> dict[str, Profile]:
        return {p.name.lower(): p for p in self.list_profiles()}

    # ── Delivery preferences ─────────────────────────────

    def _settings_sync(self, user_id: str) -> NotificationSettings:
        row = self._conn.execute(
            "SELECT new_products, bazar_alerts, community_messages "
            "FROM notification_settings WHERE user_id = ?",
            (user_id,),
        ).fetchone()
        if row is None:
            return NotificationSettings(user_id=user_id)
        return NotificationSettings(
            user_id=user_id,
            new_products=bool(row["new_products"]),
            bazar_alerts=bool(row["bazar_alerts"]),
            community_messages=bool(row["community_messages"]),
        )

    def get_notification_settings(
        self, user_id: str,
    ) -> NotificationSettings:
        """Stored preferences, or the defaults when none were saved."""
        with self._lock:
            return self._settings_sync(user_id)

    def update_notification_settings(
        self, user_id: str, **changes: bool,
    ) -> NotificationSettings:
        """Upsert the given preference flags; others keep their value."""
        with self._lock:
            try:
                updated = self._settings_sync(user_id).with_changes(
                    **changes
                )
            except ValueError as exc:
                raise BackendError(str(exc)) from exc
            self._conn.execute(
                "INSERT INTO notification_settings "
                "(user_id, new_products, bazar_alerts, community_messages, "
                "updated_at) VALUES (?, ?, ?, ?, ?) "
                "ON CONFLICT(user_id) DO UPDATE SET "
                "new_products=excluded.new_products, "
                "bazar_alerts=excluded.bazar_alerts, "
                "community_messages=excluded.community_messages, "
                "updated_at=excluded.updated_at",
                (
                    user_id,
                    int(updated.new_products),
                    int(updated.bazar_alerts),
                    int(updated.community_messages),
                    _timestamp(datetime.now(timezone.utc)),
                ),
            )
            self._conn.commit()
        logger.info("Updated notification settings for user %s", user_id)
        return updated

    # ── Server-side producers ────────────────────────────

    def _insert_sync(
        self,
        user_id: str,
        notification_type: NotificationType,
        title: str,
        message: str,
        link: str | None,
        sender_id: str | None,
        now: datetime,
    ) -> Notification:
        now = parse_timestamp(now)
        notification = Notification(
            id=uuid.uuid4().hex,
            user_id=user_id,
            type=notification_type,
            title=title,
            message=message,
            created_at=now,
            link=link,
            sender_id=sender_id,
        )
        self._conn.execute(
            f"INSERT INTO notifications ({_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                notification.id,
                user_id,
                notification_type.value,
                title,
                message,
                link,
                0,
                _timestamp(now),
                sender_id,
            ),
        )
        return notification

    async def create_notification(
        self,
        user_id: str,
        notification_type: NotificationType | str,
        title: str,
        message: str,
        link: str | None = None,
        sender_id: str | None = None,
        now: datetime | None = None,
    ) -> Notification | None:
        """Create one notification and stream it to its owner.

        Returns ``None`` when the owner opted out of this kind.
        """
        kind = NotificationType(notification_type)
        moment = parse_timestamp(now) if now else datetime.now(timezone.utc)

        def _work() -> Notification | None:
            with self._lock:
                if not self._settings_sync(user_id).allows(kind):
                    return None
                created = self._insert_sync(
                    user_id, kind, title, message, link, sender_id, moment
                )
                self._conn.commit()
            return created

        notification = await asyncio.to_thread(_work)
        if notification is None:
            logger.info(
                "User %s opted out of %s notifications", user_id, kind.value
            )
            return None
        self._publish(user_id, [ChangeEvent.insert(notification)])
        logger.info(
            "Created %s notification %s for user %s",
            kind.value,
            notification.id,
            user_id,
        )
        return notification

    async def send_bulk_notification(
        self,
        notification_type: NotificationType | str,
        title: str,
        message: str,
        link: str | None = None,
        target_roles: list[str] | None = None,
    ) -> int:
        """Notify every profile (or only ``target_roles``); returns the count."""
        kind = NotificationType(notification_type)
        if target_roles is not None:
            unknown = [r for r in target_roles if r not in ROLES]
            if unknown:
                raise BackendError(f"unknown role(s): {', '.join(unknown)}")
        recipients = self.list_profiles(target_roles)
        moment = datetime.now(timezone.utc)

        def _work() -> list[Notification]:
            with self._lock:
                created = [
                    self._insert_sync(
                        p.id, kind, title, message, link, None, moment
                    )
                    for p in recipients
                    if self._settings_sync(p.id).allows(kind)
                ]
                self._conn.commit()
            return created

        created = await asyncio.to_thread(_work)
        for notification in created:
            self._publish(
                notification.user_id, [ChangeEvent.insert(notification)]
            )
        logger.info(
            "Bulk %s notification sent to %d profiles (roles=%s)",
            kind.value,
            len(created),
            target_roles or "all",
        )
        return len(created)

    async def notify_mentions(
        self,
        text: str,
        sender_id: str,
        link: str | None = None,
    ) -> list[Notification]:
        """Create a ``mention`` notification per distinct mentioned member."""
        directory = self._profiles_by_name()
        sender = next(
            (p for p in directory.values() if p.id == sender_id), None
        )
        sender_name = sender.name if sender else "Someone"

        targets: list[Profile] = []
        seen: set[str] = set()
        for name in extract_mentions(text):
            profile = directory.get(name.lower())
            if profile is None:
                logger.debug("Mention @%s matches no profile", name)
                continue
            if profile.id == sender_id or profile.id in seen:
                continue
            seen.add(profile.id)
            targets.append(profile)

        created: list[Notification] = []
        for profile in targets:
            notification = await self.create_notification(
                profile.id,
                NotificationType.MENTION,
                f"{sender_name} mentioned you",
                text,
                link=link,
                sender_id=sender_id,
            )
            if notification is not None:
                created.append(notification)
        return created
