# src/models/notification.py

"""Notification and change-event models shared by store and backend."""

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class NotificationType(str, Enum):
    """Kinds of notification produced by the backend."""

    MENTION = "mention"
    PRODUCT = "product"
    COMMUNITY = "community"
    ANNOUNCEMENT = "announcement"
    ALERT = "alert"
    POST_APPROVED = "post_approved"
    POST_REJECTED = "post_rejected"


class ChangeKind(str, Enum):
    """Row-level change kinds delivered by the change stream."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 string (or datetime) into an aware datetime."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        # Python < 3.11 does not accept the trailing "Z"
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        raise ValueError(f"Invalid timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class Notification:
    """A single notification owned by exactly one user."""

    id: str
    user_id: str
    type: NotificationType
    title: str
    message: str
    created_at: datetime
    is_read: bool = False
    link: str | None = None
    sender_id: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Notification":
        """Build a Notification from a backend row.

        Raises ``ValueError`` on a missing field or unknown type.
        """
        try:
            return cls(
                id=str(row["id"]),
                user_id=str(row["user_id"]),
                type=NotificationType(row["type"]),
                title=str(row["title"]),
                message=str(row["message"]),
                created_at=parse_timestamp(row["created_at"]),
                is_read=bool(row.get("is_read", False)),
                link=row.get("link") or None,
                sender_id=row.get("sender_id") or None,
            )
        except KeyError as exc:
            raise ValueError(
                f"Notification row missing field {exc}"
            ) from exc

    def to_row(self) -> dict[str, Any]:
        """Serialise to the backend row shape."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type.value,
            "title": self.title,
            "message": self.message,
            "created_at": self.created_at.isoformat(),
            "is_read": self.is_read,
            "link": self.link,
            "sender_id": self.sender_id,
        }

    def mark_read(self) -> "Notification":
        """Return a read copy of this notification."""
        return replace(self, is_read=True)


_PAYLOAD_KINDS: dict[str, ChangeKind] = {
    "INSERT": ChangeKind.INSERT,
    "UPDATE": ChangeKind.UPDATE,
    "DELETE": ChangeKind.DELETE,
}


@dataclass(frozen=True)
class ChangeEvent:
    """One insert/update/delete delivered by the change stream."""

    kind: ChangeKind
    notification_id: str
    notification: Notification | None = None

    @classmethod
    def insert(cls, notification: Notification) -> "ChangeEvent":
        return cls(ChangeKind.INSERT, notification.id, notification)

    @classmethod
    def update(cls, notification: Notification) -> "ChangeEvent":
        return cls(ChangeKind.UPDATE, notification.id, notification)

    @classmethod
    def delete(cls, notification_id: str) -> "ChangeEvent":
        return cls(ChangeKind.DELETE, notification_id)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ChangeEvent":
        """Parse a realtime ``postgres_changes`` style payload.

        Expected shape::

            {"eventType": "INSERT", "new": {...row...}, "old": {}}

        Raises ``ValueError`` when the payload cannot be interpreted.
        """
        raw_kind = str(payload.get("eventType", "")).upper()
        kind = _PAYLOAD_KINDS.get(raw_kind)
        if kind is None:
            raise ValueError(f"Unknown event type: {raw_kind!r}")

        if kind is ChangeKind.DELETE:
            old = payload.get("old") or {}
            if "id" not in old:
                raise ValueError("DELETE payload without old.id")
            return cls.delete(str(old["id"]))

        new = payload.get("new")
        if not isinstance(new, dict):
            raise ValueError(f"{raw_kind} payload without new row")
        notification = Notification.from_row(new)
        return cls(kind, notification.id, notification)
