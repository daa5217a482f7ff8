# src/models/notification_settings.py

"""Per-member delivery preferences for notification kinds."""

from dataclasses import dataclass, fields, replace

from src.models.notification import NotificationType

# Preference flag that gates each kind. Kinds not listed always deliver.
# ``bazar_alerts`` is stored but gates no kind yet.
PREFERENCE_FOR_TYPE: dict[NotificationType, str] = {
    NotificationType.PRODUCT: "new_products",
    NotificationType.MENTION: "community_messages",
    NotificationType.COMMUNITY: "community_messages",
}


@dataclass(frozen=True)
class NotificationSettings:
    """Which notification kinds a member wants to receive."""

    user_id: str
    new_products: bool = True
    bazar_alerts: bool = False
    community_messages: bool = True

    @classmethod
    def preference_names(cls) -> tuple[str, ...]:
        return tuple(f.name for f in fields(cls) if f.name != "user_id")

    def allows(self, notification_type: NotificationType | str) -> bool:
        """True if a notification of this kind should be delivered."""
        flag = PREFERENCE_FOR_TYPE.get(NotificationType(notification_type))
        if flag is None:
            return True
        return bool(getattr(self, flag))

    def with_changes(self, **changes: bool) -> "NotificationSettings":
        unknown = set(changes) - set(self.preference_names())
        if unknown:
            raise ValueError(
                f"unknown preference(s): {', '.join(sorted(unknown))}"
            )
        return replace(
            self, **{k: bool(v) for k, v in changes.items()}
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "user_id": self.user_id,
            "new_products": self.new_products,
            "bazar_alerts": self.bazar_alerts,
            "community_messages": self.community_messages,
        }
