# src/storage/notification_backend.py

"""Abstract notification backend and its per-user change feed."""

import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import Callable

from src.models.notification import ChangeEvent, Notification

logger = logging.getLogger("marketplace_hub.backend")

EventHandler = Callable[[ChangeEvent], None]
DisconnectHandler = Callable[[], None]


class BackendError(Exception):
    """A backend call was rejected or failed; ``str()`` is its message."""


class Subscription:
    """Handle for one user's change stream; ``close()`` is idempotent."""

    def __init__(
        self,
        feed: "ChangeFeed",
        user_id: str,
        on_event: EventHandler,
        on_disconnect: DisconnectHandler | None = None,
    ) -> None:
        self._feed = feed
        self.user_id = user_id
        self.on_event = on_event
        self.on_disconnect = on_disconnect
        self.closed = False

    def close(self) -> None:
        """Stop delivering events to this subscription."""
        if self.closed:
            return
        self.closed = True
        self._feed.remove(self)


class ChangeFeed:
    """Route change events to the subscriptions of one user."""

    def __init__(self) -> None:
        self._subscriptions: defaultdict[str, list[Subscription]] = (
            defaultdict(list)
        )

    def add(
        self,
        user_id: str,
        on_event: EventHandler,
        on_disconnect: DisconnectHandler | None = None,
    ) -> Subscription:
        """Register handlers for ``user_id`` and return the subscription."""
        subscription = Subscription(self, user_id, on_event, on_disconnect)
        self._subscriptions[user_id].append(subscription)
        logger.debug("Subscribed to changes for user %s", user_id)
        return subscription

    def remove(self, subscription: Subscription) -> None:
        """Drop ``subscription`` from its user's pool."""
        pool = self._subscriptions.get(subscription.user_id)
        if pool is None:
            return
        if subscription in pool:
            pool.remove(subscription)
        if not pool:
            self._subscriptions.pop(subscription.user_id, None)

    def subscriber_count(self, user_id: str) -> int:
        return len(self._subscriptions.get(user_id, []))

    def publish(self, user_id: str, event: ChangeEvent) -> None:
        """Deliver ``event`` to every live subscription of ``user_id``."""
        for subscription in list(self._subscriptions.get(user_id, [])):
            if subscription.closed:
                continue
            try:
                subscription.on_event(event)
            except Exception:
                logger.error(
                    "Change handler failed for user %s",
                    user_id,
                    exc_info=True,
                )

    def disconnect_all(self) -> int:
        """Drop every subscription as if the transport went away.

        Returns the number of subscriptions that were dropped.
        """
        dropped = [
            sub for pool in self._subscriptions.values() for sub in pool
        ]
        self._subscriptions.clear()
        for subscription in dropped:
            subscription.closed = True
            if subscription.on_disconnect is not None:
                subscription.on_disconnect()
        if dropped:
            logger.warning(
                "Change feed dropped %d subscriptions", len(dropped)
            )
        return len(dropped)


class NotificationBackend(ABC):
    """Query, mutate and stream one user's notifications."""

    @abstractmethod
    async def fetch_for_user(self, user_id: str) -> list[Notification]:
        """All notifications of ``user_id``, newest first."""
        ...

    @abstractmethod
    async def mark_read(self, user_id: str, notification_id: str) -> None:
        """Set ``is_read`` on one notification owned by ``user_id``."""
        ...

    @abstractmethod
    async def mark_all_read(self, user_id: str) -> int:
        """Mark every unread notification of ``user_id`` as read."""
        ...

    @abstractmethod
    async def delete(self, user_id: str, notification_id: str) -> None:
        """Delete one notification owned by ``user_id``."""
        ...

    @abstractmethod
    async def delete_all(self, user_id: str) -> int:
        """Delete every notification of ``user_id``."""
        ...

    @abstractmethod
    def subscribe(
        self,
        user_id: str,
        on_event: EventHandler,
        on_disconnect: DisconnectHandler | None = None,
    ) -> Subscription:
        """Attach a change stream scoped to ``user_id``."""
        ...
