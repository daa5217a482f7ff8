# tests/test_notification_store.py

"""Tests for the per-user notification store and its sync lifecycle."""

import asyncio
import tempfile
import unittest
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from pathlib import Path

from src.models.notification import (
    ChangeEvent,
    Notification,
    NotificationType,
)
from src.services.notification_store import NotificationStore, SyncState
from src.storage.notification_backend import (
    BackendError,
    ChangeFeed,
    DisconnectHandler,
    EventHandler,
    NotificationBackend,
    Subscription,
)
from src.storage.notification_db import SQLiteNotificationBackend

BASE_TIME = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _notification(
    nid: str,
    user_id: str = "u1",
    minutes_ago: int = 0,
    is_read: bool = False,
) -> Notification:
    """Helper to build a Notification ``minutes_ago`` before BASE_TIME."""
    return Notification(
        id=nid,
        user_id=user_id,
        type=NotificationType.ALERT,
        title=f"Title {nid}",
        message=f"Message {nid}",
        created_at=BASE_TIME - timedelta(minutes=minutes_ago),
        is_read=is_read,
    )


class FakeBackend(NotificationBackend):
    """In-memory backend; mutations are only recorded."""

    def __init__(self) -> None:
        self.rows: defaultdict[str, list[Notification]] = defaultdict(list)
        self.feed = ChangeFeed()
        self.fail_loads = 0
        self.fetch_calls = 0
        self.gates: dict[str, asyncio.Event] = {}
        self.calls: list[tuple[str, ...]] = []

    async def fetch_for_user(self, user_id: str) -> list[Notification]:
        self.fetch_calls += 1
        gate = self.gates.get(user_id)
        if gate is not None:
            await gate.wait()
        if self.fail_loads > 0:
            self.fail_loads -= 1
            raise BackendError("connection refused")
        return list(self.rows[user_id])

    async def mark_read(self, user_id: str, notification_id: str) -> None:
        self.calls.append(("mark_read", user_id, notification_id))

    async def mark_all_read(self, user_id: str) -> int:
        self.calls.append(("mark_all_read", user_id))
        return 7

    async def delete(self, user_id: str, notification_id: str) -> None:
        self.calls.append(("delete", user_id, notification_id))

    async def delete_all(self, user_id: str) -> int:
        self.calls.append(("delete_all", user_id))
        return 4

    def subscribe(
        self,
        user_id: str,
        on_event: EventHandler,
        on_disconnect: DisconnectHandler | None = None,
    ) -> Subscription:
        return self.feed.add(user_id, on_event, on_disconnect)


class InstantSleep:
    """Records requested delays and yields once instead of sleeping."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


async def settle(rounds: int = 25) -> None:
    """Let background tasks run for a few loop iterations."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class _StoreTestBase(unittest.IsolatedAsyncioTestCase):

    def setUp(self) -> None:
        self.backend = FakeBackend()
        self.sleep = InstantSleep()
        self.toasts: list[Notification] = []

    def make_store(
        self, reconcile_interval: float | None = None,
    ) -> NotificationStore:
        return NotificationStore(
            self.backend,
            on_new_notification=self.toasts.append,
            reconcile_interval=reconcile_interval,
            retry_base_delay=1.0,
            retry_max_delay=8.0,
            sleep=self.sleep,
        )


class TestBinding(_StoreTestBase):
    """bind() loads, attaches and tears down per user."""

    async def test_initial_state_is_unbound(self) -> None:
        store = self.make_store()
        self.assertIs(store.state, SyncState.UNBOUND)
        self.assertEqual(store.list(), [])
        self.assertEqual(store.unread_count(), 0)

    async def test_bind_loads_newest_first(self) -> None:
        self.backend.rows["u1"] = [
            _notification("old", minutes_ago=30),
            _notification("new", minutes_ago=1),
            _notification("mid", minutes_ago=10),
        ]
        store = self.make_store()
        await store.bind("u1")

        self.assertIs(store.state, SyncState.LIVE)
        self.assertTrue(store.is_streaming)
        self.assertEqual(
            [n.id for n in store.list()], ["new", "mid", "old"]
        )

    async def test_unread_count_derived_from_items(self) -> None:
        self.backend.rows["u1"] = [
            _notification("a", is_read=True),
            _notification("b"),
            _notification("c"),
        ]
        store = self.make_store()
        await store.bind("u1")
        self.assertEqual(store.unread_count(), 2)

    async def test_rebinding_same_user_is_noop(self) -> None:
        store = self.make_store()
        await store.bind("u1")
        await store.bind("u1")
        self.assertEqual(self.backend.fetch_calls, 1)
        self.assertEqual(self.backend.feed.subscriber_count("u1"), 1)

    async def test_switch_user_replaces_items_and_stream(self) -> None:
        self.backend.rows["u1"] = [_notification("a1")]
        self.backend.rows["u2"] = [_notification("b1", user_id="u2")]
        store = self.make_store()
        await store.bind("u1")
        await store.bind("u2")

        self.assertEqual([n.id for n in store.list()], ["b1"])
        self.assertEqual(self.backend.feed.subscriber_count("u1"), 0)
        self.assertEqual(self.backend.feed.subscriber_count("u2"), 1)

    async def test_events_of_previous_user_are_not_applied(self) -> None:
        store = self.make_store()
        await store.bind("u1")
        await store.bind("u2")
        self.backend.feed.publish(
            "u1", ChangeEvent.insert(_notification("late"))
        )
        self.assertEqual(store.list(), [])

    async def test_bind_none_logs_out(self) -> None:
        self.backend.rows["u1"] = [_notification("a")]
        store = self.make_store()
        await store.bind("u1")
        await store.bind(None)

        self.assertIs(store.state, SyncState.UNBOUND)
        self.assertIsNone(store.user_id)
        self.assertEqual(store.list(), [])
        self.assertFalse(store.is_streaming)
        self.assertEqual(self.backend.feed.subscriber_count("u1"), 0)

    async def test_stale_load_of_previous_user_is_discarded(self) -> None:
        """A slow load for u1 that finishes after switching to u2 is ignored."""
        self.backend.rows["u1"] = [_notification("a1")]
        self.backend.rows["u2"] = [_notification("b1", user_id="u2")]
        gate = asyncio.Event()
        self.backend.gates["u1"] = gate
        store = self.make_store()

        slow = asyncio.create_task(store.bind("u1"))
        await settle(3)
        self.assertIs(store.state, SyncState.LOADING)

        await store.bind("u2")
        gate.set()
        await slow

        self.assertEqual(store.user_id, "u2")
        self.assertEqual([n.id for n in store.list()], ["b1"])
        self.assertEqual(self.backend.feed.subscriber_count("u1"), 0)

    async def test_listeners_notified_on_changes(self) -> None:
        store = self.make_store()
        states: list[SyncState] = []
        unsubscribe = store.subscribe(lambda s: states.append(s.state))
        await store.bind("u1")
        self.assertEqual(states, [SyncState.LOADING, SyncState.LIVE])

        unsubscribe()
        await store.bind(None)
        self.assertEqual(len(states), 2)


class TestApplyEvent(_StoreTestBase):
    """Merging change events into the list."""

    async def asyncSetUp(self) -> None:
        self.backend.rows["u1"] = [
            _notification("a", minutes_ago=5),
            _notification("b", minutes_ago=20),
        ]
        self.store = self.make_store()
        await self.store.bind("u1")

    async def test_insert_goes_to_top_and_toasts(self) -> None:
        fresh = _notification("c", minutes_ago=0)
        self.backend.feed.publish("u1", ChangeEvent.insert(fresh))

        self.assertEqual([n.id for n in self.store.list()], ["c", "a", "b"])
        self.assertEqual(self.store.unread_count(), 3)
        self.assertEqual(self.toasts, [fresh])

    async def test_duplicate_insert_is_idempotent(self) -> None:
        fresh = _notification("c")
        self.assertTrue(self.store.apply_event(ChangeEvent.insert(fresh)))
        self.assertFalse(self.store.apply_event(ChangeEvent.insert(fresh)))
        self.assertEqual(len(self.store.list()), 3)
        self.assertEqual(len(self.toasts), 1)

    async def test_insert_of_loaded_id_is_ignored(self) -> None:
        dup = _notification("a", minutes_ago=5)
        self.assertFalse(self.store.apply_event(ChangeEvent.insert(dup)))
        self.assertEqual(self.toasts, [])

    async def test_older_insert_keeps_sorted_order(self) -> None:
        older = _notification("x", minutes_ago=10)
        self.store.apply_event(ChangeEvent.insert(older))
        self.assertEqual([n.id for n in self.store.list()], ["a", "x", "b"])

    async def test_insert_for_foreign_user_is_ignored(self) -> None:
        foreign = _notification("z", user_id="u2")
        self.assertFalse(self.store.apply_event(ChangeEvent.insert(foreign)))
        self.assertEqual(len(self.store.list()), 2)

    async def test_update_replaces_in_place(self) -> None:
        read = _notification("b", minutes_ago=20, is_read=True)
        self.assertTrue(self.store.apply_event(ChangeEvent.update(read)))
        self.assertEqual([n.id for n in self.store.list()], ["a", "b"])
        self.assertTrue(self.store.get("b").is_read)  # type: ignore[union-attr]
        self.assertEqual(self.store.unread_count(), 1)

    async def test_repeated_update_is_noop(self) -> None:
        read = _notification("a", minutes_ago=5, is_read=True)
        self.store.apply_event(ChangeEvent.update(read))
        self.assertFalse(self.store.apply_event(ChangeEvent.update(read)))

    async def test_update_of_unknown_id_is_noop(self) -> None:
        ghost = _notification("ghost", is_read=True)
        self.assertFalse(self.store.apply_event(ChangeEvent.update(ghost)))
        self.assertIsNone(self.store.get("ghost"))

    async def test_delete_removes_and_repeats_are_noops(self) -> None:
        self.assertTrue(self.store.apply_event(ChangeEvent.delete("a")))
        self.assertFalse(self.store.apply_event(ChangeEvent.delete("a")))
        self.assertFalse(self.store.apply_event(ChangeEvent.delete("nope")))
        self.assertEqual([n.id for n in self.store.list()], ["b"])

    async def test_failing_toast_does_not_block_listeners(self) -> None:
        def boom(notification: Notification) -> None:
            raise RuntimeError("toast widget gone")

        store = NotificationStore(
            self.backend,
            on_new_notification=boom,
            reconcile_interval=None,
            sleep=self.sleep,
        )
        await store.bind("u1")
        seen: list[int] = []
        store.subscribe(lambda s: seen.append(len(s.list())))

        with self.assertLogs("marketplace_hub", level="ERROR"):
            changed = store.apply_event(
                ChangeEvent.insert(_notification("c"))
            )
        self.assertTrue(changed)
        self.assertEqual(store.list()[0].id, "c")
        self.assertEqual(seen, [3])
        await store.close()

    async def test_apply_payload_parses_realtime_shape(self) -> None:
        payload = {
            "eventType": "INSERT",
            "new": _notification("p").to_row(),
            "old": {},
        }
        self.assertTrue(self.store.apply_payload(payload))
        self.assertIsNotNone(self.store.get("p"))

    async def test_apply_payload_drops_malformed(self) -> None:
        self.assertFalse(self.store.apply_payload({"eventType": "TRUNCATE"}))
        self.assertFalse(
            self.store.apply_payload({"eventType": "INSERT", "new": {"id": 1}})
        )
        self.assertEqual(len(self.store.list()), 2)


class TestRecovery(_StoreTestBase):
    """Load failures, lost streams and periodic reconciliation."""

    async def test_load_failure_sets_error_then_retries(self) -> None:
        self.backend.rows["u1"] = [_notification("a")]
        self.backend.fail_loads = 1
        store = self.make_store()
        await store.bind("u1")

        self.assertIs(store.state, SyncState.ERROR)
        self.assertEqual(store.error, "connection refused")
        self.assertEqual(store.list(), [])

        await settle()
        self.assertIs(store.state, SyncState.LIVE)
        self.assertIsNone(store.error)
        self.assertEqual([n.id for n in store.list()], ["a"])

    async def test_retry_delays_back_off_exponentially(self) -> None:
        self.backend.fail_loads = 5
        store = self.make_store()
        await store.bind("u1")
        await settle(60)

        self.assertIs(store.state, SyncState.LIVE)
        self.assertEqual(self.sleep.delays, [1.0, 2.0, 4.0, 8.0, 8.0])

    async def test_lost_stream_reconnects_and_catches_up(self) -> None:
        self.backend.rows["u1"] = [_notification("a", minutes_ago=5)]
        store = self.make_store()
        await store.bind("u1")

        dropped = self.backend.feed.disconnect_all()
        self.assertEqual(dropped, 1)
        self.assertIs(store.state, SyncState.RECONNECTING)
        self.assertFalse(store.is_streaming)
        # Stale items stay visible while reconnecting
        self.assertEqual([n.id for n in store.list()], ["a"])

        # Arrives while the stream is down
        self.backend.rows["u1"].append(_notification("missed"))
        await settle()

        self.assertIs(store.state, SyncState.LIVE)
        self.assertTrue(store.is_streaming)
        self.assertEqual([n.id for n in store.list()], ["missed", "a"])
        self.assertEqual(self.backend.feed.subscriber_count("u1"), 1)

    async def test_failed_reconnect_keeps_stale_items(self) -> None:
        self.backend.rows["u1"] = [_notification("a")]
        store = self.make_store()
        await store.bind("u1")
        seen: list[tuple[SyncState, int]] = []
        store.subscribe(lambda s: seen.append((s.state, len(s.list()))))

        self.backend.fail_loads = 1
        self.backend.feed.disconnect_all()
        await settle()

        self.assertIs(store.state, SyncState.LIVE)
        self.assertEqual(
            seen,
            [
                (SyncState.RECONNECTING, 1),
                (SyncState.RECONNECTING, 1),
                (SyncState.LIVE, 1),
            ],
        )
        self.assertEqual(self.sleep.delays, [1.0, 2.0])

    async def test_pending_retry_cancelled_on_user_switch(self) -> None:
        self.backend.fail_loads = 1
        store = self.make_store()
        await store.bind("u1")
        self.assertIs(store.state, SyncState.ERROR)

        await store.bind(None)
        await settle()
        self.assertIs(store.state, SyncState.UNBOUND)
        self.assertEqual(self.backend.fetch_calls, 1)

    async def test_reconcile_picks_up_missed_rows(self) -> None:
        store = self.make_store(reconcile_interval=300.0)
        await store.bind("u1")
        self.backend.rows["u1"].append(_notification("silent"))
        await settle()

        self.assertIn(300.0, self.sleep.delays)
        self.assertIsNotNone(store.get("silent"))
        await store.close()

    async def test_reload_keeps_changes_streamed_during_fetch(self) -> None:
        self.backend.rows["u1"] = [
            _notification("a", minutes_ago=1),
            _notification("b", minutes_ago=2),
        ]
        store = self.make_store()
        await store.bind("u1")

        gate = asyncio.Event()
        self.backend.gates["u1"] = gate
        reload_task = asyncio.create_task(store.reload())
        await settle()
        # Snapshot still holds "a"; the stream already removed it
        self.backend.feed.publish("u1", ChangeEvent.delete("a"))
        gate.set()

        self.assertFalse(await reload_task)
        self.assertEqual([n.id for n in store.list()], ["b"])

        del self.backend.gates["u1"]
        self.backend.rows["u1"] = [_notification("b", minutes_ago=2)]
        self.assertTrue(await store.reload())
        self.assertEqual([n.id for n in store.list()], ["b"])

    async def test_reload_failure_keeps_items(self) -> None:
        self.backend.rows["u1"] = [_notification("a")]
        store = self.make_store()
        await store.bind("u1")
        self.backend.fail_loads = 1

        self.assertFalse(await store.reload())
        self.assertEqual([n.id for n in store.list()], ["a"])
        self.assertIs(store.state, SyncState.LIVE)


class TestMutations(_StoreTestBase):
    """Mutations only reach the backend; local state follows events."""

    async def test_mark_read_calls_backend_without_local_change(self) -> None:
        self.backend.rows["u1"] = [_notification("a")]
        store = self.make_store()
        await store.bind("u1")
        await store.mark_read("a")

        self.assertEqual(self.backend.calls, [("mark_read", "u1", "a")])
        self.assertEqual(store.unread_count(), 1)

    async def test_delete_calls_backend_without_local_change(self) -> None:
        self.backend.rows["u1"] = [_notification("a")]
        store = self.make_store()
        await store.bind("u1")
        await store.delete("a")

        self.assertEqual(self.backend.calls, [("delete", "u1", "a")])
        self.assertEqual(len(store.list()), 1)

    async def test_bulk_mutations_return_backend_counts(self) -> None:
        store = self.make_store()
        await store.bind("u1")
        self.assertEqual(await store.mark_all_read(), 7)
        self.assertEqual(await store.delete_all(), 4)

    async def test_unbound_single_mutations_raise(self) -> None:
        store = self.make_store()
        with self.assertRaises(BackendError):
            await store.mark_read("a")
        with self.assertRaises(BackendError):
            await store.delete("a")
        self.assertEqual(self.backend.calls, [])

    async def test_unbound_bulk_mutations_return_zero(self) -> None:
        store = self.make_store()
        self.assertEqual(await store.mark_all_read(), 0)
        self.assertEqual(await store.delete_all(), 0)
        self.assertEqual(self.backend.calls, [])


class TestStoreWithSQLite(unittest.IsolatedAsyncioTestCase):
    """End-to-end scenarios against the SQLite backend."""

    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.backend = SQLiteNotificationBackend(
            Path(self._tmp.name) / "n.db"
        )
        self.store = NotificationStore(self.backend, reconcile_interval=None)

    async def asyncTearDown(self) -> None:
        await self.store.close()
        self.backend.close()
        self._tmp.cleanup()

    async def _seed(self, user_id: str, count: int) -> list[Notification]:
        return [
            await self.backend.create_notification(
                user_id,
                NotificationType.PRODUCT,
                f"Item {i}",
                "restocked",
                now=BASE_TIME + timedelta(minutes=i),
            )
            for i in range(count)
        ]

    async def test_mark_all_read_flows_back_through_stream(self) -> None:
        await self._seed("u1", 3)
        await self.store.bind("u1")
        self.assertEqual(self.store.unread_count(), 3)

        count = await self.store.mark_all_read()
        self.assertEqual(count, 3)
        self.assertEqual(self.store.unread_count(), 0)
        self.assertEqual(len(self.store.list()), 3)

    async def test_new_notification_streams_in(self) -> None:
        await self.store.bind("u1")
        created = await self.backend.create_notification(
            "u1", "alert", "Heads up", "Price dropped"
        )
        self.assertEqual(self.store.list(), [created])
        self.assertEqual(self.store.unread_count(), 1)

    async def test_naive_timestamp_streams_in_sorted(self) -> None:
        await self._seed("u1", 2)
        await self.store.bind("u1")
        created = await self.backend.create_notification(
            "u1", "alert", "Future", "m", now=datetime(2030, 1, 1)
        )
        self.assertEqual(
            [n.title for n in self.store.list()],
            ["Future", "Item 1", "Item 0"],
        )
        self.assertEqual(self.store.list()[0], created)

    async def test_other_users_rows_cannot_be_touched(self) -> None:
        (theirs,) = await self._seed("u2", 1)
        await self._seed("u1", 1)
        await self.store.bind("u1")

        with self.assertRaises(BackendError):
            await self.store.mark_read(theirs.id)
        with self.assertRaises(BackendError):
            await self.store.delete(theirs.id)
        self.assertEqual(self.store.unread_count(), 1)

    async def test_delete_all_empties_list(self) -> None:
        await self._seed("u1", 2)
        await self.store.bind("u1")
        self.assertEqual(await self.store.delete_all(), 2)
        self.assertEqual(self.store.list(), [])


if __name__ == "__main__":
    unittest.main()
