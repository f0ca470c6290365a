"""Tests for the sync engine (pull, merge and flush orchestration)."""

from __future__ import annotations

import threading
from datetime import date
from unittest.mock import MagicMock

import pytest

from calreplica.client.api import AuthenticationError, BadRequestError, ServerError
from calreplica.client.models import (
    Account,
    CalendarDelta,
    ErrorKind,
    EventKey,
    EventTime,
    Tombstone,
)
from calreplica.client.query import list_events
from calreplica.client.state import LocalStore
from calreplica.client.sync.engine import DAY, SyncEngine
from calreplica.client.sync.processor import QueueProcessor
from calreplica.client.sync.queue import LocalChangeQueue
from calreplica.client.sync.retry import RetryPolicy
from calreplica.client.sync.types import SyncInProgressError, UnknownAccountError
from calreplica.core.config import SyncSettings, SyncWindow
from tests.fakes import ACCOUNT, CALENDAR, FakeClock, FakeGateway, at, timed

NOW = at(15)


def make_engine(
    store: LocalStore,
    gateway: FakeGateway,
    policy: RetryPolicy,
    clock: FakeClock,
    sleep: MagicMock | None = None,
) -> SyncEngine:
    return SyncEngine(
        store,
        gateway,
        processor=QueueProcessor(store, gateway, policy=policy, clock=clock, max_workers=2),
        settings=SyncSettings(max_workers=2),
        policy=policy,
        sleep=sleep or MagicMock(),
        now=lambda: NOW,
    )


@pytest.fixture
def engine(store: LocalStore, gateway: FakeGateway, policy: RetryPolicy, clock: FakeClock) -> SyncEngine:
    return make_engine(store, gateway, policy, clock)


@pytest.fixture
def queue(store: LocalStore, clock: FakeClock) -> LocalChangeQueue:
    return LocalChangeQueue(store, clock=clock)


def key(event_id: str) -> EventKey:
    return EventKey(ACCOUNT, CALENDAR, event_id)


def snapshot(store: LocalStore) -> list[tuple[object, ...]]:
    return [
        (e.id, e.summary, e.remote_version, e.start, e.locally_modified, e.deleted, e.has_conflict)
        for e in store.list_events(ACCOUNT, CALENDAR)
    ]


# =============================================================================
# Pull
# =============================================================================


class TestInitialSync:
    """Tests for the first (full) pull of a calendar."""

    def test_creates_events_and_stores_cursor(
        self, engine: SyncEngine, gateway: FakeGateway, store: LocalStore
    ) -> None:
        gateway.put("e1", *timed(at(10)), summary="Standup")
        gateway.put("e2", *timed(at(11)), summary="Review")

        report = engine.run_sync()

        assert report.ok
        assert report.events_created == 2
        assert report.calendars_synced == 1
        assert [e.id for e in store.list_events(ACCOUNT, CALENDAR)] == ["e1", "e2"]
        calendar = store.get_calendar(ACCOUNT, CALENDAR)
        assert calendar is not None
        assert calendar.sync_cursor == gateway.cursor()
        assert calendar.last_sync_status == "ok"

    def test_full_pull_requests_the_window(self, engine: SyncEngine, gateway: FakeGateway) -> None:
        engine.run_sync()
        assert gateway.calls_of("list_events")[0][3] is None  # no cursor

    def test_events_outside_window_are_pruned(
        self, engine: SyncEngine, gateway: FakeGateway, store: LocalStore
    ) -> None:
        gateway.put("ancient", *timed(at(1, month=1)), summary="New year")
        gateway.put("e1", *timed(at(10)))

        engine.run_sync()

        assert [e.id for e in store.list_events(ACCOUNT, CALENDAR)] == ["e1"]

    def test_cancelled_remote_event_is_not_stored(
        self, engine: SyncEngine, gateway: FakeGateway, store: LocalStore
    ) -> None:
        gateway.put("gone", *timed(at(10)), status="cancelled")
        report = engine.run_sync()
        assert report.events_created == 0
        assert store.list_events(ACCOUNT, CALENDAR) == []


class TestIncrementalSync:
    """Tests for cursor-based pulls."""

    def test_applies_remote_edit(self, engine: SyncEngine, gateway: FakeGateway, store: LocalStore) -> None:
        gateway.put("e1", *timed(at(10)), summary="Standup")
        engine.run_sync()
        gateway.edit("e1", summary="Standup (moved)")

        report = engine.run_sync()

        assert report.events_updated == 1
        event = store.get_event(key("e1"))
        assert event is not None
        assert event.summary == "Standup (moved)"
        assert gateway.calls_of("list_events")[-1][3] is not None

    def test_applies_remote_delete(self, engine: SyncEngine, gateway: FakeGateway, store: LocalStore) -> None:
        gateway.put("e1", *timed(at(10)))
        engine.run_sync()
        gateway.remove("e1")

        report = engine.run_sync()

        assert report.events_deleted == 1
        assert store.get_event(key("e1")) is None

    def test_nothing_changed(self, engine: SyncEngine, gateway: FakeGateway, store: LocalStore) -> None:
        gateway.put("e1", *timed(at(10)))
        engine.run_sync()
        before = snapshot(store)

        report = engine.run_sync()

        assert (report.events_created, report.events_updated, report.events_deleted) == (0, 0, 0)
        assert snapshot(store) == before


class TestReplay:
    """Merging the same deltas twice leaves the replica unchanged."""

    def test_replay_from_old_cursor(self, engine: SyncEngine, gateway: FakeGateway, store: LocalStore) -> None:
        gateway.put("e1", *timed(at(10)), summary="Standup")
        gateway.put("x", *timed(at(11)))
        engine.run_sync()
        gateway.remove("x")
        engine.run_sync()
        before = snapshot(store)

        store.set_sync_cursor(ACCOUNT, CALENDAR, "0")
        report = engine.run_sync()

        assert report.ok
        assert snapshot(store) == before
        assert store.get_event(key("x")) is None

    def test_replay_keeps_pending_local_edit(
        self, engine: SyncEngine, gateway: FakeGateway, store: LocalStore, queue: LocalChangeQueue
    ) -> None:
        gateway.put("e1", *timed(at(10)), summary="Standup")
        engine.run_sync()
        queue.update_event(key("e1"), {"summary": "Mine"})

        store.set_sync_cursor(ACCOUNT, CALENDAR, "0")
        report = engine.run_sync(flush=False)

        assert report.conflicts == []
        event = store.get_event(key("e1"))
        assert event is not None
        assert event.summary == "Mine"
        assert event.locally_modified

    def test_failed_page_keeps_old_cursor(self, store: LocalStore, policy: RetryPolicy, clock: FakeClock) -> None:
        """A failure mid-pull commits nothing to the cursor; the next run replays."""
        gateway = FakeGateway(page_size=1)
        gateway.add_calendar(ACCOUNT, CALENDAR, "Work")
        for event_id, day in (("a", 10), ("b", 11), ("c", 12)):
            gateway.put(event_id, *timed(at(day)))
        gateway.fail("list_events", None, BadRequestError("Bad Request", 400))
        engine = make_engine(store, gateway, policy, clock)

        report = engine.run_sync()

        assert not report.ok
        assert [(e.account_id, e.calendar_id) for e in report.errors] == [(ACCOUNT, CALENDAR)]
        calendar = store.get_calendar(ACCOUNT, CALENDAR)
        assert calendar is not None
        assert calendar.sync_cursor is None
        assert calendar.last_sync_status == "error"
        assert [e.kind for e in store.list_errors()] == [ErrorKind.SYNC_FAILURE]

        report = engine.run_sync()

        assert report.ok
        assert [e.id for e in store.list_events(ACCOUNT, CALENDAR)] == ["a", "b", "c"]
        calendar = store.get_calendar(ACCOUNT, CALENDAR)
        assert calendar is not None
        assert calendar.sync_cursor == gateway.cursor()


class TestPullErrors:
    def test_transient_read_failure_is_retried(
        self, store: LocalStore, gateway: FakeGateway, policy: RetryPolicy, clock: FakeClock
    ) -> None:
        sleep = MagicMock()
        engine = make_engine(store, gateway, policy, clock, sleep=sleep)
        gateway.put("e1", *timed(at(10)))
        gateway.fail("list_events", ServerError("Service Unavailable", 503))

        report = engine.run_sync()

        assert report.ok
        assert store.get_event(key("e1")) is not None
        sleep.assert_called_once_with(1.0)

    def test_expired_cursor_triggers_full_resync(
        self, engine: SyncEngine, gateway: FakeGateway, store: LocalStore
    ) -> None:
        gateway.put("a", *timed(at(10)))
        gateway.put("b", *timed(at(11)))
        engine.run_sync()
        gateway.expired_cursors.add(gateway.cursor())
        # Dropped without a change-log entry; only a full listing reveals it
        del gateway.events[(ACCOUNT, CALENDAR)]["b"]
        gateway.put("c", *timed(at(12)))

        report = engine.run_sync()

        assert report.ok
        assert report.events_deleted == 1
        assert [e.id for e in store.list_events(ACCOUNT, CALENDAR)] == ["a", "c"]
        assert [e.kind for e in store.list_errors()] == [ErrorKind.CURSOR_RESET]
        calendar = store.get_calendar(ACCOUNT, CALENDAR)
        assert calendar is not None
        assert calendar.sync_cursor == gateway.cursor()

    def test_full_resync_keeps_local_work(
        self, engine: SyncEngine, gateway: FakeGateway, store: LocalStore, queue: LocalChangeQueue
    ) -> None:
        """Locally created events are not mistaken for remote deletes."""
        engine.run_sync(flush=False)
        start, end = timed(at(12))
        created = queue.create_event(ACCOUNT, CALENDAR, summary="Draft", start=start, end=end)
        store.set_sync_cursor(ACCOUNT, CALENDAR, None)

        engine.run_sync(flush=False)

        assert store.get_event(created.key) is not None


# =============================================================================
# Local changes and conflicts
# =============================================================================


class TestLocalChanges:
    def test_local_edit_is_flushed_without_conflict(
        self, engine: SyncEngine, gateway: FakeGateway, store: LocalStore, queue: LocalChangeQueue
    ) -> None:
        gateway.put("e1", *timed(at(10)), summary="Standup")
        engine.run_sync()
        queue.update_event(key("e1"), {"summary": "Mine"})

        report = engine.run_sync()
        assert report.flush is not None
        assert report.flush.flushed == 1

        # The next pull sees our own write come back
        report = engine.run_sync()

        assert report.conflicts == []
        event = store.get_event(key("e1"))
        assert event is not None
        assert event.summary == "Mine"
        assert not event.locally_modified
        assert event.remote_version == gateway.events[(ACCOUNT, CALENDAR)]["e1"].version

    def test_local_delete_is_confirmed(
        self, engine: SyncEngine, gateway: FakeGateway, store: LocalStore, queue: LocalChangeQueue
    ) -> None:
        gateway.put("e1", *timed(at(10)))
        engine.run_sync()
        queue.delete_event(key("e1"))

        engine.run_sync()
        engine.run_sync()

        assert store.get_event(key("e1")) is None
        assert store.get_tombstone(key("e1")) is None
        assert store.list_pending_changes() == []
        assert len(gateway.calls_of("delete")) == 1

    def test_remote_delete_confirms_queued_delete(
        self, engine: SyncEngine, gateway: FakeGateway, store: LocalStore, queue: LocalChangeQueue
    ) -> None:
        gateway.put("e1", *timed(at(10)))
        engine.run_sync()
        queue.delete_event(key("e1"))
        gateway.remove("e1")

        engine.run_sync(flush=False)

        assert store.get_event(key("e1")) is None
        assert store.get_tombstone(key("e1")) is None
        assert store.list_pending_changes() == []

    def test_queued_delete_is_not_resurrected(
        self, engine: SyncEngine, gateway: FakeGateway, store: LocalStore, queue: LocalChangeQueue
    ) -> None:
        gateway.put("e1", *timed(at(10)))
        engine.run_sync()
        queue.delete_event(key("e1"))
        store.set_sync_cursor(ACCOUNT, CALENDAR, "0")

        report = engine.run_sync(flush=False)

        assert report.conflicts == []
        event = store.get_event(key("e1"))
        assert event is not None
        assert event.deleted


class TestConflicts:
    def test_concurrent_edit_raises_one_conflict(
        self, engine: SyncEngine, gateway: FakeGateway, store: LocalStore, queue: LocalChangeQueue
    ) -> None:
        gateway.put("e1", *timed(at(10)), summary="Standup")
        engine.run_sync()
        queue.update_event(key("e1"), {"summary": "Mine"})
        gateway.edit("e1", summary="Theirs")

        report = engine.run_sync()

        assert report.conflicts == [key("e1")]
        assert gateway.calls_of("update") == []
        event = store.get_event(key("e1"))
        assert event is not None
        assert event.has_conflict
        assert event.summary == "Mine"
        assert event.conflict_remote is not None
        assert event.conflict_remote.summary == "Theirs"
        assert len(store.pending_changes_for_event(key("e1"))) == 1
        assert [e.kind for e in store.list_errors()] == [ErrorKind.CONFLICT]

    def test_open_conflict_tracks_latest_remote(
        self, engine: SyncEngine, gateway: FakeGateway, store: LocalStore, queue: LocalChangeQueue
    ) -> None:
        gateway.put("e1", *timed(at(10)), summary="Standup")
        engine.run_sync()
        queue.update_event(key("e1"), {"summary": "Mine"})
        gateway.edit("e1", summary="Theirs")
        engine.run_sync()
        gateway.edit("e1", summary="Theirs again")

        report = engine.run_sync()

        assert report.conflicts == []
        event = store.get_event(key("e1"))
        assert event is not None
        assert event.conflict_remote is not None
        assert event.conflict_remote.summary == "Theirs again"
        assert len(store.list_errors(kind=ErrorKind.CONFLICT)) == 1

    def test_remote_delete_of_edited_event(
        self, engine: SyncEngine, gateway: FakeGateway, store: LocalStore, queue: LocalChangeQueue
    ) -> None:
        gateway.put("e1", *timed(at(10)))
        engine.run_sync()
        queue.update_event(key("e1"), {"summary": "Mine"})
        gateway.remove("e1")

        report = engine.run_sync(flush=False)

        assert report.conflicts == [key("e1")]
        event = store.get_event(key("e1"))
        assert event is not None
        assert event.summary == "Mine"


# =============================================================================
# Recurring events
# =============================================================================


class TestRecurring:
    def test_exceptions_shape_the_series(
        self, engine: SyncEngine, gateway: FakeGateway, store: LocalStore
    ) -> None:
        gateway.put("weekly", *timed(at(2)), summary="Team sync", recurrence=("RRULE:FREQ=WEEKLY",))
        gateway.put(
            "weekly_20260309",
            *timed(at(9)),
            status="cancelled",
            recurring_event_id="weekly",
            original_start=EventTime.from_datetime(at(9)),
        )
        gateway.put(
            "weekly_20260316",
            *timed(at(16, 15)),
            summary="Moved",
            recurring_event_id="weekly",
            original_start=EventTime.from_datetime(at(16)),
        )

        engine.run_sync()

        shown = list_events(store, SyncWindow(at(1, 0), at(31, 23)))
        assert [(e.instance_date, e.summary) for e in shown] == [
            (date(2026, 3, 2), "Team sync"),
            (date(2026, 3, 16), "Moved"),
            (date(2026, 3, 23), "Team sync"),
            (date(2026, 3, 30), "Team sync"),
        ]

    def test_deleted_series_takes_exceptions_along(
        self, engine: SyncEngine, gateway: FakeGateway, store: LocalStore
    ) -> None:
        gateway.put("weekly", *timed(at(2)), recurrence=("RRULE:FREQ=WEEKLY",))
        gateway.put(
            "weekly_20260316",
            *timed(at(16, 15)),
            recurring_event_id="weekly",
            original_start=EventTime.from_datetime(at(16)),
        )
        engine.run_sync()
        gateway.remove("weekly")

        engine.run_sync()

        assert store.list_events(ACCOUNT, CALENDAR) == []


# =============================================================================
# Calendars, accounts and run control
# =============================================================================


class TestCalendarList:
    def test_new_remote_calendar_is_added_and_synced(
        self, engine: SyncEngine, gateway: FakeGateway, store: LocalStore
    ) -> None:
        gateway.add_calendar(ACCOUNT, "home", "Home", color="#00ff00")
        gateway.put("h1", *timed(at(12)), calendar_id="home")

        report = engine.run_sync()

        assert report.calendars_synced == 2
        calendar = store.get_calendar(ACCOUNT, "home")
        assert calendar is not None
        assert calendar.enabled
        assert calendar.summary == "Home"
        assert store.get_event(EventKey(ACCOUNT, "home", "h1")) is not None

    def test_removed_remote_calendar_is_dropped(
        self, engine: SyncEngine, gateway: FakeGateway, store: LocalStore
    ) -> None:
        gateway.put("e1", *timed(at(10)))
        engine.run_sync()
        gateway.calendars[ACCOUNT] = [CalendarDelta(id=CALENDAR, deleted=True)]

        engine.run_sync()

        assert store.get_calendar(ACCOUNT, CALENDAR) is None
        assert store.list_events(ACCOUNT, CALENDAR) == []

    def test_disabled_calendar_is_not_pulled(
        self, engine: SyncEngine, gateway: FakeGateway, store: LocalStore
    ) -> None:
        engine.run_sync()
        store.set_calendar_enabled(ACCOUNT, CALENDAR, False)
        gateway.calls.clear()

        engine.run_sync()

        assert gateway.calls_of("list_events") == []
        calendar = store.get_calendar(ACCOUNT, CALENDAR)
        assert calendar is not None
        assert not calendar.enabled


class TestAccounts:
    @pytest.fixture
    def bob(self, store: LocalStore, gateway: FakeGateway) -> str:
        store.save_account(Account(id="bob", email="bob@example.com", credential_handle="bob"))
        gateway.add_calendar("bob", "bobcal", "Bob")
        gateway.put("b1", *timed(at(12)), account_id="bob", calendar_id="bobcal")
        return "bob"

    def test_syncs_every_account(self, engine: SyncEngine, store: LocalStore, bob: str) -> None:
        report = engine.run_sync()
        assert report.ok
        assert store.get_event(EventKey(bob, "bobcal", "b1")) is not None

    def test_only_requested_accounts(
        self, engine: SyncEngine, gateway: FakeGateway, store: LocalStore, bob: str
    ) -> None:
        engine.run_sync([bob])
        assert {call[1] for call in gateway.calls} == {bob}

    def test_unknown_account(self, engine: SyncEngine, gateway: FakeGateway) -> None:
        with pytest.raises(UnknownAccountError):
            engine.run_sync([ACCOUNT, "nobody"])
        assert gateway.calls == []

    def test_authorization_failure_stops_only_that_account(
        self,
        engine: SyncEngine,
        gateway: FakeGateway,
        store: LocalStore,
        queue: LocalChangeQueue,
        bob: str,
    ) -> None:
        gateway.put("e1", *timed(at(10)))
        engine.run_sync()
        queue.update_event(key("e1"), {"summary": "Mine"})
        gateway.fail("list_calendars", AuthenticationError("Token revoked", 401))
        gateway.calls.clear()

        report = engine.run_sync()

        assert not report.ok
        assert [(e.account_id, e.calendar_id) for e in report.errors] == [(ACCOUNT, None)]
        assert gateway.calls_of("update") == []
        assert len(store.pending_changes_for_event(key("e1"))) == 1
        assert [e.kind for e in store.list_errors(account_id=ACCOUNT)] == [ErrorKind.AUTHORIZATION]
        assert ("list_calendars", bob) in gateway.calls

    def test_authorization_failure_during_pull_skips_flush(
        self, engine: SyncEngine, gateway: FakeGateway, store: LocalStore, queue: LocalChangeQueue
    ) -> None:
        gateway.put("e1", *timed(at(10)))
        engine.run_sync()
        queue.update_event(key("e1"), {"summary": "Mine"})
        gateway.fail("list_events", AuthenticationError("Token expired", 401))

        report = engine.run_sync()

        assert not report.ok
        assert report.flush is not None
        assert report.flush.flushed == 0
        assert gateway.calls_of("update") == []
        assert len(store.list_errors(kind=ErrorKind.AUTHORIZATION)) == 1


class _BlockingGateway(FakeGateway):
    """Holds the calendar-list call until released."""

    def __init__(self) -> None:
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def list_changed_calendars(self, account_id: str) -> list[CalendarDelta]:
        self.entered.set()
        self.release.wait(5)
        return super().list_changed_calendars(account_id)


class _CancellingGateway(FakeGateway):
    """Sets the cancel flag while the calendar list is fetched."""

    def __init__(self, cancel: threading.Event) -> None:
        super().__init__()
        self.cancel = cancel

    def list_changed_calendars(self, account_id: str) -> list[CalendarDelta]:
        self.cancel.set()
        return super().list_changed_calendars(account_id)


class TestRunControl:
    def test_concurrent_run_for_same_account_is_refused(
        self, store: LocalStore, policy: RetryPolicy, clock: FakeClock
    ) -> None:
        gateway = _BlockingGateway()
        gateway.add_calendar(ACCOUNT, CALENDAR, "Work")
        engine = make_engine(store, gateway, policy, clock)
        worker = threading.Thread(target=engine.run_sync)
        worker.start()
        try:
            assert gateway.entered.wait(5)
            assert engine.is_running(ACCOUNT)
            with pytest.raises(SyncInProgressError):
                engine.run_sync([ACCOUNT])
        finally:
            gateway.release.set()
            worker.join(5)
        assert not engine.is_running()

    def test_cancel_stops_before_units_and_skips_flush(
        self, store: LocalStore, policy: RetryPolicy, clock: FakeClock, queue: LocalChangeQueue
    ) -> None:
        cancel = threading.Event()
        gateway = _CancellingGateway(cancel)
        gateway.add_calendar(ACCOUNT, CALENDAR, "Work")
        engine = make_engine(store, gateway, policy, clock)
        start, end = timed(at(12))
        queue.create_event(ACCOUNT, CALENDAR, summary="Draft", start=start, end=end)

        report = engine.run_sync(cancel=cancel)

        assert report.cancelled_calendars == [(ACCOUNT, CALENDAR)]
        assert report.flush is None
        assert gateway.calls_of("list_events") == []
        assert gateway.calls_of("create") == []
        assert len(store.list_pending_changes()) == 1

    def test_old_tombstones_are_pruned(self, engine: SyncEngine, store: LocalStore) -> None:
        store.add_tombstone(
            Tombstone(ACCOUNT, CALENDAR, "old", deleted_at=NOW.timestamp() - 60 * DAY, base_version="v1")
        )
        store.add_tombstone(
            Tombstone(ACCOUNT, CALENDAR, "recent", deleted_at=NOW.timestamp() - DAY, base_version="v1")
        )

        engine.run_sync()

        assert store.get_tombstone(key("old")) is None
        assert store.get_tombstone(key("recent")) is not None
