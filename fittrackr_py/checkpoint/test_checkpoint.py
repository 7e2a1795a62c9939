"""Tests for the checkpoint store and active-session locator."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from ..errors import StorageFailure
from ..logs import create_logger
from ..mutations.test_queue import FlakyStorage
from ..storage import StorageArea, VolatileStorage
from .locator import ActiveSessionLocator
from .models import SessionCheckpoint, SetEntry
from .store import CheckpointStore


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def checkpoint_with(*reps: int, notes: str = "") -> SessionCheckpoint:
    return SessionCheckpoint(
        logged_sets=[SetEntry(exercise_id="squat", reps=r, weight=100.0) for r in reps],
        notes=notes,
    )


@pytest.fixture
def clock():
    return FakeClock()


class TestCheckpointStore:
    def test_write_then_read(self, clock):
        store = CheckpointStore(VolatileStorage(), clock=clock)

        written = store.write_checkpoint("r1", checkpoint_with(5, 5, notes="heavy"))
        read = store.read_checkpoint("r1")

        assert read == written
        assert read.routine_id == "r1"
        assert read.last_written_at == clock.now
        assert [s.reps for s in read.logged_sets] == [5, 5]

    def test_missing_checkpoint(self):
        assert CheckpointStore(VolatileStorage()).read_checkpoint("nope") is None

    def test_clear_removes_from_listing(self, clock):
        store = CheckpointStore(VolatileStorage(), clock=clock)
        store.write_checkpoint("r1", checkpoint_with(5))
        store.write_checkpoint("r2", checkpoint_with(8))

        store.clear_checkpoint("r1")

        assert store.list_active_checkpoint_keys() == ["r2"]
        assert store.read_checkpoint("r1") is None

    def test_free_workout_slot(self, clock):
        storage = VolatileStorage()
        store = CheckpointStore(storage, clock=clock)

        store.write_checkpoint(None, checkpoint_with(10))

        assert storage.keys() == ["fittrackr:workout-progress:new"]
        assert store.list_active_checkpoint_keys() == []
        assert store.has_free_workout()
        assert store.read_checkpoint(None).routine_id is None

    def test_routine_key_layout(self, clock):
        storage = VolatileStorage()
        CheckpointStore(storage, namespace="app", clock=clock).write_checkpoint("abc", checkpoint_with(1))

        assert storage.keys() == ["app:workout-progress:routine:abc"]

    def test_expired_checkpoint_is_cleared(self, clock):
        storage = VolatileStorage()
        store = CheckpointStore(storage, clock=clock)
        store.write_checkpoint("r1", checkpoint_with(5))

        clock.advance(hours=25)

        assert store.read_checkpoint("r1") is None
        assert storage.keys() == []

    def test_recent_write_keeps_checkpoint_alive(self, clock):
        store = CheckpointStore(VolatileStorage(), clock=clock)
        store.write_checkpoint("r1", checkpoint_with(5))
        clock.advance(hours=20)
        store.write_checkpoint("r1", checkpoint_with(5, 6))
        clock.advance(hours=20)

        assert store.read_checkpoint("r1") is not None

    def test_two_tabs_last_write_wins(self, clock, caplog):
        area = StorageArea()
        tab1 = CheckpointStore(VolatileStorage(area), clock=clock)
        tab2 = CheckpointStore(VolatileStorage(area), clock=clock)

        tab1.write_checkpoint("r1", checkpoint_with(5))
        clock.advance(seconds=10)
        tab2.write_checkpoint("r1", checkpoint_with(8, 8))
        clock.advance(seconds=10)
        with caplog.at_level("WARNING"):
            tab1.write_checkpoint("r1", checkpoint_with(5, 5, 5))

        assert "Checkpoint overwrite" in caplog.text
        assert len(tab2.read_checkpoint("r1").logged_sets) == 3

    def test_own_rewrites_are_not_overwrites(self, clock, caplog):
        store = CheckpointStore(VolatileStorage(), clock=clock)
        with caplog.at_level("WARNING"):
            store.write_checkpoint("r1", checkpoint_with(5))
            clock.advance(seconds=1)
            store.write_checkpoint("r1", checkpoint_with(5, 5))

        assert "Checkpoint overwrite" not in caplog.text

    def test_storage_failure_keeps_checkpoint_in_memory(self, clock):
        storage = FlakyStorage()
        store = CheckpointStore(storage, clock=clock)
        storage.fail_writes = True

        with pytest.raises(StorageFailure) as exc_info:
            store.write_checkpoint("r1", checkpoint_with(5))

        assert exc_info.value.accepted.routine_id == "r1"
        assert store.read_checkpoint("r1").logged_sets[0].reps == 5
        assert store.list_active_checkpoint_keys() == ["r1"]
        assert storage.get(store.key_for("r1")) is None

    def test_unreadable_checkpoint_is_journalled(self, tmp_path):
        storage = VolatileStorage()
        journal = create_logger("dev-1", base_dir=str(tmp_path))
        store = CheckpointStore(storage, journal=journal)
        storage.set(store.key_for("r1"), {"logged_sets": "not a list"})

        assert store.read_checkpoint("r1") is None
        assert journal.get_summary().warnings == 1
        journal.close()


class TestActiveSessionLocator:
    def test_no_active_session(self):
        locator = ActiveSessionLocator(CheckpointStore(VolatileStorage()))
        assert locator.refresh() is None

    def test_empty_checkpoint_is_not_active(self, clock):
        store = CheckpointStore(VolatileStorage(), clock=clock)
        store.write_checkpoint("r1", SessionCheckpoint())

        assert ActiveSessionLocator(store).refresh() is None

    def test_most_recent_checkpoint_wins(self, clock):
        store = CheckpointStore(VolatileStorage(), clock=clock)
        store.write_checkpoint("r1", checkpoint_with(5))
        clock.advance(minutes=1)
        store.write_checkpoint(None, checkpoint_with(10, 10))
        clock.advance(minutes=1)
        store.write_checkpoint("r2", checkpoint_with(8))

        session = ActiveSessionLocator(store).refresh()

        assert session.routine_id == "r2"
        assert session.set_count == 1

    def test_subscribers_notified_on_change_only(self, clock):
        store = CheckpointStore(VolatileStorage(), clock=clock)
        locator = ActiveSessionLocator(store)
        seen = []
        locator.subscribe(seen.append)

        store.write_checkpoint("r1", checkpoint_with(5))
        locator.refresh()
        locator.refresh()
        store.clear_checkpoint("r1")
        locator.refresh()

        assert [s.routine_id if s else None for s in seen] == ["r1", None]

    def test_discard_clears_active_checkpoint(self, clock):
        store = CheckpointStore(VolatileStorage(), clock=clock)
        store.write_checkpoint(None, checkpoint_with(5))
        locator = ActiveSessionLocator(store)

        discarded = locator.discard()

        assert discarded.is_free_workout
        assert locator.current is None
        assert store.read_checkpoint(None) is None

    @pytest.mark.asyncio
    async def test_reacts_to_other_tab_writes(self, clock):
        area = StorageArea()
        this_tab = VolatileStorage(area)
        other_tab = CheckpointStore(VolatileStorage(area), clock=clock)
        locator = ActiveSessionLocator(CheckpointStore(this_tab, clock=clock), storage=this_tab, poll_interval=60)
        locator.start()

        other_tab.write_checkpoint("r9", checkpoint_with(3))

        assert locator.current.routine_id == "r9"
        await locator.stop()

    @pytest.mark.asyncio
    async def test_polling_picks_up_changes(self, clock):
        storage = VolatileStorage()
        store = CheckpointStore(storage, clock=clock)
        locator = ActiveSessionLocator(store, poll_interval=0.01)
        locator.start()
        assert locator.current is None

        # Same tab writes do not produce change notifications
        store.write_checkpoint("r1", checkpoint_with(5))
        await asyncio.sleep(0.05)

        assert locator.current.routine_id == "r1"
        await locator.stop()
