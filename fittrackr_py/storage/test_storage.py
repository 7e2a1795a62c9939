"""Tests for durable storage implementations."""

import os
import tempfile

import pytest

from ..errors import StorageFailure
from .base import namespaced
from .volatile import StorageArea, VolatileStorage
from .sqlite import SqliteStorage


class TestVolatileStorage:
    """Test cases for VolatileStorage."""

    def test_basic_get_set(self):
        storage = VolatileStorage()

        assert storage.get("missing") is None

        storage.set("key1", {"nested": [1, 2, 3]})
        assert storage.get("key1") == {"nested": [1, 2, 3]}

    def test_values_are_copies(self):
        """Mutating a read value must not change the stored one."""
        storage = VolatileStorage()
        storage.set("key1", {"sets": [1]})

        value = storage.get("key1")
        value["sets"].append(2)

        assert storage.get("key1") == {"sets": [1]}

    def test_set_none_removes(self):
        storage = VolatileStorage()
        storage.set("key1", "value1")
        storage.set("key1", None)
        assert storage.get("key1") is None
        assert storage.keys() == []

    def test_keys_prefix(self):
        storage = VolatileStorage()
        storage.set(namespaced("app", "a"), 1)
        storage.set(namespaced("app", "b"), 2)
        storage.set("other:c", 3)

        assert sorted(storage.keys("app:")) == ["app:a", "app:b"]

    def test_update_is_read_modify_write(self):
        storage = VolatileStorage()
        storage.set("log", [1])

        result = storage.update("log", lambda current: (current or []) + [2])

        assert result == [1, 2]
        assert storage.get("log") == [1, 2]

    def test_other_tabs_are_notified(self):
        area = StorageArea()
        tab1 = VolatileStorage(area, tab_id="tab1")
        tab2 = VolatileStorage(area, tab_id="tab2")
        seen1, seen2 = [], []
        tab1.subscribe(seen1.append)
        tab2.subscribe(seen2.append)

        tab1.set("key1", "value1")

        # The writing tab does not receive its own event
        assert seen1 == []
        assert len(seen2) == 1
        assert seen2[0].key == "key1"
        assert seen2[0].new_value == "value1"
        assert seen2[0].origin == "tab1"
        assert tab2.get("key1") == "value1"

    def test_unsubscribe(self):
        area = StorageArea()
        tab1 = VolatileStorage(area)
        tab2 = VolatileStorage(area)
        seen = []
        unsubscribe = tab2.subscribe(seen.append)
        unsubscribe()

        tab1.set("key1", 1)
        assert seen == []

    def test_listener_errors_are_isolated(self):
        area = StorageArea()
        tab1 = VolatileStorage(area)
        tab2 = VolatileStorage(area)
        seen = []

        def broken(change):
            raise RuntimeError("boom")

        tab2.subscribe(broken)
        tab2.subscribe(seen.append)

        tab1.set("key1", 1)
        assert len(seen) == 1

    def test_quota_exceeded(self):
        storage = VolatileStorage(StorageArea(quota_bytes=32))
        storage.set("k", "x")

        with pytest.raises(StorageFailure):
            storage.set("big", "x" * 100)

        # Failed write leaves previous data untouched
        assert storage.get("k") == "x"
        assert storage.get("big") is None

    def test_unserializable_value(self):
        storage = VolatileStorage()
        with pytest.raises(StorageFailure):
            storage.set("key1", {"bad": object()})


class TestSqliteStorage:
    """Test cases for SqliteStorage."""

    @pytest.fixture
    def temp_db(self):
        """Create temporary database file."""
        fd, path = tempfile.mkstemp(suffix=".db")
        os.close(fd)
        yield path
        if os.path.exists(path):
            os.unlink(path)

    def test_basic_get_set(self, temp_db):
        storage = SqliteStorage(temp_db)
        try:
            assert storage.get("missing") is None
            storage.set("key1", "value1")
            assert storage.get("key1") == "value1"
        finally:
            storage.close()

    def test_persistence(self, temp_db):
        """Data written by one connection survives reopening."""
        storage1 = SqliteStorage(temp_db)
        storage1.set("key1", {"reps": 10})
        storage1.close()

        storage2 = SqliteStorage(temp_db)
        try:
            assert storage2.get("key1") == {"reps": 10}
        finally:
            storage2.close()

    def test_complex_data_types(self, temp_db):
        with SqliteStorage(temp_db) as storage:
            test_data = {
                "string": "hello",
                "number": 42,
                "float": 3.14,
                "boolean": True,
                "list": [1, 2, 3],
                "dict": {"nested": "value", "count": 10},
            }
            for key, value in test_data.items():
                storage.set(key, value)

            for key, expected_value in test_data.items():
                assert storage.get(key) == expected_value

    def test_remove_and_keys(self, temp_db):
        with SqliteStorage(temp_db) as storage:
            storage.set("app:a", 1)
            storage.set("app:b", 2)
            storage.set("other", 3)

            assert storage.keys("app:") == ["app:a", "app:b"]

            storage.remove("app:a")
            storage.remove("app:missing")
            assert storage.keys("app:") == ["app:b"]

    def test_update(self, temp_db):
        with SqliteStorage(temp_db) as storage:
            storage.update("log", lambda current: (current or []) + ["a"])
            storage.update("log", lambda current: (current or []) + ["b"])
            assert storage.get("log") == ["a", "b"]

            storage.update("log", lambda current: None)
            assert storage.get("log") is None

    def test_update_failure_rolls_back(self, temp_db):
        with SqliteStorage(temp_db) as storage:
            storage.set("log", ["a"])

            with pytest.raises(StorageFailure):
                storage.update("log", lambda current: current + [object()])

            assert storage.get("log") == ["a"]

    def test_poll_changes_between_connections(self, temp_db):
        tab1 = SqliteStorage(temp_db, tab_id="tab1")
        tab2 = SqliteStorage(temp_db, tab_id="tab2")
        try:
            seen = []
            tab2.subscribe(seen.append)

            tab1.set("key1", "value1")
            tab1.remove("key1")

            # Own writes are never reported
            assert tab1.poll_changes() == []

            changes = tab2.poll_changes()
            assert [c.key for c in changes] == ["key1", "key1"]
            assert changes[0].new_value == "value1"
            assert changes[1].new_value is None
            assert changes[0].origin == "tab1"
            assert len(seen) == 2

            # Already delivered
            assert tab2.poll_changes() == []
        finally:
            tab1.close()
            tab2.close()

    def test_history_before_open_is_not_replayed(self, temp_db):
        with SqliteStorage(temp_db, tab_id="tab1") as tab1:
            tab1.set("key1", 1)
            with SqliteStorage(temp_db, tab_id="tab2") as tab2:
                assert tab2.poll_changes() == []
