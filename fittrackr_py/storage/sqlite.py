"""SQLite-backed durable storage implementation.

Several processes (tabs) may open the same database file. Every write is
committed before the call returns and is also appended to a
``storage_changes`` log, which other connections read with
``poll_changes()`` to raise the same notifications a browser storage
event would.
"""

import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, List, Optional

from ..errors import StorageFailure
from .base import (
    StorageChange,
    StorageListener,
    Unsubscribe,
    deserialize_value,
    serialize_value,
)

logger = logging.getLogger(__name__)


class SqliteStorage:
    """Profile-wide SQLite key/value storage with cross-connection change log."""

    max_changes: int = 1000

    def __init__(self, db_path: str, tab_id: Optional[str] = None, timeout: float = 5.0) -> None:
        """Initialize with database path.

        Args:
            db_path: Path to SQLite database file (``:memory:`` is allowed
                but cannot be shared)
            tab_id: Identity of this connection in the change log
            timeout: Seconds to wait for a competing writer's lock
        """
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.db_path = db_path
        self.tab_id = tab_id or f"tab-{uuid.uuid4().hex[:8]}"
        self.db = sqlite3.connect(db_path, timeout=timeout, isolation_level=None)
        self._listeners: List[StorageListener] = []
        self._init_tables()
        self._last_change_id = self._max_change_id()

    def _init_tables(self) -> None:
        """Initialize local_storage and storage_changes tables."""
        create_storage_table = """
            CREATE TABLE IF NOT EXISTS local_storage (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                updated_by TEXT
            )
        """

        create_changes_table = """
            CREATE TABLE IF NOT EXISTS storage_changes (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                key TEXT NOT NULL,
                value TEXT,
                origin TEXT NOT NULL,
                timestamp TEXT NOT NULL
            )
        """

        with self._transaction():
            self.db.execute(create_storage_table)
            self.db.execute(create_changes_table)

    @contextmanager
    def _transaction(self, immediate: bool = False) -> Iterator[None]:
        """Run statements in one transaction, mapping sqlite errors."""
        try:
            self.db.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            try:
                yield
            except BaseException:
                self.db.execute("ROLLBACK")
                raise
            self.db.execute("COMMIT")
        except sqlite3.Error as e:
            raise StorageFailure(self.db_path, e) from e

    def _max_change_id(self) -> int:
        row = self.db.execute("SELECT COALESCE(MAX(id), 0) FROM storage_changes").fetchone()
        return row[0]

    def _read(self, key: str) -> Optional[str]:
        row = self.db.execute(
            "SELECT value FROM local_storage WHERE key = ?", (key,)
        ).fetchone()
        return row[0] if row else None

    def _write(self, key: str, value_str: Optional[str]) -> None:
        """Write inside an open transaction and record the change."""
        now = datetime.now(timezone.utc).isoformat()
        if value_str is None:
            self.db.execute("DELETE FROM local_storage WHERE key = ?", (key,))
        else:
            self.db.execute(
                """INSERT OR REPLACE INTO local_storage (key, value, updated_at, updated_by)
                   VALUES (?, ?, ?, ?)""",
                (key, value_str, now, self.tab_id)
            )
        cursor = self.db.execute(
            """INSERT INTO storage_changes (key, value, origin, timestamp)
               VALUES (?, ?, ?, ?)""",
            (key, value_str, self.tab_id, now)
        )
        self._last_change_id = max(self._last_change_id, cursor.lastrowid)
        if cursor.lastrowid > self.max_changes:
            self.db.execute(
                "DELETE FROM storage_changes WHERE id <= ?",
                (cursor.lastrowid - self.max_changes,)
            )

    def _serialize(self, key: str, value: Any) -> str:
        try:
            return serialize_value(value)
        except (TypeError, ValueError) as e:
            raise StorageFailure(key, e) from e

    def get(self, key: str) -> Any:
        """Get value for key."""
        try:
            value_str = self._read(key)
        except sqlite3.Error as e:
            raise StorageFailure(key, e) from e
        return deserialize_value(value_str)

    def set(self, key: str, value: Any) -> None:
        """Overwrite value for key. Committed on return."""
        if value is None:
            self.remove(key)
            return
        value_str = self._serialize(key, value)
        with self._transaction():
            self._write(key, value_str)

    def remove(self, key: str) -> None:
        with self._transaction():
            if self._read(key) is not None:
                self._write(key, None)

    def update(self, key: str, fn: Callable[[Any], Any]) -> Any:
        """Read-modify-write under an immediate (write) lock."""
        with self._transaction(immediate=True):
            new_value = fn(deserialize_value(self._read(key)))
            if new_value is None:
                if self._read(key) is not None:
                    self._write(key, None)
            else:
                self._write(key, self._serialize(key, new_value))
        return new_value

    def keys(self, prefix: str = "") -> List[str]:
        try:
            cursor = self.db.execute(
                "SELECT key FROM local_storage WHERE substr(key, 1, ?) = ? ORDER BY key",
                (len(prefix), prefix)
            )
            return [row[0] for row in cursor]
        except sqlite3.Error as e:
            raise StorageFailure(prefix, e) from e

    def subscribe(self, listener: StorageListener) -> Unsubscribe:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def poll_changes(self) -> List[StorageChange]:
        """Dispatch writes committed by other connections since the last poll."""
        try:
            rows = self.db.execute(
                """SELECT id, key, value, origin, timestamp FROM storage_changes
                   WHERE id > ? ORDER BY id""",
                (self._last_change_id,)
            ).fetchall()
        except sqlite3.Error as e:
            raise StorageFailure("storage_changes", e) from e

        changes = []
        for change_id, key, value_str, origin, timestamp in rows:
            self._last_change_id = change_id
            if origin == self.tab_id:
                continue
            try:
                value = deserialize_value(value_str)
            except ValueError:
                logger.warning("Skipping unreadable change for key %s", key)
                continue
            change = StorageChange(
                key=key,
                new_value=value,
                origin=origin,
                timestamp=datetime.fromisoformat(timestamp),
            )
            changes.append(change)
            self._dispatch(change)
        return changes

    def _dispatch(self, change: StorageChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                logger.exception("Storage listener failed for key %s", change.key)

    def close(self) -> None:
        """Close the database connection."""
        self._listeners.clear()
        if self.db:
            self.db.close()
            self.db = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
