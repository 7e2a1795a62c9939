"""Tests for the command-line interface."""

import sys

import pytest

from .__main__ import main
from .checkpoint import CheckpointStore, SessionCheckpoint, SetEntry
from .mutations import MutationKind, MutationQueue, QueuedMutation
from .storage import SqliteStorage


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    monkeypatch.setenv("FITTRACKR_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.delenv("FITTRACKR_REMOTE_URL", raising=False)
    monkeypatch.delenv("FITTRACKR_HEALTH_URL", raising=False)
    path = str(tmp_path / "local.db")

    with SqliteStorage(path) as storage:
        queue = MutationQueue(storage)
        queue.enqueue(QueuedMutation(id="aaaa-1111", kind=MutationKind.CREATE, entity_type="workout"))
        queue.enqueue(QueuedMutation(id="bbbb-2222", kind=MutationKind.UPDATE, entity_type="set", entity_id="s1"))
        queue.mark_failed("bbbb-2222", "HTTP 422: invalid reps", terminal=True)

        CheckpointStore(storage).write_checkpoint(
            "r1", SessionCheckpoint(logged_sets=[SetEntry(exercise_id="squat", reps=5, weight=100)])
        )
    return path


def run_cli(monkeypatch, *argv) -> int:
    monkeypatch.setattr(sys, "argv", ["fittrackr_py", *argv])
    return main()


def reopen_queue(db_path: str):
    storage = SqliteStorage(db_path)
    return storage, MutationQueue(storage)


class TestCLI:
    def test_status(self, db_path, monkeypatch, capsys):
        assert run_cli(monkeypatch, "status", "--db", db_path) == 0

        out = capsys.readouterr().out
        assert "Pending mutations: 1" in out
        assert "Failed mutations:  1" in out
        assert "routine r1, 1 sets" in out

    def test_queue_list_and_failed(self, db_path, monkeypatch, capsys):
        assert run_cli(monkeypatch, "queue", "list", "--db", db_path) == 0
        out = capsys.readouterr().out
        assert "2 entries" in out
        assert "aaaa-111.." in out

        assert run_cli(monkeypatch, "queue", "failed", "--db", db_path) == 0
        out = capsys.readouterr().out
        assert "bbbb-222.." in out
        assert "aaaa-111.." not in out

    def test_queue_retry(self, db_path, monkeypatch):
        assert run_cli(monkeypatch, "queue", "retry", "bbbb", "--db", db_path) == 0

        storage, queue = reopen_queue(db_path)
        assert queue.failed() == []
        storage.close()

    def test_queue_discard_requires_terminal(self, db_path, monkeypatch):
        assert run_cli(monkeypatch, "queue", "discard", "aaaa", "--db", db_path) == 1
        assert run_cli(monkeypatch, "queue", "discard", "bbbb", "--db", db_path) == 0

        storage, queue = reopen_queue(db_path)
        assert [m.id for m in queue.all()] == ["aaaa-1111"]
        storage.close()

    def test_unknown_mutation(self, db_path, monkeypatch):
        assert run_cli(monkeypatch, "queue", "retry", "zzzz", "--db", db_path) == 1

    def test_sync_without_remote(self, db_path, monkeypatch):
        assert run_cli(monkeypatch, "sync", "--db", db_path) == 1

    def test_checkpoints(self, db_path, monkeypatch, capsys):
        assert run_cli(monkeypatch, "checkpoints", "list", "--db", db_path) == 0
        assert "Checkpoints (1)" in capsys.readouterr().out

        assert run_cli(monkeypatch, "checkpoints", "show", "r1", "--db", db_path) == 0
        assert '"exercise_id": "squat"' in capsys.readouterr().out

        assert run_cli(monkeypatch, "checkpoints", "clear", "r1", "--db", db_path) == 0
        assert run_cli(monkeypatch, "checkpoints", "show", "r1", "--db", db_path) == 1

    def test_logs_without_journal(self, db_path, monkeypatch):
        assert run_cli(monkeypatch, "logs") == 1

    def test_no_command_prints_help(self, monkeypatch):
        assert run_cli(monkeypatch) == 1
