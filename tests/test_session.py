import json
from pathlib import Path

import pytest

from proofrunner.session import SessionStore, SessionStoreError


def test_save_and_load_round_trip_bumps_revision(tmp_path: Path) -> None:
    store = SessionStore(tmp_path / "evidence")

    assert store.save("session-1", {"status": "RUNNING"}) == 1
    assert store.save("session-1", {"status": "FAILED"}, expected_revision=1) == 2

    envelope = store.get_envelope("session-1")
    assert envelope is not None
    assert envelope["schema_version"] == SessionStore.SCHEMA_VERSION
    assert envelope["revision"] == 2
    assert store.load("session-1") == {"status": "FAILED"}
    assert not (store.session_dir("session-1") / ".lock").exists()


def test_stale_revision_is_refused(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    store.save("session-1", {"status": "RUNNING"})
    store.save("session-1", {"status": "RUNNING"})

    with pytest.raises(SessionStoreError, match="Concurrent update"):
        store.save("session-1", {"status": "FAILED"}, expected_revision=1)


def test_unknown_session_loads_as_none(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    assert store.load("session-missing") is None
    assert store.exists("session-missing") is False
    assert store.list_sessions() == []


def test_corrupt_snapshot_is_reported(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    path = store.session_dir("session-1") / "session.json"
    path.parent.mkdir(parents=True)
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(SessionStoreError, match="Corrupt state file"):
        store.load("session-1")


def test_snapshot_without_envelope_is_reported(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    path = store.session_dir("session-1") / "session.json"
    path.parent.mkdir(parents=True)
    path.write_text(json.dumps({"status": "RUNNING"}), encoding="utf-8")

    with pytest.raises(SessionStoreError, match="Unrecognized"):
        store.load("session-1")


@pytest.mark.parametrize("session_id", ["../escape", "a/b", "..", ""])
def test_unsafe_ids_are_rejected(tmp_path: Path, session_id: str) -> None:
    with pytest.raises(SessionStoreError, match="Unsafe session id"):
        SessionStore(tmp_path).session_dir(session_id)


def test_task_events_append_in_order(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    store.append_task_event("session-1", "task-1", {"event": "TASK_STARTED"})
    store.append_task_event("session-1", "task-1", {"event": "TASK_COMPLETED", "at": "fixed"})
    store.append_task_event("session-1", "task-2", {"event": "TASK_QUEUED"})

    events = store.read_task_log("session-1", "task-1")
    assert [event["event"] for event in events] == ["TASK_STARTED", "TASK_COMPLETED"]
    assert "at" in events[0]
    assert events[1]["at"] == "fixed"
    assert store.read_task_log("session-1", "task-9") == []
    journal = tmp_path / "session-1" / "tasks" / "task-2.jsonl"
    assert len(journal.read_text(encoding="utf-8").splitlines()) == 1


def test_compaction_folds_journal_into_event_array(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    for name in ("TASK_QUEUED", "TASK_STARTED", "TASK_COMPLETED"):
        store.append_task_event("session-1", "task-1", {"event": name})

    assert store.compact_task_log("session-1", "task-1") == 3

    tasks_dir = tmp_path / "session-1" / "tasks"
    assert not (tasks_dir / "task-1.jsonl").exists()
    log = json.loads((tasks_dir / "task-1.json").read_text(encoding="utf-8"))
    assert log["task_id"] == "task-1"
    assert [event["event"] for event in log["events"]] == [
        "TASK_QUEUED",
        "TASK_STARTED",
        "TASK_COMPLETED",
    ]

    store.append_task_event("session-1", "task-1", {"event": "TASK_STATUS_OVERRIDDEN"})
    assert [event["event"] for event in store.read_task_log("session-1", "task-1")][-1] == (
        "TASK_STATUS_OVERRIDDEN"
    )
    assert store.compact_task_log("session-1", "task-1") == 4
    assert store.compact_task_log("session-1", "task-1") == 4


def test_corrupt_journal_line_is_reported(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    store.append_task_event("session-1", "task-1", {"event": "TASK_STARTED"})
    journal = tmp_path / "session-1" / "tasks" / "task-1.jsonl"
    with journal.open("a", encoding="utf-8") as handle:
        handle.write("{half\n")

    with pytest.raises(SessionStoreError, match="Corrupt task journal"):
        store.read_task_log("session-1", "task-1")


def test_list_sessions_only_reports_saved_sessions(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    store.save("session-b", {})
    store.save("session-a", {})
    (tmp_path / "stray").mkdir()

    assert store.list_sessions() == ["session-a", "session-b"]


def test_lock_timeout_is_reported(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    lock_file = store.session_dir("session-1") / ".lock"
    lock_file.parent.mkdir(parents=True)
    lock_file.write_text("999", encoding="utf-8")

    with pytest.raises(SessionStoreError, match="Timed out"):
        with store._state_lock("session-1", timeout_seconds=0.05):
            pass
