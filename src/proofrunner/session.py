from __future__ import annotations

import json
import os
import re
import tempfile
import time
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

SAFE_ID = re.compile(r"^[\w.-]+$")


class SessionStoreError(RuntimeError):
    """Raised when persisted session state cannot be read or written."""


class SessionStore:
    """JSON snapshots of sessions plus one ordered event log per task.

    Layout under ``evidence_dir``::

        <session_id>/session.json
        <session_id>/tasks/<task_id>.json
        <session_id>/tasks/<task_id>.jsonl   (journal of a task still being logged)
    """

    SCHEMA_VERSION = 1

    def __init__(self, evidence_dir: Path) -> None:
        self.evidence_dir = Path(evidence_dir).resolve()

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    @staticmethod
    def _validate_id(kind: str, value: str) -> None:
        if not SAFE_ID.match(value) or value in {".", ".."}:
            raise SessionStoreError(f"Unsafe {kind} id: {value!r}")

    def session_dir(self, session_id: str) -> Path:
        self._validate_id("session", session_id)
        return self.evidence_dir / session_id

    def _session_file(self, session_id: str) -> Path:
        return self.session_dir(session_id) / "session.json"

    def _task_file(self, session_id: str, task_id: str) -> Path:
        self._validate_id("task", task_id)
        return self.session_dir(session_id) / "tasks" / f"{task_id}.json"

    def _task_journal(self, session_id: str, task_id: str) -> Path:
        self._validate_id("task", task_id)
        return self.session_dir(session_id) / "tasks" / f"{task_id}.jsonl"

    @contextmanager
    def _state_lock(self, session_id: str, timeout_seconds: float = 3.0):
        lock_file = self.session_dir(session_id) / ".lock"
        lock_file.parent.mkdir(parents=True, exist_ok=True)
        start = time.monotonic()
        while True:
            try:
                fd = os.open(lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise SessionStoreError(
                        f"Timed out waiting for session lock: {session_id}"
                    ) from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                lock_file.unlink()
            except FileNotFoundError:
                pass

    @staticmethod
    def _read_json(path: Path) -> Any:
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise SessionStoreError(f"Corrupt state file {path}: {exc}") from exc

    @staticmethod
    def _write_json(path: Path, payload: Any) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, ensure_ascii=False, indent=2)
            os.replace(temp_name, path)
        except BaseException:
            try:
                os.unlink(temp_name)
            except FileNotFoundError:
                pass
            raise

    def get_envelope(self, session_id: str) -> dict[str, Any] | None:
        raw = self._read_json(self._session_file(session_id))
        if raw is None:
            return None
        if not isinstance(raw, dict) or "data" not in raw or "revision" not in raw:
            raise SessionStoreError(f"Unrecognized session snapshot for {session_id}")
        return raw

    def load(self, session_id: str) -> dict[str, Any] | None:
        envelope = self.get_envelope(session_id)
        if envelope is None:
            return None
        return envelope["data"]

    def save(
        self,
        session_id: str,
        state: dict[str, Any],
        expected_revision: int | None = None,
    ) -> int:
        with self._state_lock(session_id):
            current = self.get_envelope(session_id)
            current_revision = int(current["revision"]) if current else 0
            if expected_revision is not None and expected_revision != current_revision:
                raise SessionStoreError(f"Concurrent update detected for session {session_id}")
            revision = current_revision + 1
            self._write_json(
                self._session_file(session_id),
                {
                    "schema_version": self.SCHEMA_VERSION,
                    "revision": revision,
                    "updated_at": self._utcnow_iso(),
                    "data": state,
                },
            )
            return revision

    def exists(self, session_id: str) -> bool:
        return self._session_file(session_id).exists()

    def list_sessions(self) -> list[str]:
        if not self.evidence_dir.is_dir():
            return []
        return sorted(
            entry.name
            for entry in self.evidence_dir.iterdir()
            if entry.is_dir() and (entry / "session.json").exists()
        )

    def append_task_event(self, session_id: str, task_id: str, event: dict[str, Any]) -> None:
        """Append one event to the task's journal without rewriting earlier entries."""
        journal = self._task_journal(session_id, task_id)
        entry = dict(event)
        entry.setdefault("at", self._utcnow_iso())
        line = json.dumps(entry, ensure_ascii=False)
        with self._state_lock(session_id):
            journal.parent.mkdir(parents=True, exist_ok=True)
            with journal.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")

    def _read_journal(self, path: Path) -> list[dict[str, Any]]:
        if not path.exists():
            return []
        events: list[dict[str, Any]] = []
        for number, line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
            if not line.strip():
                continue
            try:
                events.append(json.loads(line))
            except json.JSONDecodeError as exc:
                raise SessionStoreError(f"Corrupt task journal {path}:{number}: {exc}") from exc
        return events

    def read_task_log(self, session_id: str, task_id: str) -> list[dict[str, Any]]:
        log = self._read_json(self._task_file(session_id, task_id))
        events = list(log.get("events", [])) if log else []
        events.extend(self._read_journal(self._task_journal(session_id, task_id)))
        return events

    def compact_task_log(self, session_id: str, task_id: str) -> int:
        """Fold the journal into ``tasks/<task_id>.json``; returns the event count."""
        journal = self._task_journal(session_id, task_id)
        with self._state_lock(session_id):
            if not journal.exists():
                return len(self.read_task_log(session_id, task_id))
            events = self.read_task_log(session_id, task_id)
            self._write_json(
                self._task_file(session_id, task_id),
                {"session_id": session_id, "task_id": task_id, "events": events},
            )
            journal.unlink()
            return len(events)
