from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal
from uuid import uuid4

from proofrunner.assembler import PromptAssembler
from proofrunner.chunking import RetryPolicy, TaskChunkingExecutor
from proofrunner.clarification import needs_clarification
from proofrunner.config import RunnerConfig
from proofrunner.executors.base import Executor
from proofrunner.guard import GuardedExecutor
from proofrunner.locks import LockManager
from proofrunner.models import (
    ExecutorResult,
    ExecutorTask,
    VerifiedFile,
    aggregate_status,
    exit_code_for,
)
from proofrunner.review import CriterionCheck, ReviewLoopExecutor
from proofrunner.session import SessionStore, SessionStoreError

logger = logging.getLogger(__name__)

SessionStatus = Literal["RUNNING", "COMPLETED", "FAILED"]
EventListener = Callable[[dict[str, Any]], None]

INVALID_PROJECT_PATH = "E102"
SESSION_NOT_INITIALIZED = "E201"
SESSION_NOT_FOUND = "E205"
SESSION_ALREADY_FINISHED = "E206"


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class OrchestratorError(RuntimeError):
    """Raised for validation and session lifecycle failures."""

    def __init__(self, message: str, *, code: str) -> None:
        super().__init__(message)
        self.code = code


@dataclass(slots=True)
class TaskRequest:
    id: str
    prompt: str


@dataclass(slots=True)
class TaskResult:
    task_id: str
    prompt: str
    status: str
    started_at: str | None = None
    completed_at: str | None = None
    files_modified: list[str] = field(default_factory=list)
    verified_files: list[VerifiedFile] = field(default_factory=list)
    unverified_files: list[str] = field(default_factory=list)
    clarification_needed: bool = False
    clarification_reason: str | None = None
    target_file: str | None = None
    executor_blocked: bool = False
    blocked_reason: str | None = None
    terminated_by: str | None = None
    error: str | None = None
    output_summary: str = ""
    skipped: bool = False

    @classmethod
    def from_executor_result(
        cls, request: TaskRequest, result: ExecutorResult, *, started_at: str
    ) -> TaskResult:
        return cls(
            task_id=request.id,
            prompt=request.prompt,
            status="ERROR" if result.status == "BLOCKED" else result.status,
            started_at=started_at,
            completed_at=_utcnow_iso(),
            files_modified=list(result.files_modified),
            verified_files=list(result.verified_files),
            unverified_files=list(result.unverified_files),
            executor_blocked=result.executor_blocked,
            blocked_reason=result.blocked_reason,
            terminated_by=result.terminated_by,
            error=result.error,
            output_summary=result.output[:500],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskResult:
        payload = dict(data)
        payload["verified_files"] = [
            VerifiedFile.from_dict(item) for item in payload.get("verified_files", [])
        ]
        return cls(**payload)


@dataclass(slots=True)
class Session:
    session_id: str
    project_path: str
    status: SessionStatus = "RUNNING"
    started_at: str = field(default_factory=_utcnow_iso)
    ended_at: str | None = None
    next_task_number: int = 1
    tasks: list[TaskResult] = field(default_factory=list)
    pending: list[TaskRequest] = field(default_factory=list)

    @property
    def overall_status(self) -> str:
        return aggregate_status(task.status for task in self.tasks)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "project_path": self.project_path,
            "status": self.status,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "next_task_number": self.next_task_number,
            "overall_status": self.overall_status,
            "tasks": [task.to_dict() for task in self.tasks],
            "pending": [asdict(request) for request in self.pending],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        return cls(
            session_id=str(data["session_id"]),
            project_path=str(data["project_path"]),
            status=data.get("status", "RUNNING"),
            started_at=data.get("started_at") or _utcnow_iso(),
            ended_at=data.get("ended_at"),
            next_task_number=int(data.get("next_task_number", 1)),
            tasks=[TaskResult.from_dict(item) for item in data.get("tasks", [])],
            pending=[TaskRequest(**item) for item in data.get("pending", [])],
        )


@dataclass(slots=True)
class AggregateResult:
    session_id: str
    overall_status: str
    tasks_completed: int
    tasks_total: int
    task_results: list[TaskResult] = field(default_factory=list)
    next_action: bool = False
    next_action_reason: str | None = None
    clarification_reason: str | None = None
    target_file: str | None = None
    original_prompt: str | None = None
    incomplete_task_reasons: list[dict[str, str]] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        return exit_code_for(self.overall_status)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["exit_code"] = self.exit_code
        return payload


class Orchestrator:
    """Runs a session's tasks one at a time through the verified execution pipeline.

    Pipeline, outermost first: task chunking, review loop, guarded raw
    executor. Only the guard talks to the lock manager and filesystem
    evidence, so every raw invocation is bracketed by locks, one executor
    slot and before/after snapshots.
    """

    def __init__(
        self,
        executor: Executor,
        config: RunnerConfig | None = None,
        *,
        lock_manager: LockManager | None = None,
        store: SessionStore | None = None,
        prompt_assembler: PromptAssembler | None = None,
        review_criteria: Mapping[str, CriterionCheck] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.executor = executor
        self.config = config or RunnerConfig.default()
        self.lock_manager = lock_manager or LockManager(
            self.config.locks.max_concurrent_executors
        )
        self.store = store
        self.prompt_assembler = prompt_assembler
        self.review_criteria = dict(review_criteria or {})
        self._sleep = sleep
        self.session: Session | None = None
        self.project_path: Path | None = None
        self._listeners: dict[str, list[EventListener]] = {}
        self._queue: asyncio.Queue[TaskRequest] = asyncio.Queue()
        self._drain_lock = asyncio.Lock()
        self._pipeline: TaskChunkingExecutor | None = None
        self._current_task_id: str | None = None
        self._halted_by: str | None = None

    def on(self, event_name: str, callback: EventListener) -> Callable[[], None]:
        """Subscribe to an event name, or ``"*"`` for all; returns an unsubscribe function."""
        self._listeners.setdefault(event_name, []).append(callback)

        def _unsubscribe() -> None:
            listeners = self._listeners.get(event_name, [])
            if callback in listeners:
                listeners.remove(callback)

        return _unsubscribe

    def _emit(self, event: dict[str, Any], *, task_id: str | None = None) -> None:
        payload = dict(event)
        payload.setdefault("at", _utcnow_iso())
        if self.session is not None:
            payload.setdefault("session_id", self.session.session_id)
            log_task = task_id or self._current_task_id
            if self.store is not None and log_task is not None:
                try:
                    self.store.append_task_event(self.session.session_id, log_task, payload)
                except (SessionStoreError, OSError):
                    logger.warning(
                        "could not log %s for task %s", payload.get("event"), log_task, exc_info=True
                    )
        name = str(payload.get("event", ""))
        for callback in [*self._listeners.get(name, []), *self._listeners.get("*", [])]:
            try:
                callback(payload)
            except Exception:
                logger.exception("event listener failed for %s", name)

    def _compact_log(self, task_id: str) -> None:
        if self.store is None or self.session is None:
            return
        try:
            self.store.compact_task_log(self.session.session_id, task_id)
        except (SessionStoreError, OSError):
            logger.warning("could not compact the event log of task %s", task_id, exc_info=True)

    def _require_session(self) -> Session:
        if self.session is None or self.project_path is None:
            raise OrchestratorError(
                "Session not initialized. Call initialize() or resume() first.",
                code=SESSION_NOT_INITIALIZED,
            )
        return self.session

    def _build_pipeline(self, session: Session, project_path: Path) -> TaskChunkingExecutor:
        assembler = self.prompt_assembler or PromptAssembler(project_path)
        overall_timeout_ms = self.config.executor.overall_timeout_ms
        guard = GuardedExecutor(
            self.executor,
            self.lock_manager,
            holder_prefix=session.session_id,
            timeout_seconds=overall_timeout_ms / 1000 if overall_timeout_ms > 0 else None,
            prompt_assembler=assembler,
            event_hook=self._emit,
        )
        review = ReviewLoopExecutor(
            guard,
            self.config.review,
            prompt_assembler=assembler,
            criteria=self.review_criteria,
            event_hook=self._emit,
            sleep=self._sleep,
        )
        return TaskChunkingExecutor(
            review,
            self.config.chunking,
            RetryPolicy.from_config(self.config.retry),
            event_hook=self._emit,
            sleep=self._sleep,
        )

    def _ensure_store(self, project_path: Path) -> SessionStore:
        if self.store is None:
            self.store = SessionStore(project_path / self.config.session.evidence_dir)
        return self.store

    def _persist(self) -> None:
        if self.session is not None and self.store is not None:
            self.store.save(self.session.session_id, self.session.to_dict())

    def initialize(self, project_path: str | Path) -> Session:
        path = Path(project_path).expanduser().resolve()
        if not path.is_dir():
            raise OrchestratorError(
                f"Project path does not exist or is not a directory: {path}",
                code=INVALID_PROJECT_PATH,
            )
        store = self._ensure_store(path)
        stamp = datetime.now(UTC).strftime("%Y%m%d%H%M%S")
        session = Session(session_id=f"session-{stamp}-{uuid4().hex[:8]}", project_path=str(path))
        store.session_dir(session.session_id).mkdir(parents=True, exist_ok=True)
        self.session = session
        self.project_path = path
        self._queue = asyncio.Queue()
        self._pipeline = self._build_pipeline(session, path)
        self._persist()
        self._emit({"event": "SESSION_STARTED", "project_path": str(path)})
        return session

    def submit(self, prompt: str, *, task_id: str | None = None) -> TaskRequest:
        session = self._require_session()
        request = TaskRequest(id=task_id or f"task-{session.next_task_number}", prompt=prompt)
        session.next_task_number += 1
        session.pending.append(request)
        self._queue.put_nowait(request)
        self._persist()
        self._emit({"event": "TASK_QUEUED", "task_id": request.id}, task_id=request.id)
        return request

    @staticmethod
    def _normalize_request(request: Any) -> list[str | TaskRequest]:
        if isinstance(request, Mapping):
            request = request.get("tasks", [])
        if isinstance(request, (str, TaskRequest)):
            return [request]
        return list(request)

    async def execute(
        self, request: Mapping[str, Any] | Iterable[str | TaskRequest] | str
    ) -> AggregateResult:
        """Queue the request's tasks, drain the queue, and report on them."""
        session = self._require_session()
        submitted: list[str] = []
        for item in self._normalize_request(request):
            if isinstance(item, TaskRequest):
                submitted.append(self.submit(item.prompt, task_id=item.id).id)
            else:
                submitted.append(self.submit(str(item)).id)

        processed = await self._drain()
        wanted = list(dict.fromkeys([*submitted, *(result.task_id for result in processed)]))
        by_id = {task.task_id: task for task in session.tasks}
        return self._aggregate([by_id[task_id] for task_id in wanted if task_id in by_id])

    async def _drain(self) -> list[TaskResult]:
        processed: list[TaskResult] = []
        async with self._drain_lock:
            self._halted_by = None
            while not self._queue.empty():
                request = self._queue.get_nowait()
                try:
                    processed.append(await self._process(request))
                finally:
                    self._queue.task_done()
        return processed

    async def _process(self, request: TaskRequest) -> TaskResult:
        session = self._require_session()
        session.pending = [item for item in session.pending if item.id != request.id]
        self._current_task_id = request.id
        started_at = _utcnow_iso()
        try:
            if self._halted_by is not None:
                record = TaskResult(
                    task_id=request.id,
                    prompt=request.prompt,
                    status="INCOMPLETE",
                    started_at=started_at,
                    completed_at=_utcnow_iso(),
                    error=f"Skipped after task {self._halted_by} did not complete",
                    skipped=True,
                )
                self._emit({"event": "TASK_SKIPPED", "task_id": request.id, "after": self._halted_by})
            else:
                self._emit({"event": "TASK_STARTED", "task_id": request.id})
                record = await self._run_task(request, started_at)
            session.tasks.append(record)
            self._persist()
            self._emit(
                {
                    "event": "TASK_COMPLETED",
                    "task_id": record.task_id,
                    "status": record.status,
                    "files_modified": list(record.files_modified),
                    "clarification_needed": record.clarification_needed,
                    "executor_blocked": record.executor_blocked,
                }
            )
        finally:
            self._current_task_id = None
            self._compact_log(request.id)
        if record.status != "COMPLETE" and not self.config.session.continue_on_task_failure:
            self._halted_by = self._halted_by or record.task_id
        return record

    async def _run_task(self, request: TaskRequest, started_at: str) -> TaskResult:
        project_path, pipeline = self.project_path, self._pipeline
        if project_path is None or pipeline is None:
            raise OrchestratorError("Session not initialized.", code=SESSION_NOT_INITIALIZED)
        if not request.prompt.strip():
            return TaskResult(
                task_id=request.id,
                prompt=request.prompt,
                status="INVALID",
                started_at=started_at,
                completed_at=_utcnow_iso(),
                error="Task prompt is empty",
            )

        decision = needs_clarification(request.prompt, project_path)
        if decision.needed:
            self._emit(
                {
                    "event": "CLARIFICATION_NEEDED",
                    "task_id": request.id,
                    "reason": decision.reason,
                    "target_file": decision.target_file,
                }
            )
            return TaskResult(
                task_id=request.id,
                prompt=request.prompt,
                status="INCOMPLETE",
                started_at=started_at,
                completed_at=_utcnow_iso(),
                clarification_needed=True,
                clarification_reason=decision.reason,
                target_file=decision.target_file,
            )

        task = ExecutorTask(id=request.id, prompt=request.prompt, working_dir=project_path)
        try:
            result = await pipeline.execute(task)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("task %s failed inside the pipeline", request.id)
            result = ExecutorResult.failure(str(exc), cwd=str(project_path))
        record = TaskResult.from_executor_result(request, result, started_at=started_at)
        record.target_file = decision.target_file
        return record

    def _aggregate(self, results: list[TaskResult]) -> AggregateResult:
        session = self._require_session()
        overall = aggregate_status(result.status for result in results)
        clarification = next((result for result in results if result.clarification_needed), None)
        incomplete = [
            {"task_id": result.task_id, "reason": result.error or result.status}
            for result in results
            if result.status != "COMPLETE" and not result.clarification_needed
        ]
        next_action_reason: str | None = None
        if clarification is not None:
            next_action_reason = f"Clarification needed: {clarification.clarification_reason}"
        elif incomplete:
            next_action_reason = f"{len(incomplete)} task(s) did not complete"
        return AggregateResult(
            session_id=session.session_id,
            overall_status=overall,
            tasks_completed=sum(1 for result in results if result.status == "COMPLETE"),
            tasks_total=len(results),
            task_results=list(results),
            next_action=next_action_reason is not None,
            next_action_reason=next_action_reason,
            clarification_reason=clarification.clarification_reason if clarification else None,
            target_file=clarification.target_file if clarification else None,
            original_prompt=clarification.prompt if clarification else None,
            incomplete_task_reasons=incomplete,
        )

    def resume(self, session_id: str, project_path: str | Path | None = None) -> Session:
        store = self.store
        if store is None:
            if project_path is None:
                raise OrchestratorError(
                    f"Cannot resume {session_id}: no session store configured",
                    code=SESSION_NOT_FOUND,
                )
            store = self._ensure_store(Path(project_path).expanduser().resolve())
        data = store.load(session_id)
        if data is None:
            raise OrchestratorError(f"Session not found: {session_id}", code=SESSION_NOT_FOUND)
        session = Session.from_dict(data)
        if session.status == "COMPLETED":
            raise OrchestratorError(
                f"Session already completed: {session_id}", code=SESSION_ALREADY_FINISHED
            )
        path = Path(session.project_path)
        if not path.is_dir():
            raise OrchestratorError(
                f"Project path of session {session_id} no longer exists: {path}",
                code=INVALID_PROJECT_PATH,
            )

        # Skipped tasks never ran, so they are queued again ahead of pending ones.
        requeue = [
            TaskRequest(id=task.task_id, prompt=task.prompt)
            for task in session.tasks
            if task.skipped
        ]
        session.tasks = [task for task in session.tasks if not task.skipped]
        session.pending = [*requeue, *session.pending]
        session.status = "RUNNING"
        session.ended_at = None
        self.session = session
        self.project_path = path
        self._queue = asyncio.Queue()
        for request in session.pending:
            self._queue.put_nowait(request)
        self._pipeline = self._build_pipeline(session, path)
        self._persist()
        self._emit({"event": "SESSION_RESUMED", "pending": [item.id for item in session.pending]})
        return session

    def shutdown(self) -> Session | None:
        if self.session is None:
            return None
        session = self.session
        released = self.lock_manager.release_all(session.session_id)
        complete = bool(session.tasks) and session.overall_status == "COMPLETE"
        session.status = "COMPLETED" if complete and not session.pending else "FAILED"
        session.ended_at = _utcnow_iso()
        self._persist()
        self._emit(
            {"event": "SESSION_SHUTDOWN", "status": session.status, "released_locks": released}
        )
        return session

    def get_task_results(self) -> list[TaskResult]:
        if self.session is None:
            return []
        return list(self.session.tasks)

    def get_session_state(self) -> dict[str, Any]:
        session = self._require_session()
        state = session.to_dict()
        state["active_executors"] = self.lock_manager.active_executor_count()
        return state

    def _override(self, task_id: str, status: str, reason: str) -> TaskResult:
        session = self._require_session()
        record = next((task for task in session.tasks if task.task_id == task_id), None)
        if record is None:
            raise OrchestratorError(f"Unknown task: {task_id}", code=SESSION_NOT_FOUND)
        previous = record.status
        record.status = status
        record.error = reason
        self._persist()
        self._emit(
            {
                "event": "TASK_STATUS_OVERRIDDEN",
                "task_id": task_id,
                "from": previous,
                "to": status,
                "reason": reason,
            },
            task_id=task_id,
        )
        self._compact_log(task_id)
        return record

    def mark_incomplete(self, task_id: str, reason: str) -> TaskResult:
        return self._override(task_id, "INCOMPLETE", reason)

    def mark_no_evidence(self, task_id: str, reason: str) -> TaskResult:
        return self._override(task_id, "NO_EVIDENCE", reason)

    def mark_invalid(self, task_id: str, reason: str) -> TaskResult:
        return self._override(task_id, "INVALID", reason)
