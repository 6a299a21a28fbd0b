from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any
from uuid import uuid4

from proofrunner.assembler import PromptAssembler
from proofrunner.clarification import extract_target_file
from proofrunner.evidence import EXCLUDED_DIRS, attach_evidence, snapshot
from proofrunner.executors.base import Executor, ExecutorError
from proofrunner.locks import LockManager, LockType
from proofrunner.models import ExecutorResult, ExecutorTask

logger = logging.getLogger(__name__)

GuardEventHook = Callable[[dict[str, Any]], None]


def lock_requests_for(task: ExecutorTask) -> list[tuple[Path, LockType]]:
    """Resources a task touches: its target file for writing, else the tree for reading."""
    working_dir = Path(task.working_dir).resolve()
    target = extract_target_file(task.target_prompt)
    if target:
        return [(working_dir / target, "WRITE")]
    return [(working_dir, "READ")]


class GuardedExecutor(Executor):
    """Innermost wrapper around the raw executor.

    Each call holds its resource locks and one global executor slot for
    exactly the duration of the raw invocation, snapshots the working tree
    before and after, and replaces the executor's file claims with verified
    evidence.
    """

    def __init__(
        self,
        executor: Executor,
        lock_manager: LockManager,
        *,
        holder_prefix: str,
        timeout_seconds: float | None = None,
        prompt_assembler: PromptAssembler | None = None,
        excluded_dirs: frozenset[str] = EXCLUDED_DIRS,
        event_hook: GuardEventHook | None = None,
    ) -> None:
        self.executor = executor
        self.lock_manager = lock_manager
        self.holder_prefix = holder_prefix
        self.timeout_seconds = timeout_seconds
        self.prompt_assembler = prompt_assembler or PromptAssembler()
        self.excluded_dirs = excluded_dirs
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def is_available(self) -> bool:
        return await self.executor.is_available()

    async def _invoke(self, task: ExecutorTask) -> ExecutorResult:
        prompt = self.prompt_assembler.assemble(task.prompt)
        started = time.monotonic()
        try:
            return await asyncio.wait_for(
                self.executor.execute(task.with_prompt(prompt)), timeout=self.timeout_seconds
            )
        except TimeoutError:
            return ExecutorResult.blocked(
                reason="TIMEOUT",
                terminated_by="TIMEOUT",
                duration_ms=int((time.monotonic() - started) * 1000),
                cwd=str(task.working_dir),
                error=f"Executor timed out after {time.monotonic() - started:.1f}s",
            )
        except ExecutorError as exc:
            if not exc.retriable:
                raise
            return ExecutorResult.failure(
                str(exc),
                cwd=str(task.working_dir),
                duration_ms=int((time.monotonic() - started) * 1000),
            )

    async def execute(self, task: ExecutorTask) -> ExecutorResult:
        working_dir = Path(task.working_dir).resolve()
        holder = f"{self.holder_prefix}:{task.id}"
        slot_holder = f"{holder}:{uuid4().hex[:8]}"
        requests = lock_requests_for(task)

        with self.lock_manager.hold(requests, holder), self.lock_manager.executor_slot(slot_holder):
            self._emit(
                {
                    "event": "EXECUTOR_START",
                    "task_id": task.id,
                    "locks": [f"{lock_type}:{path}" for path, lock_type in requests],
                }
            )
            started = time.monotonic()
            before = snapshot(working_dir, excluded=self.excluded_dirs)
            raw = await self._invoke(task)
            after = snapshot(working_dir, excluded=self.excluded_dirs)

        result = attach_evidence(raw, working_dir, before, after)
        result.cwd = result.cwd or str(working_dir)
        if not result.duration_ms:
            result.duration_ms = int((time.monotonic() - started) * 1000)
        if result.executor_blocked:
            logger.warning(
                "task %s blocked: %s / %s", task.id, result.blocked_reason, result.terminated_by
            )
            self._emit(
                {
                    "event": "EXECUTOR_BLOCKED",
                    "task_id": task.id,
                    "blocked_reason": result.blocked_reason,
                    "terminated_by": result.terminated_by,
                }
            )
        self._emit(
            {
                "event": "EXECUTOR_END",
                "task_id": task.id,
                "status": result.status,
                "verified_files": [item.path for item in result.verified_files],
                "unverified_files": list(result.unverified_files),
                "duration_ms": result.duration_ms,
            }
        )
        return result
