from __future__ import annotations

from abc import ABC, abstractmethod

from proofrunner.models import ExecutorResult, ExecutorTask


class ExecutorError(RuntimeError):
    """Raised when an executor process cannot be run at all."""

    def __init__(
        self,
        message: str,
        *,
        executor: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.executor = executor
        self.exit_code = exit_code
        self.retriable = retriable


class ExecutorTimeoutError(ExecutorError):
    """Raised when an executor invocation exceeds its time budget."""


class ExecutorProcessError(ExecutorError):
    """Raised when the executor process lifecycle fails."""


class Executor(ABC):
    """An untrusted agent that attempts a task and reports a non-authoritative result."""

    @abstractmethod
    async def execute(self, task: ExecutorTask) -> ExecutorResult:
        """Run one task and describe what the executor claims it did."""

    @abstractmethod
    async def is_available(self) -> bool:
        """Whether the executor can currently accept work."""
