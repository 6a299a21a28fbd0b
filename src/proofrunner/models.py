from __future__ import annotations

from collections.abc import Iterable
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any, Literal

TaskStatus = Literal["COMPLETE", "INCOMPLETE", "NO_EVIDENCE", "ERROR", "INVALID"]
ExecutorStatus = Literal["COMPLETE", "INCOMPLETE", "NO_EVIDENCE", "ERROR", "BLOCKED"]
BlockedReason = Literal["TIMEOUT", "INTERACTIVE_PROMPT", "STDIN_REQUIRED"]
TerminatedBy = Literal["TIMEOUT", "REPL_FAIL_CLOSED", "USER"]

# Higher wins when several statuses are folded into one.
STATUS_PRECEDENCE: dict[str, int] = {
    "COMPLETE": 0,
    "NO_EVIDENCE": 1,
    "INCOMPLETE": 2,
    "ERROR": 3,
    "INVALID": 4,
}

EXIT_CODES: dict[str, int] = {
    "COMPLETE": 0,
    "INCOMPLETE": 1,
    "NO_EVIDENCE": 2,
    "ERROR": 3,
    "INVALID": 4,
}


def aggregate_status(statuses: Iterable[str], *, empty: str = "INCOMPLETE") -> str:
    """Fold statuses: COMPLETE only if every entry is COMPLETE, else the most severe."""
    collected = list(statuses)
    if not collected:
        return empty
    return max(collected, key=lambda status: STATUS_PRECEDENCE.get(status, STATUS_PRECEDENCE["ERROR"]))


def exit_code_for(status: str) -> int:
    return EXIT_CODES.get(status, EXIT_CODES["ERROR"])


@dataclass(slots=True, frozen=True)
class ExecutorTask:
    id: str
    prompt: str
    working_dir: Path
    request_prompt: str | None = None

    @property
    def target_prompt(self) -> str:
        """The prompt as submitted, before any corrective rewrite."""
        return self.request_prompt or self.prompt

    def with_prompt(self, prompt: str) -> ExecutorTask:
        return replace(self, prompt=prompt, request_prompt=self.target_prompt)


@dataclass(slots=True)
class VerifiedFile:
    path: str
    exists: bool
    size: int | None = None
    content_preview: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VerifiedFile:
        return cls(
            path=str(data["path"]),
            exists=bool(data.get("exists", False)),
            size=data.get("size"),
            content_preview=data.get("content_preview"),
        )


@dataclass(slots=True)
class ExecutorResult:
    executed: bool
    status: ExecutorStatus
    output: str = ""
    files_modified: list[str] = field(default_factory=list)
    verified_files: list[VerifiedFile] = field(default_factory=list)
    unverified_files: list[str] = field(default_factory=list)
    error: str | None = None
    duration_ms: int = 0
    cwd: str = ""
    executor_blocked: bool = False
    blocked_reason: BlockedReason | None = None
    terminated_by: TerminatedBy | None = None
    review_exhausted: bool = False

    @classmethod
    def blocked(
        cls,
        *,
        reason: BlockedReason,
        terminated_by: TerminatedBy,
        output: str = "",
        duration_ms: int = 0,
        cwd: str = "",
        error: str | None = None,
    ) -> ExecutorResult:
        return cls(
            executed=False,
            status="BLOCKED",
            output=output,
            error=error or f"Executor blocked: {reason}",
            duration_ms=duration_ms,
            cwd=cwd,
            executor_blocked=True,
            blocked_reason=reason,
            terminated_by=terminated_by,
        )

    @classmethod
    def failure(cls, error: str, *, cwd: str = "", duration_ms: int = 0) -> ExecutorResult:
        return cls(executed=False, status="ERROR", error=error, cwd=cwd, duration_ms=duration_ms)

    @property
    def timed_out(self) -> bool:
        return self.blocked_reason == "TIMEOUT" or self.terminated_by == "TIMEOUT"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutorResult:
        return cls(
            executed=bool(data.get("executed", False)),
            status=data.get("status", "ERROR"),
            output=str(data.get("output", "")),
            files_modified=[str(item) for item in data.get("files_modified", [])],
            verified_files=[VerifiedFile.from_dict(item) for item in data.get("verified_files", [])],
            unverified_files=[str(item) for item in data.get("unverified_files", [])],
            error=data.get("error"),
            duration_ms=int(data.get("duration_ms", 0)),
            cwd=str(data.get("cwd", "")),
            executor_blocked=bool(data.get("executor_blocked", False)),
            blocked_reason=data.get("blocked_reason"),
            terminated_by=data.get("terminated_by"),
            review_exhausted=bool(data.get("review_exhausted", False)),
        )
