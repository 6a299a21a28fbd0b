from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Literal

from proofrunner.config import ChunkingConfig, RetryConfig
from proofrunner.executors.base import Executor
from proofrunner.models import ExecutorResult, ExecutorTask, VerifiedFile, aggregate_status

logger = logging.getLogger(__name__)

ChunkingEventHook = Callable[[dict[str, Any]], None]
SubtaskMode = Literal["sequential", "parallel"]

NUMBERED_MARKER = re.compile(r"(?:^|(?<=\s))(\d+)[.)]\s+")
BULLET_LINE = re.compile(r"^\s*[-*•]\s+(.+?)\s*$", re.MULTILINE)
COMMA_TASK = re.compile(r"\b(create|implement|add|build)\s+(.+?)(?:\.(?:\s|$)|$)", re.IGNORECASE)
COMMA_SPLIT = re.compile(r",\s*(?:and\s+)?|\s+and\s+")

INDICATOR_PATTERNS: dict[str, re.Pattern[str]] = {
    "comma-separated list": re.compile(
        r"\b(?:create|implement|add|build|make|write)\s+\w+(?:,\s*\w+){2,}", re.IGNORECASE
    ),
    "and-list pattern": re.compile(r"\w+(?:,\s*\w+)+,?\s+and\s+\w+", re.IGNORECASE),
    "multiple files indicator": re.compile(
        r"\b(?:files?|components?|modules?|functions?|classes?)\s*(?:for\b|:)", re.IGNORECASE
    ),
    "independent parts": re.compile(
        r"\b(?:independent(?:ly)?|separately|each|respectively|in parallel)\b", re.IGNORECASE
    ),
    "large scope": re.compile(r"\b(?:system|module|complete|full|entire|all)\b", re.IGNORECASE),
}
DEPENDENCY_KEYWORDS = re.compile(
    r"\b(?:after|then|once|following|based on|using)\b", re.IGNORECASE
)


@dataclass(slots=True)
class SubtaskPlan:
    id: str
    prompt: str
    dependencies: list[str] = field(default_factory=list)
    priority: int = 0


@dataclass(slots=True)
class ChunkingAnalysis:
    is_decomposable: bool
    reason: str
    indicators: list[str] = field(default_factory=list)
    suggested_subtasks: list[str] | None = None
    execution_mode: SubtaskMode | None = None


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 2
    retry_delay_ms: int = 2000
    backoff_multiplier: float = 1.5
    retry_on: list[str] = field(default_factory=lambda: ["INCOMPLETE", "ERROR", "TIMEOUT"])

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        return cls(
            max_retries=max(0, int(config.max_retries)),
            retry_delay_ms=max(0, int(config.retry_delay_ms)),
            backoff_multiplier=float(config.backoff_multiplier),
            retry_on=list(config.retry_on),
        )

    def delay_ms(self, retry_number: int) -> float:
        """Delay before the ``retry_number``-th retry (1-based)."""
        return self.retry_delay_ms * (self.backoff_multiplier ** (retry_number - 1))

    def should_retry(self, result: ExecutorResult) -> bool:
        if result.status == "COMPLETE" or result.review_exhausted:
            return False
        if result.timed_out and "TIMEOUT" in self.retry_on:
            return True
        return result.status in self.retry_on


@dataclass(slots=True)
class SubtaskOutcome:
    plan: SubtaskPlan
    result: ExecutorResult
    attempts: int = 0
    skipped: bool = False


@dataclass(slots=True)
class ChunkingResult:
    task_id: str
    result: ExecutorResult
    analysis: ChunkingAnalysis
    outcomes: list[SubtaskOutcome] = field(default_factory=list)
    attempts: int = 0


def detect_indicators(prompt: str) -> list[str]:
    found: list[str] = []
    if len(_numbered_items(prompt)) >= 2 or len(BULLET_LINE.findall(prompt)) >= 2:
        found.append("enumeration detected")
    for label, pattern in INDICATOR_PATTERNS.items():
        if pattern.search(prompt):
            found.append(label)
    return found


def _numbered_items(prompt: str) -> list[str]:
    markers = list(NUMBERED_MARKER.finditer(prompt))
    sequence: list[re.Match[str]] = []
    for marker in markers:
        if int(marker.group(1)) == len(sequence) + 1:
            sequence.append(marker)
    items: list[str] = []
    for index, marker in enumerate(sequence):
        end = sequence[index + 1].start() if index + 1 < len(sequence) else len(prompt)
        item = prompt[marker.end() : end].strip()
        if item:
            items.append(item)
    return items


def extract_subtasks(prompt: str) -> list[str]:
    numbered = _numbered_items(prompt)
    if numbered:
        return numbered
    bullets = [item for item in BULLET_LINE.findall(prompt) if item]
    if bullets:
        return bullets
    match = COMMA_TASK.search(prompt)
    if match:
        verb = match.group(1)
        items = [item.strip() for item in COMMA_SPLIT.split(match.group(2)) if item.strip()]
        if len(items) > 1:
            return [f"{verb} {item}" for item in items]
    return []


def has_dependency_language(prompt: str) -> bool:
    return DEPENDENCY_KEYWORDS.search(prompt) is not None


def analyze_task_for_chunking(prompt: str, config: ChunkingConfig) -> ChunkingAnalysis:
    if not config.enabled:
        return ChunkingAnalysis(is_decomposable=False, reason="Chunking disabled")
    indicators = detect_indicators(prompt)
    if len(indicators) < 2:
        return ChunkingAnalysis(
            is_decomposable=False,
            reason="Task does not meet decomposition criteria",
            indicators=indicators,
        )
    subtasks = extract_subtasks(prompt)
    if not config.min_subtasks <= len(subtasks) <= config.max_subtasks:
        return ChunkingAnalysis(
            is_decomposable=False,
            reason=(
                f"Extracted {len(subtasks)} subtask(s), outside "
                f"[{config.min_subtasks}, {config.max_subtasks}]"
            ),
            indicators=indicators,
        )
    if config.execution_mode == "auto":
        depends = any(has_dependency_language(item) for item in subtasks[1:])
        mode: SubtaskMode = "sequential" if depends else "parallel"
    else:
        mode = config.execution_mode
    return ChunkingAnalysis(
        is_decomposable=True,
        reason="Decomposable: " + ", ".join(indicators),
        indicators=indicators,
        suggested_subtasks=subtasks,
        execution_mode=mode,
    )


def build_subtask_plans(task_id: str, subtasks: list[str]) -> list[SubtaskPlan]:
    plans: list[SubtaskPlan] = []
    for index, prompt in enumerate(subtasks, start=1):
        dependencies: list[str] = []
        if plans and has_dependency_language(prompt):
            dependencies.append(plans[-1].id)
        plans.append(
            SubtaskPlan(
                id=f"{task_id}-sub-{index}",
                prompt=prompt,
                dependencies=dependencies,
                priority=index,
            )
        )
    return plans


def _unique(items: list[str]) -> list[str]:
    return list(dict.fromkeys(item for item in items if item))


def aggregate_results(outcomes: list[SubtaskOutcome], *, cwd: str = "") -> ExecutorResult:
    """Merge subtask results, kept in plan order, into one task result."""
    results = [outcome.result for outcome in outcomes]
    verified: dict[str, VerifiedFile] = {}
    for result in results:
        for item in result.verified_files:
            verified.setdefault(item.path, item)
    errors = [
        f"{outcome.plan.id}: {outcome.result.error}"
        for outcome in outcomes
        if outcome.result.error and outcome.result.status != "COMPLETE"
    ]
    blocked = next((result for result in results if result.executor_blocked), None)
    return ExecutorResult(
        executed=any(result.executed for result in results),
        status=aggregate_status(result.status for result in results),
        output="\n\n".join(
            f"[{outcome.plan.id}] {outcome.result.output}".rstrip() for outcome in outcomes
        ),
        files_modified=_unique([path for result in results for path in result.files_modified]),
        verified_files=list(verified.values()),
        unverified_files=_unique([path for result in results for path in result.unverified_files]),
        error="; ".join(errors) or None,
        duration_ms=sum(result.duration_ms for result in results),
        cwd=cwd,
        executor_blocked=blocked is not None,
        blocked_reason=blocked.blocked_reason if blocked else None,
        terminated_by=blocked.terminated_by if blocked else None,
    )


class TaskChunkingExecutor(Executor):
    """Splits multi-part tasks into subtasks and runs them with retry and backoff."""

    def __init__(
        self,
        executor: Executor,
        config: ChunkingConfig | None = None,
        retry_policy: RetryPolicy | None = None,
        *,
        event_hook: ChunkingEventHook | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.executor = executor
        self.config = config or ChunkingConfig()
        self.retry_policy = retry_policy or RetryPolicy()
        self.event_hook = event_hook
        self._sleep = sleep

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def is_available(self) -> bool:
        return await self.executor.is_available()

    async def execute(self, task: ExecutorTask) -> ExecutorResult:
        return (await self.execute_chunked(task)).result

    async def execute_chunked(self, task: ExecutorTask) -> ChunkingResult:
        self._emit({"event": "CHUNKING_START", "task_id": task.id})
        if self.config.enabled and self.config.auto_detect:
            analysis = analyze_task_for_chunking(task.prompt, self.config)
        else:
            analysis = ChunkingAnalysis(is_decomposable=False, reason="Auto-detection disabled")
        self._emit(
            {
                "event": "CHUNKING_ANALYSIS",
                "task_id": task.id,
                "is_decomposable": analysis.is_decomposable,
                "reason": analysis.reason,
                "indicators": list(analysis.indicators),
                "execution_mode": analysis.execution_mode,
            }
        )

        if not analysis.is_decomposable or not analysis.suggested_subtasks:
            result, attempts = await self._run_with_retry(task, parent_id=task.id)
            self._emit(
                {
                    "event": "CHUNKING_COMPLETE",
                    "task_id": task.id,
                    "mode": "atomic",
                    "status": result.status,
                    "attempts": attempts,
                }
            )
            return ChunkingResult(task.id, result, analysis, attempts=attempts)

        plans = build_subtask_plans(task.id, analysis.suggested_subtasks)
        for plan in plans:
            self._emit(
                {
                    "event": "SUBTASK_CREATED",
                    "task_id": task.id,
                    "subtask_id": plan.id,
                    "prompt": plan.prompt,
                    "dependencies": list(plan.dependencies),
                }
            )

        if analysis.execution_mode == "sequential":
            outcomes = await self._run_sequential(task, plans)
            failed_fast = False
        else:
            outcomes, failed_fast = await self._run_parallel(task, plans)

        result = aggregate_results(outcomes, cwd=str(task.working_dir))
        if failed_fast:
            result.status = "ERROR"
        self._emit(
            {
                "event": "CHUNKING_AGGREGATION",
                "task_id": task.id,
                "status": result.status,
                "subtasks": [
                    {
                        "subtask_id": outcome.plan.id,
                        "status": outcome.result.status,
                        "skipped": outcome.skipped,
                    }
                    for outcome in outcomes
                ],
                "files_modified": list(result.files_modified),
            }
        )
        self._emit(
            {
                "event": "CHUNKING_COMPLETE",
                "task_id": task.id,
                "mode": analysis.execution_mode,
                "status": result.status,
                "fail_fast_triggered": failed_fast,
            }
        )
        return ChunkingResult(
            task.id,
            result,
            analysis,
            outcomes=outcomes,
            attempts=sum(outcome.attempts for outcome in outcomes),
        )

    async def _run_with_retry(
        self, task: ExecutorTask, *, parent_id: str
    ) -> tuple[ExecutorResult, int]:
        attempt = 0
        while True:
            attempt += 1
            retriable = True
            try:
                result = await self.executor.execute(task)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("executor raised on %s attempt %d: %s", task.id, attempt, exc)
                retriable = bool(getattr(exc, "retriable", True))
                result = ExecutorResult.failure(str(exc), cwd=str(task.working_dir))
            if (
                not retriable
                or attempt > self.retry_policy.max_retries
                or not self.retry_policy.should_retry(result)
            ):
                return result, attempt
            delay_ms = self.retry_policy.delay_ms(attempt)
            self._emit(
                {
                    "event": "SUBTASK_RETRY",
                    "task_id": parent_id,
                    "subtask_id": task.id,
                    "attempt": attempt,
                    "status": result.status,
                    "delay_ms": delay_ms,
                }
            )
            await self._sleep(delay_ms / 1000)

    async def _run_subtask(self, parent: ExecutorTask, plan: SubtaskPlan) -> SubtaskOutcome:
        self._emit({"event": "SUBTASK_START", "task_id": parent.id, "subtask_id": plan.id})
        subtask = ExecutorTask(id=plan.id, prompt=plan.prompt, working_dir=parent.working_dir)
        result, attempts = await self._run_with_retry(subtask, parent_id=parent.id)
        self._emit(
            {
                "event": "SUBTASK_COMPLETE" if result.status == "COMPLETE" else "SUBTASK_FAILED",
                "task_id": parent.id,
                "subtask_id": plan.id,
                "status": result.status,
                "attempts": attempts,
                "error": result.error,
            }
        )
        return SubtaskOutcome(plan=plan, result=result, attempts=attempts)

    @staticmethod
    def _skipped(plan: SubtaskPlan, reason: str, cwd: str) -> SubtaskOutcome:
        return SubtaskOutcome(
            plan=plan,
            result=ExecutorResult(executed=False, status="INCOMPLETE", error=reason, cwd=cwd),
            skipped=True,
        )

    async def _run_sequential(
        self, parent: ExecutorTask, plans: list[SubtaskPlan]
    ) -> list[SubtaskOutcome]:
        outcomes: dict[str, SubtaskOutcome] = {}
        cwd = str(parent.working_dir)
        aborted_by: str | None = None
        for plan in plans:
            if aborted_by is not None:
                outcomes[plan.id] = self._skipped(plan, f"Aborted after {aborted_by} failed", cwd)
                continue
            blocking = [
                dep for dep in plan.dependencies if outcomes[dep].result.status != "COMPLETE"
            ]
            if blocking:
                outcomes[plan.id] = self._skipped(
                    plan, "Dependency not complete: " + ", ".join(blocking), cwd
                )
                continue
            outcome = await self._run_subtask(parent, plan)
            outcomes[plan.id] = outcome
            if outcome.result.status != "COMPLETE" and not self.config.continue_on_subtask_failure:
                aborted_by = plan.id
        return [outcomes[plan.id] for plan in plans]

    async def _run_parallel(
        self, parent: ExecutorTask, plans: list[SubtaskPlan]
    ) -> tuple[list[SubtaskOutcome], bool]:
        outcomes: dict[str, SubtaskOutcome] = {}
        cwd = str(parent.working_dir)
        pending = list(plans)
        while pending:
            ready: list[SubtaskPlan] = []
            waiting: list[SubtaskPlan] = []
            for plan in pending:
                if any(dep not in outcomes for dep in plan.dependencies):
                    waiting.append(plan)
                    continue
                blocking = [
                    dep for dep in plan.dependencies if outcomes[dep].result.status != "COMPLETE"
                ]
                if blocking:
                    outcomes[plan.id] = self._skipped(
                        plan, "Dependency not complete: " + ", ".join(blocking), cwd
                    )
                else:
                    ready.append(plan)
            if not ready:
                if waiting and len(waiting) == len(pending):
                    for plan in waiting:
                        outcomes[plan.id] = self._skipped(plan, "Unresolvable dependencies", cwd)
                    break
                pending = waiting
                continue

            if self.config.fail_fast:
                failed = await self._run_wave_fail_fast(parent, ready, outcomes)
                if failed:
                    for plan in plans:
                        if plan.id not in outcomes:
                            outcomes[plan.id] = self._skipped(plan, "Cancelled by fail_fast", cwd)
                    return [outcomes[plan.id] for plan in plans], True
            else:
                wave = await asyncio.gather(*(self._run_subtask(parent, plan) for plan in ready))
                for outcome in wave:
                    outcomes[outcome.plan.id] = outcome
            pending = waiting
        return [outcomes[plan.id] for plan in plans], False

    async def _run_wave_fail_fast(
        self,
        parent: ExecutorTask,
        ready: list[SubtaskPlan],
        outcomes: dict[str, SubtaskOutcome],
    ) -> bool:
        running = {
            asyncio.ensure_future(self._run_subtask(parent, plan)): plan for plan in ready
        }
        try:
            while running:
                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                failed = False
                for future in done:
                    running.pop(future)
                    outcome = future.result()
                    outcomes[outcome.plan.id] = outcome
                    failed = failed or outcome.result.status != "COMPLETE"
                if failed:
                    return True
            return False
        finally:
            for future in running:
                future.cancel()
            if running:
                # Cancellation unwinds each subtask through its lock scopes.
                await asyncio.gather(*running, return_exceptions=True)
