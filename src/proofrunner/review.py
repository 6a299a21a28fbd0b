from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any, Literal

from proofrunner.assembler import PromptAssembler
from proofrunner.config import ReviewConfig
from proofrunner.executors.base import Executor
from proofrunner.models import ExecutorResult, ExecutorTask

Judgment = Literal["PASS", "REJECT", "RETRY"]
IssueType = Literal[
    "missing_file", "todo_left", "omission", "syntax_error", "incomplete", "early_termination"
]
ReviewEventHook = Callable[[dict[str, Any]], None]

CRITERION_NAMES = {
    "Q1": "Files Verified",
    "Q2": "No TODO/FIXME",
    "Q3": "No Omission Markers",
    "Q4": "No Incomplete Syntax",
    "Q5": "Evidence Present",
    "Q6": "No Early Termination",
}
ISSUE_TYPES: dict[str, IssueType] = {
    "Q1": "missing_file",
    "Q2": "todo_left",
    "Q3": "omission",
    "Q4": "syntax_error",
    "Q5": "incomplete",
    "Q6": "early_termination",
}
CODE_BLOCK_PATTERN = re.compile(r"```.*?```", re.DOTALL)
TRUNCATION_PATTERN = re.compile(
    r"\[truncated\]|\boutput (?:was )?truncated\b|\b(?:was|been|got) cut off\b", re.IGNORECASE
)
BRACKET_PAIRS = (("{", "}", "braces"), ("[", "]", "brackets"), ("(", ")", "parentheses"))


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class QualityCriterion:
    id: str
    name: str
    passed: bool
    reason: str = ""


@dataclass(slots=True)
class QualityJudgment:
    judgment: Judgment
    criteria_results: list[QualityCriterion]
    reason: str

    @property
    def failed_criteria(self) -> list[QualityCriterion]:
        return [item for item in self.criteria_results if not item.passed]


@dataclass(slots=True)
class RejectionIssue:
    type: IssueType
    description: str
    criterion_id: str | None = None


@dataclass(slots=True)
class ReviewIteration:
    iteration: int
    prompt: str
    judgment: Judgment
    reason: str
    status: str
    criteria_results: list[QualityCriterion] = field(default_factory=list)
    started_at: str = field(default_factory=_utcnow_iso)
    ended_at: str | None = None


@dataclass(slots=True)
class ReviewLoopResult:
    final_status: str
    total_iterations: int
    iteration_history: list[ReviewIteration] = field(default_factory=list)
    final_result: ExecutorResult | None = None
    escalated: bool = False


CriterionCheck = Callable[[ExecutorResult, ReviewConfig], QualityCriterion]


def _criterion(criterion_id: str, passed: bool, reason: str) -> QualityCriterion:
    return QualityCriterion(
        id=criterion_id,
        name=CRITERION_NAMES.get(criterion_id, criterion_id),
        passed=passed,
        reason=reason,
    )


def _file_texts(result: ExecutorResult) -> list[str]:
    return [item.content_preview for item in result.verified_files if item.content_preview]


def _find_markers(patterns: Iterable[str], texts: Iterable[str]) -> list[str]:
    compiled = [re.compile(pattern) for pattern in patterns]
    found: list[str] = []
    for text in texts:
        for pattern in compiled:
            match = pattern.search(text)
            if match and match.group(0) not in found:
                found.append(match.group(0))
    return found


def check_files_verified(result: ExecutorResult, config: ReviewConfig) -> QualityCriterion:
    _ = config
    missing = [item.path for item in result.verified_files if not item.exists]
    missing.extend(path for path in result.unverified_files if path not in missing)
    if missing:
        return _criterion("Q1", False, "Claimed files not found on disk: " + ", ".join(missing))
    return _criterion("Q1", True, f"{len(result.verified_files)} file(s) verified")


def check_no_todo(result: ExecutorResult, config: ReviewConfig) -> QualityCriterion:
    markers = _find_markers(config.todo_patterns, [result.output, *_file_texts(result)])
    if markers:
        return _criterion("Q2", False, "Unfinished markers left: " + ", ".join(markers))
    return _criterion("Q2", True, "No TODO/FIXME markers")


def check_no_omission(result: ExecutorResult, config: ReviewConfig) -> QualityCriterion:
    markers = _find_markers(config.omission_patterns, [result.output])
    if markers:
        return _criterion("Q3", False, "Omission markers found: " + ", ".join(markers))
    return _criterion("Q3", True, "No omission markers")


def check_complete_syntax(result: ExecutorResult, config: ReviewConfig) -> QualityCriterion:
    _ = config
    problems: list[str] = []
    for block in CODE_BLOCK_PATTERN.findall(result.output):
        for opening, closing, label in BRACKET_PAIRS:
            opened, closed = block.count(opening), block.count(closing)
            if opened != closed:
                problems.append(f"Unmatched {label}: {opened} open, {closed} close")
    if TRUNCATION_PATTERN.search(result.output):
        problems.append("Output appears to be truncated")
    if problems:
        return _criterion("Q4", False, "; ".join(problems))
    return _criterion("Q4", True, "No incomplete syntax detected")


def check_evidence_present(result: ExecutorResult, config: ReviewConfig) -> QualityCriterion:
    _ = config
    existing = [item for item in result.verified_files if item.exists]
    if existing:
        return _criterion("Q5", True, f"{len(existing)} verified file(s) on disk")
    return _criterion("Q5", False, "No verified evidence of completion")


def check_no_early_termination(result: ExecutorResult, config: ReviewConfig) -> QualityCriterion:
    phrases = _find_markers(config.early_termination_patterns, [result.output])
    has_evidence = any(item.exists for item in result.verified_files)
    if phrases and not has_evidence:
        return _criterion(
            "Q6", False, "Completion claimed without evidence: " + ", ".join(phrases)
        )
    if phrases:
        return _criterion("Q6", True, "Completion phrases found but evidence present")
    return _criterion("Q6", True, "No early termination detected")


DEFAULT_CRITERIA: dict[str, CriterionCheck] = {
    "Q1": check_files_verified,
    "Q2": check_no_todo,
    "Q3": check_no_omission,
    "Q4": check_complete_syntax,
    "Q5": check_evidence_present,
    "Q6": check_no_early_termination,
}


def perform_quality_judgment(
    result: ExecutorResult,
    config: ReviewConfig,
    criteria: Mapping[str, CriterionCheck] | None = None,
) -> QualityJudgment:
    """Run the configured checklist in order and turn it into PASS, REJECT or RETRY.

    RETRY is reserved for executor infrastructure failures. PASS additionally
    requires the evidence-derived status to be COMPLETE, so a checklist that
    omits the evidence criteria still cannot pass an unverified result.
    """
    registry = {**DEFAULT_CRITERIA, **(criteria or {})}
    results: list[QualityCriterion] = []
    for criterion_id in config.criteria:
        check = registry.get(criterion_id)
        if check is None:
            raise ValueError(f"Unknown quality criterion: {criterion_id}")
        results.append(check(result, config))

    if result.status in ("ERROR", "BLOCKED") or result.executor_blocked:
        return QualityJudgment(
            judgment="RETRY",
            criteria_results=results,
            reason=result.error or f"Executor reported {result.status}",
        )
    failed = [item for item in results if not item.passed]
    if failed:
        return QualityJudgment(
            judgment="REJECT",
            criteria_results=results,
            reason="; ".join(f"{item.id} {item.name}: {item.reason}" for item in failed),
        )
    if result.status != "COMPLETE":
        return QualityJudgment(
            judgment="REJECT",
            criteria_results=results,
            reason=f"Evidence status is {result.status}",
        )
    return QualityJudgment(
        judgment="PASS", criteria_results=results, reason="All quality criteria passed"
    )


def generate_issues(judgment: QualityJudgment) -> list[RejectionIssue]:
    issues = [
        RejectionIssue(
            type=ISSUE_TYPES.get(item.id, "incomplete"),
            description=item.reason,
            criterion_id=item.id,
        )
        for item in judgment.failed_criteria
    ]
    if not issues and judgment.judgment == "REJECT":
        issues.append(RejectionIssue(type="incomplete", description=judgment.reason))
    return issues


class ReviewLoopExecutor(Executor):
    """Re-runs a wrapped executor until its result passes quality review."""

    def __init__(
        self,
        executor: Executor,
        config: ReviewConfig | None = None,
        *,
        prompt_assembler: PromptAssembler | None = None,
        criteria: Mapping[str, CriterionCheck] | None = None,
        event_hook: ReviewEventHook | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.executor = executor
        self.config = config or ReviewConfig()
        self.prompt_assembler = prompt_assembler or PromptAssembler()
        self.criteria = dict(criteria or {})
        self.event_hook = event_hook
        self._sleep = sleep

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def is_available(self) -> bool:
        return await self.executor.is_available()

    async def execute(self, task: ExecutorTask) -> ExecutorResult:
        loop = await self.execute_with_review(task)
        result = loop.final_result or ExecutorResult.failure("Review loop produced no result")
        if loop.final_status == "COMPLETE":
            return replace(result, status="COMPLETE")
        # An unbacked claim stays NO_EVIDENCE after escalation.
        status = "NO_EVIDENCE" if result.status == "NO_EVIDENCE" else loop.final_status
        error = result.error
        if loop.iteration_history:
            last = loop.iteration_history[-1]
            error = error or f"Review {last.judgment} after {loop.total_iterations} iteration(s): {last.reason}"
        return replace(
            result,
            status=status,
            error=error,
            review_exhausted=bool(loop.iteration_history),
        )

    async def execute_with_review(self, task: ExecutorTask) -> ReviewLoopResult:
        max_iterations = max(1, self.config.max_iterations)
        self._emit(
            {"event": "REVIEW_LOOP_START", "task_id": task.id, "max_iterations": max_iterations}
        )
        history: list[ReviewIteration] = []
        prompt = task.prompt
        last_result: ExecutorResult | None = None
        last_judgment: QualityJudgment | None = None

        for iteration in range(1, max_iterations + 1):
            self._emit({"event": "ITERATION_START", "task_id": task.id, "iteration": iteration})
            record = ReviewIteration(
                iteration=iteration, prompt=prompt, judgment="RETRY", reason="", status="ERROR"
            )
            result = await self.executor.execute(task.with_prompt(prompt))
            judgment = perform_quality_judgment(result, self.config, self.criteria)
            record.judgment = judgment.judgment
            record.reason = judgment.reason
            record.status = result.status
            record.criteria_results = judgment.criteria_results
            history.append(record)
            last_result, last_judgment = result, judgment
            self._emit(
                {
                    "event": "QUALITY_JUDGMENT",
                    "task_id": task.id,
                    "iteration": iteration,
                    "judgment": judgment.judgment,
                    "reason": judgment.reason,
                    "criteria": [
                        {"id": item.id, "passed": item.passed, "reason": item.reason}
                        for item in judgment.criteria_results
                    ],
                }
            )

            if judgment.judgment == "REJECT":
                issues = generate_issues(judgment)
                self._emit(
                    {
                        "event": "REJECT",
                        "task_id": task.id,
                        "iteration": iteration,
                        "reason": judgment.reason,
                        "issues": [
                            {"type": issue.type, "description": issue.description}
                            for issue in issues
                        ],
                    }
                )
                if iteration < max_iterations:
                    prompt = self.prompt_assembler.build_modification_prompt(
                        task.prompt, judgment.failed_criteria, issues
                    )
                    self._emit(
                        {
                            "event": "MODIFICATION_PROMPT",
                            "task_id": task.id,
                            "iteration": iteration,
                            "prompt": prompt,
                        }
                    )

            record.ended_at = _utcnow_iso()
            self._emit(
                {
                    "event": "ITERATION_END",
                    "task_id": task.id,
                    "iteration": iteration,
                    "judgment": judgment.judgment,
                    "status": result.status,
                }
            )
            if judgment.judgment == "PASS":
                return self._finish(task, "COMPLETE", history, result)
            if judgment.judgment == "RETRY" and iteration < max_iterations:
                await self._sleep(self.config.retry_delay_ms / 1000)

        if last_judgment is not None and last_judgment.judgment == "RETRY":
            return self._finish(task, "ERROR", history, last_result)
        if self.config.escalate_on_max:
            self._emit(
                {
                    "event": "ESCALATE",
                    "task_id": task.id,
                    "iterations": len(history),
                    "reason": last_judgment.reason if last_judgment else "",
                }
            )
            return self._finish(task, "INCOMPLETE", history, last_result, escalated=True)
        return self._finish(task, "ERROR", history, last_result)

    def _finish(
        self,
        task: ExecutorTask,
        final_status: str,
        history: list[ReviewIteration],
        result: ExecutorResult | None,
        *,
        escalated: bool = False,
    ) -> ReviewLoopResult:
        self._emit(
            {
                "event": "REVIEW_LOOP_END",
                "task_id": task.id,
                "final_status": final_status,
                "total_iterations": len(history),
                "escalated": escalated,
            }
        )
        return ReviewLoopResult(
            final_status=final_status,
            total_iterations=len(history),
            iteration_history=history,
            final_result=result,
            escalated=escalated,
        )
