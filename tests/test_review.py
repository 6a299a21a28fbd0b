import asyncio
from pathlib import Path

import pytest

from proofrunner.config import ReviewConfig
from proofrunner.executors.base import Executor
from proofrunner.models import ExecutorResult, ExecutorTask, VerifiedFile
from proofrunner.review import (
    QualityCriterion,
    ReviewLoopExecutor,
    check_complete_syntax,
    check_no_early_termination,
    check_no_omission,
    check_no_todo,
    generate_issues,
    perform_quality_judgment,
)

TASK = ExecutorTask(id="task-1", prompt="Create app.py that prints a greeting", working_dir=Path("."))


class ScriptedExecutor(Executor):
    """Returns the scripted results in order, repeating the last one."""

    def __init__(self, results: list[ExecutorResult]) -> None:
        self.results = list(results)
        self.prompts: list[str] = []

    async def execute(self, task: ExecutorTask) -> ExecutorResult:
        self.prompts.append(task.prompt)
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0]

    async def is_available(self) -> bool:
        return True


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def _verified(output: str = "Wrote app.py", preview: str = "print('hello')\n") -> ExecutorResult:
    return ExecutorResult(
        executed=True,
        status="COMPLETE",
        output=output,
        files_modified=["app.py"],
        verified_files=[VerifiedFile("app.py", True, len(preview), preview)],
    )


def _loop(
    executor: Executor, config: ReviewConfig | None = None, **kwargs
) -> tuple[ReviewLoopExecutor, list[dict], RecordingSleep]:
    events: list[dict] = []
    sleep = RecordingSleep()
    loop = ReviewLoopExecutor(
        executor,
        config or ReviewConfig(retry_delay_ms=0),
        event_hook=events.append,
        sleep=sleep,
        **kwargs,
    )
    return loop, events, sleep


def test_todo_is_rejected_then_clean_output_passes() -> None:
    executor = ScriptedExecutor(
        [_verified(output="Wrote app.py\nTODO: handle errors"), _verified()]
    )
    loop, events, _ = _loop(executor)

    result = asyncio.run(loop.execute_with_review(TASK))

    assert result.final_status == "COMPLETE"
    assert result.total_iterations == 2
    assert [item.judgment for item in result.iteration_history] == ["REJECT", "PASS"]
    first_failed = [item.id for item in result.iteration_history[0].criteria_results if not item.passed]
    assert first_failed == ["Q2"]

    assert executor.prompts[0] == TASK.prompt
    assert "todo_left" in executor.prompts[1]
    assert TASK.prompt in executor.prompts[1]

    names = [event["event"] for event in events]
    assert names[0] == "REVIEW_LOOP_START"
    assert names[-1] == "REVIEW_LOOP_END"
    assert names.count("ITERATION_START") == 2
    assert names.count("REJECT") == 1
    assert names.count("MODIFICATION_PROMPT") == 1
    assert "ESCALATE" not in names


def test_three_rejections_escalate_as_incomplete() -> None:
    executor = ScriptedExecutor(
        [ExecutorResult(executed=True, status="NO_EVIDENCE", output="Done.")]
    )
    loop, events, _ = _loop(executor)

    result = asyncio.run(loop.execute_with_review(TASK))

    assert result.final_status == "INCOMPLETE"
    assert result.total_iterations == 3
    assert result.escalated is True
    assert len(executor.prompts) == 3
    assert [item.judgment for item in result.iteration_history] == ["REJECT"] * 3

    names = [event["event"] for event in events]
    assert names.count("ESCALATE") == 1
    # No modification prompt is built after the final attempt.
    assert names.count("MODIFICATION_PROMPT") == 2
    assert events[-1]["final_status"] == "INCOMPLETE"


def test_disabled_escalation_reports_error() -> None:
    executor = ScriptedExecutor(
        [ExecutorResult(executed=True, status="NO_EVIDENCE", output="made changes")]
    )
    loop, events, _ = _loop(executor, ReviewConfig(retry_delay_ms=0, escalate_on_max=False))

    result = asyncio.run(loop.execute_with_review(TASK))

    assert result.final_status == "ERROR"
    assert result.escalated is False
    assert "ESCALATE" not in [event["event"] for event in events]


def test_infrastructure_error_retries_the_same_prompt() -> None:
    executor = ScriptedExecutor([ExecutorResult.failure("connection reset"), _verified()])
    loop, _, sleep = _loop(executor, ReviewConfig(retry_delay_ms=250))

    result = asyncio.run(loop.execute_with_review(TASK))

    assert result.final_status == "COMPLETE"
    assert [item.judgment for item in result.iteration_history] == ["RETRY", "PASS"]
    assert executor.prompts == [TASK.prompt, TASK.prompt]
    assert sleep.delays == [0.25]


def test_budget_exhausted_on_retry_is_an_error_not_an_escalation() -> None:
    executor = ScriptedExecutor([ExecutorResult.failure("connection reset")])
    loop, events, sleep = _loop(executor)

    result = asyncio.run(loop.execute_with_review(TASK))

    assert result.final_status == "ERROR"
    assert result.escalated is False
    assert result.total_iterations == 3
    assert len(sleep.delays) == 2
    assert "ESCALATE" not in [event["event"] for event in events]


def test_blocked_executor_is_retried() -> None:
    blocked = ExecutorResult.blocked(reason="INTERACTIVE_PROMPT", terminated_by="REPL_FAIL_CLOSED")
    judgment = perform_quality_judgment(blocked, ReviewConfig())
    assert judgment.judgment == "RETRY"


def test_execute_returns_final_status_and_reason() -> None:
    executor = ScriptedExecutor(
        [ExecutorResult(executed=True, status="NO_EVIDENCE", output="Done.")]
    )
    loop, _, _ = _loop(executor, ReviewConfig(retry_delay_ms=0, max_iterations=1))

    result = asyncio.run(loop.execute(TASK))

    assert result.status == "NO_EVIDENCE"
    assert result.review_exhausted is True
    assert result.error is not None
    assert "REJECT after 1 iteration(s)" in result.error


def test_unverified_claim_surfaces_no_evidence_after_escalation() -> None:
    executor = ScriptedExecutor(
        [
            ExecutorResult(
                executed=True,
                status="NO_EVIDENCE",
                output="Created README.md",
                files_modified=["README.md"],
                unverified_files=["README.md"],
            )
        ]
    )
    loop, events, _ = _loop(executor)

    result = asyncio.run(loop.execute(TASK))

    assert result.status == "NO_EVIDENCE"
    assert result.unverified_files == ["README.md"]
    assert len(executor.prompts) == 3
    assert [event["event"] for event in events].count("ESCALATE") == 1


def test_content_escalation_stays_incomplete() -> None:
    executor = ScriptedExecutor([_verified(output="Wrote app.py\nTODO: handle errors")])
    loop, _, _ = _loop(executor)

    result = asyncio.run(loop.execute(TASK))

    assert result.status == "INCOMPLETE"
    assert result.review_exhausted is True
    assert result.verified_files[0].path == "app.py"


def test_passing_result_is_not_marked_exhausted() -> None:
    loop, _, _ = _loop(ScriptedExecutor([_verified()]))

    result = asyncio.run(loop.execute(TASK))

    assert result.status == "COMPLETE"
    assert result.review_exhausted is False


def test_pass_requires_complete_status_even_with_reduced_checklist() -> None:
    result = ExecutorResult(executed=True, status="NO_EVIDENCE", output="updated things")
    judgment = perform_quality_judgment(result, ReviewConfig(criteria=["Q2"]))
    assert judgment.judgment == "REJECT"
    assert judgment.failed_criteria == []
    issues = generate_issues(judgment)
    assert [issue.type for issue in issues] == ["incomplete"]


def test_unknown_criterion_is_rejected() -> None:
    with pytest.raises(ValueError, match="Q9"):
        perform_quality_judgment(_verified(), ReviewConfig(criteria=["Q1", "Q9"]))


def test_custom_criterion_extends_checklist() -> None:
    def has_tests(result: ExecutorResult, config: ReviewConfig) -> QualityCriterion:
        _ = config
        passed = "test_" in result.output
        return QualityCriterion("Q7", "Tests Written", passed, "" if passed else "no tests")

    config = ReviewConfig(criteria=["Q1", "Q2", "Q3", "Q4", "Q5", "Q6", "Q7"])
    failing = perform_quality_judgment(_verified(), config, {"Q7": has_tests})
    passing = perform_quality_judgment(
        _verified(output="Wrote app.py and test_app.py"), config, {"Q7": has_tests}
    )

    assert failing.judgment == "REJECT"
    assert [item.id for item in failing.failed_criteria] == ["Q7"]
    assert passing.judgment == "PASS"


def test_todo_markers_are_found_in_file_previews() -> None:
    result = _verified(preview="def main():\n    pass  # FIXME\n")
    criterion = check_no_todo(result, ReviewConfig())
    assert criterion.passed is False
    assert "FIXME" in criterion.reason


@pytest.mark.parametrize(
    ("output", "passed"),
    [
        ("Here are the handlers.\n// remaining handlers follow the same shape", False),
        ("# ... rest of the file unchanged", False),
        ("Loading... please wait", True),
        ("All handlers implemented.", True),
    ],
)
def test_omission_markers(output: str, passed: bool) -> None:
    result = _verified(output=output)
    assert check_no_omission(result, ReviewConfig()).passed is passed


def test_unbalanced_code_blocks_fail_syntax_check() -> None:
    broken = _verified(output="```python\ndef greet(name:\n    return name\n```")
    balanced = _verified(output="```python\ndef greet(name):\n    return name\n```")
    truncated = _verified(output="The output was truncated here")

    assert check_complete_syntax(broken, ReviewConfig()).passed is False
    assert check_complete_syntax(balanced, ReviewConfig()).passed is True
    assert check_complete_syntax(truncated, ReviewConfig()).passed is False


def test_early_termination_needs_missing_evidence() -> None:
    config = ReviewConfig()
    bare = ExecutorResult(executed=True, status="NO_EVIDENCE", output="That's all for now")
    backed = _verified(output="This completes the task")

    assert check_no_early_termination(bare, config).passed is False
    assert check_no_early_termination(backed, config).passed is True
