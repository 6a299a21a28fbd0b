from pathlib import Path

import pytest

from proofrunner.clarification import extract_target_file, is_truly_ambiguous, needs_clarification


@pytest.mark.parametrize(
    ("prompt", "expected"),
    [
        ("Please write `src/app.py` now", "src/app.py"),
        ("Create docs/guide.md.", "docs/guide.md"),
        ("Fix the bug in (utils/helpers.ts), thanks", "utils/helpers.ts"),
        ("Add a file named config: settings.toml", "settings.toml"),
        ("Add a login page", None),
    ],
)
def test_extract_target_file(prompt: str, expected: str | None) -> None:
    assert extract_target_file(prompt) == expected


def test_vague_create_request_needs_a_target(tmp_path: Path) -> None:
    decision = needs_clarification("create something", tmp_path)
    assert decision.needed is True
    assert decision.reason == "target_file_ambiguous"
    assert decision.original_prompt == "create something"


def test_vague_modify_request_needs_an_action(tmp_path: Path) -> None:
    decision = needs_clarification("fix it", tmp_path)
    assert decision.needed is True
    assert decision.reason == "target_action_ambiguous"


def test_creating_an_existing_file_needs_confirmation(tmp_path: Path) -> None:
    (tmp_path / "README.md").write_text("# existing\n", encoding="utf-8")
    decision = needs_clarification("Create README.md", tmp_path)
    assert decision.needed is True
    assert decision.reason == "target_file_exists"
    assert decision.target_file == "README.md"


def test_updating_an_existing_file_proceeds(tmp_path: Path) -> None:
    (tmp_path / "README.md").write_text("# existing\n", encoding="utf-8")
    decision = needs_clarification("Update README.md with install steps", tmp_path)
    assert decision.needed is False
    assert decision.target_file == "README.md"


def test_creating_a_new_file_proceeds(tmp_path: Path) -> None:
    decision = needs_clarification("Create docs/guide.md with install steps", tmp_path)
    assert decision.needed is False
    assert decision.target_file == "docs/guide.md"


@pytest.mark.parametrize(
    "prompt",
    ["Summarize the architecture", "Add a login page", "Refactor the payment module"],
)
def test_specific_requests_pass_the_gate(prompt: str, tmp_path: Path) -> None:
    assert needs_clarification(prompt, tmp_path).needed is False


def test_is_truly_ambiguous() -> None:
    assert is_truly_ambiguous("make that") is True
    assert is_truly_ambiguous("make a changelog") is False
