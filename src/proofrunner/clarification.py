from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

ClarificationReason = Literal[
    "target_file_exists", "target_file_ambiguous", "target_action_ambiguous"
]

FILE_EXTENSIONS = (
    "py|pyi|toml|cfg|ini|ts|tsx|js|jsx|json|md|rst|txt|yaml|yml|html|css|sh|sql|go|rs|java|rb"
)
CREATE_VERBS = re.compile(r"\b(?:create|make|write|add|generate|new)\b", re.IGNORECASE)
MODIFY_VERBS = re.compile(
    r"\b(?:fix|change|update|modify|edit|refactor|rename)\b", re.IGNORECASE
)
PATH_WITH_EXTENSION = re.compile(
    rf"(?:^|(?<=[\s\"'`(]))((?:[\w.-]+/)*[\w-][\w.-]*\.(?:{FILE_EXTENSIONS}))(?=$|[\s\"'`),:;!?]|\.(?:\s|$))",
    re.IGNORECASE,
)
FILE_LABEL = re.compile(
    rf"\bfile\s*(?:name)?\s*:?\s*([\w.-]+\.(?:{FILE_EXTENSIONS}))\b", re.IGNORECASE
)
WORD = re.compile(r"\b[a-zA-Z][a-zA-Z0-9_-]*\b")
VAGUE_WORDS = re.compile(r"\b(?:something|some|thing|stuff|it|that|this)\b", re.IGNORECASE)
NON_TARGET_WORDS = frozenset(
    {
        "create", "make", "write", "add", "generate", "new", "update", "fix", "change",
        "modify", "edit", "refactor", "rename", "file", "something", "some", "thing",
        "stuff", "that", "this", "with", "and", "the", "for", "from", "please",
    }
)


@dataclass(slots=True)
class ClarificationDecision:
    needed: bool
    reason: ClarificationReason | None = None
    target_file: str | None = None
    original_prompt: str | None = None


def extract_target_file(prompt: str) -> str | None:
    match = PATH_WITH_EXTENSION.search(prompt) or FILE_LABEL.search(prompt)
    if match:
        return match.group(1)
    return None


def is_truly_ambiguous(prompt: str) -> bool:
    """True when nothing in the prompt could name a target ("create something")."""
    words = WORD.findall(prompt)
    candidates = [word for word in words if len(word) >= 3 and word.lower() not in NON_TARGET_WORDS]
    if candidates:
        return False
    if VAGUE_WORDS.search(prompt):
        return True
    return not [word for word in words if word.lower() not in NON_TARGET_WORDS]


def needs_clarification(prompt: str, project_dir: Path) -> ClarificationDecision:
    """Fail-closed gate: decide whether a prompt is too ambiguous to hand to an executor."""
    creates = CREATE_VERBS.search(prompt) is not None
    modifies = MODIFY_VERBS.search(prompt) is not None
    if not creates and not modifies:
        return ClarificationDecision(needed=False)

    target = extract_target_file(prompt)
    if target:
        if creates and not modifies and (Path(project_dir) / target).exists():
            return ClarificationDecision(
                needed=True,
                reason="target_file_exists",
                target_file=target,
                original_prompt=prompt,
            )
        return ClarificationDecision(needed=False, target_file=target)

    if is_truly_ambiguous(prompt):
        return ClarificationDecision(
            needed=True,
            reason="target_file_ambiguous" if creates else "target_action_ambiguous",
            original_prompt=prompt,
        )
    return ClarificationDecision(needed=False)
