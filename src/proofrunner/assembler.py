from __future__ import annotations

from collections.abc import Sequence
from importlib import resources
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from proofrunner.review import QualityCriterion, RejectionIssue

PRELUDE_FILENAMES = ("global-prelude.md", "project-prelude.md")

FALLBACK_MODIFICATION_TEMPLATE = """
## Problems were found in the previous attempt

### Detected issues
{issues}

### Failed quality criteria
{failed_criteria}

### Required corrections
Fix the points above and provide the complete implementation again.

### Previous task
{original_prompt}
""".strip()


class PromptAssembler:
    """Builds executor prompts: optional preludes first, then the task itself.

    Preludes are read from ``<project>/.proofrunner/prompts``; when none exist
    prompts pass through untouched.
    """

    template_file = "modification.md"

    def __init__(self, project_dir: Path | None = None) -> None:
        self.template_dir = (
            Path(project_dir) / ".proofrunner" / "prompts" if project_dir is not None else None
        )
        self.modification_template = self._load_template()

    def _load_template(self) -> str:
        try:
            template_path = resources.files("proofrunner.prompts").joinpath(self.template_file)
            return template_path.read_text(encoding="utf-8").strip()
        except (FileNotFoundError, ModuleNotFoundError):
            return FALLBACK_MODIFICATION_TEMPLATE

    def load_preludes(self) -> list[str]:
        if self.template_dir is None:
            return []
        preludes: list[str] = []
        for name in PRELUDE_FILENAMES:
            path = self.template_dir / name
            if path.is_file():
                content = path.read_text(encoding="utf-8").strip()
                if content:
                    preludes.append(content)
        return preludes

    def assemble(self, prompt: str) -> str:
        if not prompt.strip():
            raise ValueError("Cannot assemble an empty prompt")
        return "\n\n".join([*self.load_preludes(), prompt])

    def build_modification_prompt(
        self,
        original_prompt: str,
        failed_criteria: Sequence[QualityCriterion],
        issues: Sequence[RejectionIssue],
    ) -> str:
        issue_lines = [f"- **{issue.type}**: {issue.description}" for issue in issues]
        criteria_lines = [f"- {item.id} ({item.name}): {item.reason}" for item in failed_criteria]
        return self.modification_template.format(
            issues="\n".join(issue_lines) or "- (none reported)",
            failed_criteria="\n".join(criteria_lines) or "- (none)",
            original_prompt=original_prompt,
        )
