from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Literal

ExecutionMode = Literal["auto", "sequential", "parallel"]

CONFIG_FILENAME = "proofrunner.toml"

DEFAULT_TODO_PATTERNS = [r"\bTODO\b", r"\bFIXME\b", r"\bTBD\b", r"\bHACK\b", r"\bXXX\b"]
DEFAULT_OMISSION_PATTERNS = [
    r"\.\.\.(?!\s*\w)",
    r"//\s*etc\.",
    r"//\s*remaining",
    r"//\s*and so on",
    r"//\s*\.\.\.",
    r"#\s*\.\.\.",
    r"#\s*rest of",
]
DEFAULT_EARLY_TERMINATION_PATTERNS = [
    r"(?i)\bthis completes\b",
    r"(?im)^done\.$",
    r"(?i)\bthat's all\b",
]


class ConfigError(RuntimeError):
    """Raised when configuration is missing or malformed."""

    code = "E101"


@dataclass(slots=True)
class ExecutorConfig:
    binary: str = "claude"
    progress_timeout_ms: int = 120_000
    overall_timeout_ms: int = 300_000
    soft_timeout_ms: int = 60_000


@dataclass(slots=True)
class LocksConfig:
    max_concurrent_executors: int = 4


@dataclass(slots=True)
class ReviewConfig:
    max_iterations: int = 3
    retry_delay_ms: int = 1000
    escalate_on_max: bool = True
    criteria: list[str] = field(default_factory=lambda: ["Q1", "Q2", "Q3", "Q4", "Q5", "Q6"])
    todo_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_TODO_PATTERNS))
    omission_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_OMISSION_PATTERNS))
    early_termination_patterns: list[str] = field(
        default_factory=lambda: list(DEFAULT_EARLY_TERMINATION_PATTERNS)
    )


@dataclass(slots=True)
class ChunkingConfig:
    enabled: bool = True
    auto_detect: bool = True
    min_subtasks: int = 2
    max_subtasks: int = 10
    execution_mode: ExecutionMode = "auto"
    fail_fast: bool = False
    continue_on_subtask_failure: bool = False


@dataclass(slots=True)
class RetryConfig:
    max_retries: int = 2
    retry_delay_ms: int = 2000
    backoff_multiplier: float = 1.5
    retry_on: list[str] = field(default_factory=lambda: ["INCOMPLETE", "ERROR", "TIMEOUT"])


@dataclass(slots=True)
class SessionConfig:
    evidence_dir: str = ".proofrunner/evidence"
    continue_on_task_failure: bool = False


_SECTIONS: dict[str, type] = {
    "executor": ExecutorConfig,
    "locks": LocksConfig,
    "review": ReviewConfig,
    "chunking": ChunkingConfig,
    "retry": RetryConfig,
    "session": SessionConfig,
}


def _build_section(name: str, data: Any) -> Any:
    section_type = _SECTIONS[name]
    if data is None:
        return section_type()
    if not isinstance(data, dict):
        raise ConfigError(f"Config section [{name}] must be a table")
    known = {item.name for item in fields(section_type)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown keys in [{name}]: {', '.join(unknown)}")
    return section_type(**data)


@dataclass(slots=True)
class RunnerConfig:
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    locks: LocksConfig = field(default_factory=LocksConfig)
    review: ReviewConfig = field(default_factory=ReviewConfig)
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    session: SessionConfig = field(default_factory=SessionConfig)

    @classmethod
    def default(cls) -> RunnerConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> RunnerConfig:
        config = cls(**{name: _build_section(name, data.get(name)) for name in _SECTIONS})
        config.validate()
        return config

    def validate(self) -> None:
        if self.review.max_iterations < 1:
            raise ConfigError("review.max_iterations must be at least 1")
        if self.locks.max_concurrent_executors < 1:
            raise ConfigError("locks.max_concurrent_executors must be at least 1")
        if self.chunking.execution_mode not in ("auto", "sequential", "parallel"):
            raise ConfigError(f"Unsupported chunking.execution_mode: {self.chunking.execution_mode}")
        if self.chunking.min_subtasks > self.chunking.max_subtasks:
            raise ConfigError("chunking.min_subtasks cannot exceed chunking.max_subtasks")
        if self.retry.max_retries < 0 or self.retry.backoff_multiplier < 1.0:
            raise ConfigError("retry.max_retries must be >= 0 and backoff_multiplier >= 1")

    def to_dict(self) -> dict:
        rendered: dict[str, dict[str, Any]] = {}
        for name in _SECTIONS:
            section = getattr(self, name)
            rendered[name] = {
                item.name: (
                    list(getattr(section, item.name))
                    if isinstance(getattr(section, item.name), list)
                    else getattr(section, item.name)
                )
                for item in fields(section)
            }
        return rendered


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: RunnerConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in _SECTIONS:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path, *, required: bool = False) -> RunnerConfig:
    if not path.exists():
        if required:
            raise ConfigError(f"Config file not found: {path}")
        return RunnerConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
    return RunnerConfig.from_dict(data)


def save_config(path: Path, config: RunnerConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
