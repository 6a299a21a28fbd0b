from __future__ import annotations

import os
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from pathlib import Path

from proofrunner.models import ExecutorResult, VerifiedFile

EXCLUDED_DIRS = frozenset(
    {"node_modules", "__pycache__", "venv", ".venv", "dist", "build", "site-packages"}
)
PREVIEW_MAX_BYTES = 10_000
PREVIEW_CHARS = 100


@dataclass(slots=True, frozen=True)
class FileStat:
    mtime_ns: int
    size: int


FileSnapshot = dict[str, FileStat]


@dataclass(slots=True)
class EvidenceReport:
    detected: list[str] = field(default_factory=list)
    claimed: list[str] = field(default_factory=list)
    verified_files: list[VerifiedFile] = field(default_factory=list)
    unverified_files: list[str] = field(default_factory=list)
    status: str = "NO_EVIDENCE"


def _is_excluded(name: str, excluded: frozenset[str]) -> bool:
    return name.startswith(".") or name in excluded


def snapshot(root_dir: Path, *, excluded: frozenset[str] = EXCLUDED_DIRS) -> FileSnapshot:
    root = Path(root_dir).resolve()
    files: FileSnapshot = {}
    if not root.is_dir():
        return files
    for current, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(name for name in dirnames if not _is_excluded(name, excluded))
        for name in sorted(filenames):
            if name.startswith("."):
                continue
            path = Path(current) / name
            try:
                stat = path.stat()
            except OSError:
                # Removed between listing and stat.
                continue
            files[path.relative_to(root).as_posix()] = FileStat(
                mtime_ns=stat.st_mtime_ns, size=stat.st_size
            )
    return files


def diff(before: FileSnapshot, after: FileSnapshot) -> list[str]:
    """Paths that are new in ``after`` or whose mtime/size moved. Deletions are not changes."""
    changed: list[str] = []
    for path, stat in sorted(after.items()):
        previous = before.get(path)
        if previous is None or previous != stat:
            changed.append(path)
    return changed


def normalize_claim(claim: str, working_dir: Path) -> str:
    """Express a claimed path relative to ``working_dir`` when it lies inside it."""
    candidate = Path(claim.strip())
    root = Path(working_dir).resolve()
    if candidate.is_absolute():
        try:
            return candidate.resolve().relative_to(root).as_posix()
        except ValueError:
            return str(candidate)
    return candidate.as_posix()


def _read_preview(path: Path, size: int) -> str | None:
    if size >= PREVIEW_MAX_BYTES:
        return None
    try:
        with path.open("r", encoding="utf-8", errors="replace") as handle:
            return handle.read(PREVIEW_CHARS)
    except OSError:
        return None


def verify(claimed_paths: Iterable[str], working_dir: Path) -> list[VerifiedFile]:
    root = Path(working_dir).resolve()
    results: list[VerifiedFile] = []
    for claim in claimed_paths:
        target = (root / claim).resolve()
        if target != root and root not in target.parents:
            results.append(VerifiedFile(path=claim, exists=False))
            continue
        if not target.is_file():
            results.append(VerifiedFile(path=claim, exists=False))
            continue
        size = target.stat().st_size
        results.append(
            VerifiedFile(
                path=claim,
                exists=True,
                size=size,
                content_preview=_read_preview(target, size),
            )
        )
    return results


def derive_status(
    result: ExecutorResult,
    verified_files: Sequence[VerifiedFile],
    unverified_files: Sequence[str] = (),
) -> str:
    """Decide the task status from independent evidence.

    The executor's own ``status`` can only make the outcome worse: ERROR,
    BLOCKED and INCOMPLETE pass through, but COMPLETE is granted solely when
    at least one file was verified on disk and no claim failed verification.
    """
    if result.executor_blocked or result.status == "BLOCKED":
        return "ERROR"
    if result.status == "ERROR" or not result.executed:
        return "ERROR"
    if result.status == "INCOMPLETE":
        return "INCOMPLETE"
    if unverified_files:
        return "NO_EVIDENCE"
    if not any(item.exists for item in verified_files):
        return "NO_EVIDENCE"
    return "COMPLETE"


def _unique(items: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for item in items:
        if item and item not in seen:
            seen.add(item)
            ordered.append(item)
    return ordered


def build_report(
    result: ExecutorResult,
    working_dir: Path,
    before: FileSnapshot,
    after: FileSnapshot,
) -> EvidenceReport:
    claimed = _unique(normalize_claim(item, working_dir) for item in result.files_modified)
    detected = diff(before, after)
    checked = verify(_unique([*claimed, *detected]), working_dir)
    verified = [item for item in checked if item.exists]
    unverified = [item.path for item in checked if not item.exists]
    return EvidenceReport(
        detected=detected,
        claimed=claimed,
        verified_files=verified,
        unverified_files=unverified,
        status=derive_status(result, verified, unverified),
    )


def attach_evidence(
    result: ExecutorResult,
    working_dir: Path,
    before: FileSnapshot,
    after: FileSnapshot,
) -> ExecutorResult:
    """Replace whatever the executor said about files with what is actually on disk."""
    report = build_report(result, working_dir, before, after)
    return replace(
        result,
        files_modified=_unique([*report.claimed, *report.detected]),
        verified_files=report.verified_files,
        unverified_files=report.unverified_files,
        status=report.status,
    )
