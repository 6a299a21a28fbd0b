from pathlib import Path

import pytest

from proofrunner.evidence import (
    FileStat,
    attach_evidence,
    build_report,
    derive_status,
    diff,
    normalize_claim,
    snapshot,
    verify,
)
from proofrunner.models import ExecutorResult, VerifiedFile


def _claiming(*paths: str, status: str = "COMPLETE") -> ExecutorResult:
    return ExecutorResult(
        executed=True,
        status=status,
        output="Created " + ", ".join(paths),
        files_modified=list(paths),
    )


def test_snapshot_skips_hidden_and_dependency_directories(tmp_path: Path) -> None:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.py").write_text("print('hi')\n", encoding="utf-8")
    (tmp_path / ".git").mkdir()
    (tmp_path / ".git" / "HEAD").write_text("ref: refs/heads/main\n", encoding="utf-8")
    (tmp_path / "node_modules" / "pkg").mkdir(parents=True)
    (tmp_path / "node_modules" / "pkg" / "index.js").write_text("", encoding="utf-8")
    (tmp_path / "__pycache__").mkdir()
    (tmp_path / "__pycache__" / "app.cpython-312.pyc").write_bytes(b"\x00")
    (tmp_path / ".env").write_text("SECRET=1\n", encoding="utf-8")

    files = snapshot(tmp_path)

    assert set(files) == {"src/app.py"}
    assert files["src/app.py"].size == len("print('hi')\n")


def test_snapshot_of_missing_directory_is_empty(tmp_path: Path) -> None:
    assert snapshot(tmp_path / "missing") == {}


def test_diff_reports_new_and_changed_files_only() -> None:
    before = {
        "same.py": FileStat(mtime_ns=1, size=10),
        "edited.py": FileStat(mtime_ns=1, size=10),
        "deleted.py": FileStat(mtime_ns=1, size=10),
    }
    after = {
        "same.py": FileStat(mtime_ns=1, size=10),
        "edited.py": FileStat(mtime_ns=2, size=10),
        "new.py": FileStat(mtime_ns=3, size=4),
    }
    assert diff(before, after) == ["edited.py", "new.py"]


def test_normalize_claim_relativizes_absolute_paths(tmp_path: Path) -> None:
    inside = tmp_path / "docs" / "guide.md"
    assert normalize_claim(str(inside), tmp_path) == "docs/guide.md"
    assert normalize_claim("  docs/guide.md ", tmp_path) == "docs/guide.md"


def test_verify_classifies_existing_missing_and_outside_claims(tmp_path: Path) -> None:
    work = tmp_path / "work"
    work.mkdir()
    (work / "README.md").write_text("# Project\n\nUsage notes.\n", encoding="utf-8")
    (tmp_path / "outside.txt").write_text("not yours\n", encoding="utf-8")
    (work / "folder").mkdir()

    checked = verify(["README.md", "missing.md", "../outside.txt", "folder"], work)
    results = {item.path: item for item in checked}

    assert results["README.md"].exists is True
    assert results["README.md"].content_preview == "# Project\n\nUsage notes.\n"
    assert results["missing.md"].exists is False
    assert results["../outside.txt"].exists is False
    assert results["folder"].exists is False


def test_verify_limits_previews(tmp_path: Path) -> None:
    (tmp_path / "long.txt").write_text("a" * 500, encoding="utf-8")
    (tmp_path / "huge.txt").write_text("b" * 20_000, encoding="utf-8")

    long_file, huge_file = verify(["long.txt", "huge.txt"], tmp_path)

    assert long_file.content_preview == "a" * 100
    assert huge_file.exists is True
    assert huge_file.size == 20_000
    assert huge_file.content_preview is None


def test_claim_without_file_is_never_complete(tmp_path: Path) -> None:
    before = snapshot(tmp_path)
    result = attach_evidence(_claiming("README.md"), tmp_path, before, snapshot(tmp_path))

    assert result.verified_files == []
    assert result.unverified_files == ["README.md"]
    assert result.status == "NO_EVIDENCE"


def test_detected_changes_count_as_evidence_without_claims(tmp_path: Path) -> None:
    before = snapshot(tmp_path)
    (tmp_path / "out.txt").write_text("result\n", encoding="utf-8")
    after = snapshot(tmp_path)

    result = attach_evidence(
        ExecutorResult(executed=True, status="COMPLETE", output="finished"),
        tmp_path,
        before,
        after,
    )

    assert result.status == "COMPLETE"
    assert result.files_modified == ["out.txt"]
    assert [item.path for item in result.verified_files] == ["out.txt"]


def test_partially_verified_claims_are_not_complete(tmp_path: Path) -> None:
    before = snapshot(tmp_path)
    (tmp_path / "a.py").write_text("x = 1\n", encoding="utf-8")
    report = build_report(_claiming("a.py", "b.py"), tmp_path, before, snapshot(tmp_path))

    assert report.claimed == ["a.py", "b.py"]
    assert report.detected == ["a.py"]
    assert [item.path for item in report.verified_files] == ["a.py"]
    assert report.unverified_files == ["b.py"]
    assert report.status == "NO_EVIDENCE"


def test_unchanged_existing_claim_still_verifies(tmp_path: Path) -> None:
    (tmp_path / "notes.md").write_text("notes\n", encoding="utf-8")
    state = snapshot(tmp_path)

    result = attach_evidence(_claiming("notes.md"), tmp_path, state, state)

    assert result.status == "COMPLETE"
    assert result.verified_files[0].exists is True


@pytest.mark.parametrize(
    ("result", "verified", "expected"),
    [
        (ExecutorResult(executed=False, status="ERROR"), [VerifiedFile("a", True)], "ERROR"),
        (
            ExecutorResult.blocked(reason="INTERACTIVE_PROMPT", terminated_by="REPL_FAIL_CLOSED"),
            [VerifiedFile("a", True)],
            "ERROR",
        ),
        (ExecutorResult(executed=False, status="COMPLETE"), [VerifiedFile("a", True)], "ERROR"),
        (ExecutorResult(executed=True, status="INCOMPLETE"), [VerifiedFile("a", True)], "INCOMPLETE"),
        (ExecutorResult(executed=True, status="COMPLETE"), [], "NO_EVIDENCE"),
        (ExecutorResult(executed=True, status="COMPLETE"), [VerifiedFile("a", False)], "NO_EVIDENCE"),
        (ExecutorResult(executed=True, status="COMPLETE"), [VerifiedFile("a", True)], "COMPLETE"),
    ],
)
def test_derive_status(result: ExecutorResult, verified: list[VerifiedFile], expected: str) -> None:
    assert derive_status(result, verified) == expected


def test_derive_status_rejects_any_unverified_claim() -> None:
    result = ExecutorResult(executed=True, status="COMPLETE")
    assert derive_status(result, [VerifiedFile("a", True)], ["b"]) == "NO_EVIDENCE"
