from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import shutil
import time
from collections.abc import Callable
from typing import Any

from proofrunner.executors.base import Executor, ExecutorProcessError
from proofrunner.models import BlockedReason, ExecutorResult, ExecutorTask, TerminatedBy

logger = logging.getLogger(__name__)

ExecutorEventHook = Callable[[dict[str, Any]], None]

ENV_ALLOWLIST = (
    "PATH",
    "HOME",
    "USER",
    "SHELL",
    "LANG",
    "LC_ALL",
    "LC_CTYPE",
    "TERM",
    "TMPDIR",
    "DEBUG",
    "ANTHROPIC_API_KEY",
)
ENV_PREFIX_ALLOWLIST = ("XDG_",)
STREAM_LIMIT_BYTES = 8 * 1024 * 1024

INTERACTIVE_PROMPT_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"\[y/n\]",
        r"\(y/n\)",
        r"\(yes/no\)",
        r"press enter",
        r"press any key",
        r"waiting for input",
        r"would you like",
        r"do you want",
    )
]
STDIN_REQUIRED_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (r"reading from stdin", r"stdin is not a tty", r"enter your (?:password|token)")
]
FILE_CLAIM_PATTERN = re.compile(
    r"^\s*(?:Created|Updated|Modified|Wrote|Edited)\s+(?:file\s+)?[`'\"]?([\w./-]+\.\w+)[`'\"]?",
    re.IGNORECASE | re.MULTILINE,
)


async def _discard(task: asyncio.Task[bytes] | None) -> None:
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception:
        logger.debug("stderr drain failed after termination", exc_info=True)


class _Blocked(Exception):
    def __init__(self, reason: BlockedReason, terminated_by: TerminatedBy) -> None:
        super().__init__(reason)
        self.reason = reason
        self.terminated_by = terminated_by


class ClaudeCodeExecutor(Executor):
    """Runs the Claude Code CLI headless, failing closed on hangs and interactive prompts."""

    def __init__(
        self,
        binary: str = "claude",
        *,
        progress_timeout_seconds: float = 120.0,
        overall_timeout_seconds: float = 300.0,
        soft_timeout_seconds: float = 60.0,
        kill_grace_seconds: float = 5.0,
        event_hook: ExecutorEventHook | None = None,
    ) -> None:
        self.binary = binary
        self.progress_timeout_seconds = progress_timeout_seconds
        self.overall_timeout_seconds = overall_timeout_seconds
        self.soft_timeout_seconds = min(soft_timeout_seconds, progress_timeout_seconds)
        self.kill_grace_seconds = kill_grace_seconds
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def build_command(self, prompt: str) -> list[str]:
        return [
            self.binary,
            "-p",
            prompt,
            "--output-format",
            "stream-json",
            "--verbose",
            "--permission-mode",
            "acceptEdits",
        ]

    @staticmethod
    def build_env(source: dict[str, str] | None = None) -> dict[str, str]:
        source = dict(os.environ) if source is None else source
        env = {
            key: value
            for key, value in source.items()
            if key in ENV_ALLOWLIST or key.startswith(ENV_PREFIX_ALLOWLIST)
        }
        env["CI"] = "true"
        env["NO_COLOR"] = "1"
        return env

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        message = event.get("message")
        if isinstance(message, dict):
            event = message
        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                if isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "".join(parts)
        result = event.get("result")
        if isinstance(result, str):
            return result
        delta = event.get("delta")
        if isinstance(delta, str):
            return delta
        return ""

    @staticmethod
    def detect_blocking_prompt(text: str) -> BlockedReason | None:
        if any(pattern.search(text) for pattern in STDIN_REQUIRED_PATTERNS):
            return "STDIN_REQUIRED"
        if any(pattern.search(text) for pattern in INTERACTIVE_PROMPT_PATTERNS):
            return "INTERACTIVE_PROMPT"
        return None

    @staticmethod
    def parse_file_claims(output: str) -> list[str]:
        claims: list[str] = []
        for match in FILE_CLAIM_PATTERN.finditer(output):
            path = match.group(1).rstrip(".")
            if path not in claims:
                claims.append(path)
        return claims

    async def is_available(self) -> bool:
        return shutil.which(self.binary) is not None

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.terminate()
            await asyncio.wait_for(process.wait(), timeout=self.kill_grace_seconds)
        except TimeoutError:
            logger.warning("executor pid %s ignored SIGTERM, killing", process.pid)
            process.kill()
            await process.wait()
        except ProcessLookupError:
            pass

    async def _read_line(
        self, stream: asyncio.StreamReader, task_id: str, deadline: float
    ) -> bytes:
        """Wait for one line, bounded by both the progress and the overall deadline."""
        waited = 0.0
        warned = False
        while True:
            remaining_overall = deadline - time.monotonic()
            if remaining_overall <= 0:
                raise _Blocked("TIMEOUT", "TIMEOUT")
            step = self.progress_timeout_seconds - waited
            if not warned:
                step = min(step, self.soft_timeout_seconds)
            step = min(step, remaining_overall)
            try:
                return await asyncio.wait_for(stream.readline(), timeout=step)
            except TimeoutError:
                waited += step
                if time.monotonic() >= deadline:
                    raise _Blocked("TIMEOUT", "TIMEOUT") from None
                if waited >= self.progress_timeout_seconds:
                    raise _Blocked("TIMEOUT", "REPL_FAIL_CLOSED") from None
                if not warned:
                    warned = True
                    self._emit(
                        {
                            "event": "SOFT_TIMEOUT_WARNING",
                            "task_id": task_id,
                            "silent_seconds": round(waited, 3),
                        }
                    )

    async def execute(self, task: ExecutorTask) -> ExecutorResult:
        started = time.monotonic()
        deadline = started + self.overall_timeout_seconds
        cwd = str(task.working_dir)
        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_command(task.prompt),
                cwd=cwd,
                env=self.build_env(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT_BYTES,
            )
        except FileNotFoundError as exc:
            raise ExecutorProcessError(
                f"Claude binary not found: {self.binary}",
                executor="claude",
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise ExecutorProcessError(
                "Claude executor did not expose stdout.", executor="claude", retriable=False
            )

        stderr_task = (
            asyncio.create_task(process.stderr.read()) if process.stderr is not None else None
        )
        chunks: list[str] = []
        parse_buffer = ""
        try:
            while True:
                raw_line = await self._read_line(process.stdout, task.id, deadline)
                if not raw_line:
                    break
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                candidate = f"{parse_buffer}{line}" if parse_buffer else line
                try:
                    event = json.loads(candidate)
                    parse_buffer = ""
                except json.JSONDecodeError:
                    if candidate.count("{") > candidate.count("}"):
                        parse_buffer = candidate
                        continue
                    parse_buffer = ""
                    content = line
                else:
                    content = self._extract_content(event) if isinstance(event, dict) else ""
                if not content:
                    continue
                chunks.append(content)
                reason = self.detect_blocking_prompt(content)
                if reason:
                    raise _Blocked(reason, "REPL_FAIL_CLOSED")
            return_code = await process.wait()
            stderr_data = await stderr_task if stderr_task is not None else b""
        except _Blocked as blocked:
            await self._terminate(process)
            await _discard(stderr_task)
            duration_ms = int((time.monotonic() - started) * 1000)
            logger.warning(
                "executor blocked on task %s: %s (%s)", task.id, blocked.reason, blocked.terminated_by
            )
            return ExecutorResult.blocked(
                reason=blocked.reason,
                terminated_by=blocked.terminated_by,
                output="\n".join(chunks),
                duration_ms=duration_ms,
                cwd=cwd,
            )
        except ValueError as exc:
            # StreamReader signals an over-limit line as ValueError.
            await self._terminate(process)
            await _discard(stderr_task)
            raise ExecutorProcessError(
                f"Claude executor emitted an unreadable stream line: {exc}",
                executor="claude",
                retriable=False,
            ) from exc
        except BaseException:
            await self._terminate(process)
            await _discard(stderr_task)
            raise

        if parse_buffer:
            chunks.append(parse_buffer)
        stderr_output = stderr_data.decode("utf-8", errors="replace").strip()
        output = "\n".join(chunks)
        duration_ms = int((time.monotonic() - started) * 1000)
        if return_code != 0:
            return ExecutorResult(
                executed=True,
                status="ERROR",
                output=output,
                error=f"Claude executor failed with exit code {return_code}: {stderr_output}",
                duration_ms=duration_ms,
                cwd=cwd,
            )
        return ExecutorResult(
            executed=True,
            status="COMPLETE",
            output=output,
            files_modified=self.parse_file_claims(output),
            duration_ms=duration_ms,
            cwd=cwd,
        )
