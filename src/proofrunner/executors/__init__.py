from proofrunner.executors.base import (
    Executor,
    ExecutorError,
    ExecutorProcessError,
    ExecutorTimeoutError,
)
from proofrunner.executors.claude import ClaudeCodeExecutor

__all__ = [
    "ClaudeCodeExecutor",
    "Executor",
    "ExecutorError",
    "ExecutorProcessError",
    "ExecutorTimeoutError",
]
