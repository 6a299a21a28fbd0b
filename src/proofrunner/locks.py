from __future__ import annotations

import os
import threading
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal
from uuid import uuid4

LockType = Literal["READ", "WRITE"]

DEFAULT_MAX_EXECUTORS = 4

LOCK_CONFLICT = "E401"
LOCK_NOT_FOUND = "E402"
DEADLOCK_DETECTED = "E403"
EXECUTOR_LIMIT_EXCEEDED = "E404"


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class LockManagerError(RuntimeError):
    """Raised when a lock or executor slot cannot be acquired or released."""

    def __init__(
        self,
        message: str,
        *,
        code: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.details = details or {}

    @property
    def retriable(self) -> bool:
        return self.code in {LOCK_CONFLICT, EXECUTOR_LIMIT_EXCEEDED}


@dataclass(slots=True, frozen=True)
class Lock:
    lock_id: str
    resource_path: str
    type: LockType
    holder: str
    acquired_at: str = field(default_factory=_utcnow_iso)


class LockManager:
    """Non-blocking READ/WRITE resource locks plus a bounded executor semaphore.

    Every check and the mutation that follows it run under one mutex, so
    concurrent callers (threads or interleaved coroutines) can never both pass
    the same conflict check. Nothing here waits or retries: a conflict is an
    immediate ``LockManagerError`` and the caller decides what to do next.
    """

    def __init__(self, max_executors: int = DEFAULT_MAX_EXECUTORS) -> None:
        if max_executors < 1:
            raise ValueError("max_executors must be at least 1")
        self.max_executors = max_executors
        self._mutex = threading.Lock()
        self._locks: dict[str, Lock] = {}
        self._resources: dict[str, dict[str, Lock]] = {}
        self._semaphore_holders: set[str] = set()

    @staticmethod
    def normalize_path(resource_path: str | os.PathLike[str]) -> str:
        return os.path.normpath(os.fspath(resource_path))

    def acquire_lock(
        self,
        resource_path: str | os.PathLike[str],
        holder: str,
        lock_type: LockType,
    ) -> Lock:
        if lock_type not in ("READ", "WRITE"):
            raise ValueError(f"Unsupported lock type: {lock_type}")
        path = self.normalize_path(resource_path)
        with self._mutex:
            existing = list(self._resources.get(path, {}).values())
            if lock_type == "WRITE" and existing:
                raise LockManagerError(
                    f"Cannot acquire WRITE lock on {path}: already locked by "
                    + ", ".join(sorted({lock.holder for lock in existing})),
                    code=LOCK_CONFLICT,
                    details={"resource_path": path, "holder": holder, "type": lock_type},
                )
            writers = [lock for lock in existing if lock.type == "WRITE"]
            if lock_type == "READ" and writers:
                raise LockManagerError(
                    f"Cannot acquire READ lock on {path}: WRITE lock held by {writers[0].holder}",
                    code=LOCK_CONFLICT,
                    details={"resource_path": path, "holder": holder, "type": lock_type},
                )
            lock = Lock(
                lock_id=f"lock-{uuid4().hex[:12]}",
                resource_path=path,
                type=lock_type,
                holder=holder,
            )
            self._locks[lock.lock_id] = lock
            self._resources.setdefault(path, {})[lock.lock_id] = lock
            return lock

    def release_lock(self, lock_id: str) -> None:
        with self._mutex:
            self._release_unlocked(lock_id)

    def _release_unlocked(self, lock_id: str) -> Lock:
        lock = self._locks.pop(lock_id, None)
        if lock is None:
            raise LockManagerError(
                f"Lock not found: {lock_id}",
                code=LOCK_NOT_FOUND,
                details={"lock_id": lock_id},
            )
        holders = self._resources.get(lock.resource_path, {})
        holders.pop(lock_id, None)
        if not holders:
            self._resources.pop(lock.resource_path, None)
        return lock

    def acquire_multiple_locks(
        self,
        requests: Iterable[tuple[str | os.PathLike[str], LockType]],
        holder: str,
    ) -> list[Lock]:
        """Acquire several locks in path order; on any conflict release what was taken."""
        ordered = sorted(
            ((self.normalize_path(path), lock_type) for path, lock_type in requests),
            key=lambda item: item[0],
        )
        acquired: list[Lock] = []
        try:
            for path, lock_type in ordered:
                acquired.append(self.acquire_lock(path, holder, lock_type))
        except LockManagerError:
            for lock in reversed(acquired):
                self._release_quietly(lock.lock_id)
            raise
        return acquired

    def _release_quietly(self, lock_id: str) -> bool:
        with self._mutex:
            if lock_id not in self._locks:
                return False
            self._release_unlocked(lock_id)
            return True

    def acquire_global_semaphore(self, holder: str) -> None:
        with self._mutex:
            if holder in self._semaphore_holders:
                raise LockManagerError(
                    f"Executor slot already held by {holder}",
                    code=LOCK_CONFLICT,
                    details={"holder": holder},
                )
            if len(self._semaphore_holders) >= self.max_executors:
                raise LockManagerError(
                    f"Executor limit exceeded: {len(self._semaphore_holders)}/"
                    f"{self.max_executors} slots in use",
                    code=EXECUTOR_LIMIT_EXCEEDED,
                    details={
                        "holder": holder,
                        "active": sorted(self._semaphore_holders),
                        "max_executors": self.max_executors,
                    },
                )
            self._semaphore_holders.add(holder)

    def release_global_semaphore(self, holder: str) -> bool:
        with self._mutex:
            if holder not in self._semaphore_holders:
                return False
            self._semaphore_holders.discard(holder)
            return True

    @contextmanager
    def hold(
        self,
        requests: Iterable[tuple[str | os.PathLike[str], LockType]],
        holder: str,
    ) -> Iterator[list[Lock]]:
        locks = self.acquire_multiple_locks(requests, holder)
        try:
            yield locks
        finally:
            for lock in reversed(locks):
                self._release_quietly(lock.lock_id)

    @contextmanager
    def executor_slot(self, holder: str) -> Iterator[None]:
        self.acquire_global_semaphore(holder)
        try:
            yield
        finally:
            self.release_global_semaphore(holder)

    def release_all(self, holder_prefix: str) -> int:
        """Drop every lock and slot whose holder is ``holder_prefix`` or nested under it."""

        def _owned(holder: str) -> bool:
            return holder == holder_prefix or holder.startswith(f"{holder_prefix}:")

        released = 0
        with self._mutex:
            for lock_id in [lock.lock_id for lock in self._locks.values() if _owned(lock.holder)]:
                self._release_unlocked(lock_id)
                released += 1
            for holder in [item for item in self._semaphore_holders if _owned(item)]:
                self._semaphore_holders.discard(holder)
                released += 1
        return released

    def get_active_locks(self) -> list[Lock]:
        with self._mutex:
            return sorted(self._locks.values(), key=lambda lock: (lock.resource_path, lock.acquired_at))

    def get_locks_by_holder(self, holder: str) -> list[Lock]:
        return [lock for lock in self.get_active_locks() if lock.holder == holder]

    def get_locks_by_resource(self, resource_path: str | os.PathLike[str]) -> list[Lock]:
        path = self.normalize_path(resource_path)
        with self._mutex:
            return list(self._resources.get(path, {}).values())

    def is_locked(self, resource_path: str | os.PathLike[str]) -> bool:
        return bool(self.get_locks_by_resource(resource_path))

    def active_executor_count(self) -> int:
        with self._mutex:
            return len(self._semaphore_holders)

    @staticmethod
    def detect_deadlock(wait_graph: Mapping[str, Iterable[str]]) -> list[str] | None:
        """Return a holder cycle in a wait-for graph, or None when the graph is acyclic."""
        graph = {node: list(targets) for node, targets in wait_graph.items()}
        visiting: list[str] = []
        on_path: set[str] = set()
        done: set[str] = set()

        def _visit(node: str) -> list[str] | None:
            visiting.append(node)
            on_path.add(node)
            for target in graph.get(node, []):
                if target in on_path:
                    start = visiting.index(target)
                    return [*visiting[start:], target]
                if target not in done:
                    cycle = _visit(target)
                    if cycle:
                        return cycle
            visiting.pop()
            on_path.discard(node)
            done.add(node)
            return None

        for node in sorted(graph):
            if node not in done:
                cycle = _visit(node)
                if cycle:
                    return cycle
        return None

    def assert_no_deadlock(self, wait_graph: Mapping[str, Iterable[str]]) -> None:
        cycle = self.detect_deadlock(wait_graph)
        if cycle:
            raise LockManagerError(
                "Deadlock detected: " + " -> ".join(cycle),
                code=DEADLOCK_DETECTED,
                details={"cycle": cycle},
            )
