"""Task, result and pool-statistics types for the worker pool."""

from __future__ import annotations

import collections
import dataclasses
import threading
from datetime import datetime
from enum import Enum
from typing import Any

from ..workspaces.models import Workspace


class TaskStatus(str, Enum):
    """State of a worker task.

    ``queued -> starting -> running -> {completed, failed, timed_out}``.
    ``starting -> failed`` only happens when no process was spawned.
    """

    QUEUED = "queued"
    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def holds_slot(self) -> bool:
        return self in (TaskStatus.STARTING, TaskStatus.RUNNING)


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.TIMED_OUT})

_ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.QUEUED: frozenset({TaskStatus.STARTING, TaskStatus.FAILED}),
    TaskStatus.STARTING: frozenset({TaskStatus.RUNNING, TaskStatus.FAILED}),
    TaskStatus.RUNNING: TERMINAL_STATUSES,
}


def can_transition(current: TaskStatus, new: TaskStatus) -> bool:
    return new in _ALLOWED_TRANSITIONS.get(current, frozenset())


@dataclasses.dataclass(frozen=True)
class LogChunk:
    stream: str  # "stdout" or "stderr"
    text: str
    timestamp: datetime


class LogBuffer:
    """Captured worker output.

    Full stdout is retained for output parsing; the combined log keeps only
    the most recent ``tail_bytes`` characters.
    """

    def __init__(self, tail_bytes: int = 64 * 1024) -> None:
        self._lock = threading.Lock()
        self._tail_bytes = tail_bytes
        self._tail: collections.deque[LogChunk] = collections.deque()
        self._tail_size = 0
        self._stdout: list[str] = []
        self._stderr: list[str] = []

    def append(self, stream: str, text: str) -> LogChunk:
        chunk = LogChunk(stream=stream, text=text, timestamp=datetime.now())
        with self._lock:
            (self._stderr if stream == "stderr" else self._stdout).append(text)
            self._tail.append(chunk)
            self._tail_size += len(text)
            while self._tail_size > self._tail_bytes and len(self._tail) > 1:
                removed = self._tail.popleft()
                self._tail_size -= len(removed.text)
        return chunk

    @property
    def stdout(self) -> str:
        with self._lock:
            return "".join(self._stdout)

    @property
    def stderr(self) -> str:
        with self._lock:
            return "".join(self._stderr)

    def tail(self) -> list[LogChunk]:
        with self._lock:
            return list(self._tail)


@dataclasses.dataclass
class WorkerTask:
    """One scheduled execution of a worker against a borrowed workspace.

    Mutated only by ``ProcessOrchestrator`` under its pool lock.
    """

    id: str
    workspace: Workspace
    payload: dict[str, Any]
    timeout_s: float
    status: TaskStatus = TaskStatus.QUEUED
    submitted_at: datetime = dataclasses.field(default_factory=datetime.now)
    started_at: datetime | None = None
    ended_at: datetime | None = None
    logs: LogBuffer = dataclasses.field(default_factory=LogBuffer)
    outputs: dict[str, Any] | list[Any] | None = None
    output_strategy: str | None = None
    parse_warning: str | None = None
    exit_code: int | None = None
    error: str | None = None
    pid: int | None = None

    @property
    def duration_s(self) -> float | None:
        if self.started_at is None or self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()

    def to_result(self) -> TaskResult:
        return TaskResult(
            task_id=self.id,
            workspace_id=self.workspace.id,
            variant_name=self.workspace.variant_name,
            workspace_path=str(self.workspace.path),
            status=self.status,
            outputs=self.outputs,
            output_strategy=self.output_strategy,
            parse_warning=self.parse_warning,
            exit_code=self.exit_code,
            error=self.error,
            stdout=self.logs.stdout,
            stderr=self.logs.stderr,
            submitted_at=self.submitted_at,
            started_at=self.started_at,
            ended_at=self.ended_at,
        )


@dataclasses.dataclass(frozen=True)
class TaskResult:
    """Immutable snapshot of a task, typically taken once it is terminal."""

    task_id: str
    workspace_id: str
    variant_name: str
    workspace_path: str
    status: TaskStatus
    outputs: dict[str, Any] | list[Any] | None
    output_strategy: str | None
    parse_warning: str | None
    exit_code: int | None
    error: str | None
    stdout: str
    stderr: str
    submitted_at: datetime
    started_at: datetime | None
    ended_at: datetime | None

    @property
    def success(self) -> bool:
        return self.status is TaskStatus.COMPLETED

    @property
    def duration_s(self) -> float | None:
        if self.started_at is None or self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()

    def screenshots(self) -> list[str]:
        """Screenshot paths reported by the worker, from either output shape."""
        outputs = self.outputs
        if isinstance(outputs, dict):
            shots = outputs.get("screenshots") or []
            if isinstance(shots, list):
                return [str(s) for s in shots if s]
        return []


@dataclasses.dataclass
class PoolStats:
    """Aggregate pool counters.

    ``timed_out``, ``cancelled`` and ``drained`` are subsets of ``failed``.
    ``drained`` counts queued tasks failed by ``cancel_all`` without ever
    starting, so every started task that did not complete is in
    ``failed - drained``. Once every submitted task is terminal,
    ``completed + failed == submitted`` and ``started + drained == submitted``.
    """

    capacity: int
    submitted: int = 0
    started: int = 0
    active: int = 0
    queued: int = 0
    completed: int = 0
    failed: int = 0
    timed_out: int = 0
    cancelled: int = 0
    drained: int = 0
    peak_active: int = 0

    def to_dict(self) -> dict[str, int]:
        return dataclasses.asdict(self)
