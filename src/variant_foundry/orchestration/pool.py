"""Bounded worker pool: admission, supervision and result collection.

Coordination state (queue, counters, task states) lives behind one lock.
Each admitted task gets a supervisor thread that spawns the worker, pumps its
output, enforces the deadline and records the outcome; the worker processes
themselves run with full OS parallelism, at most ``capacity`` at a time.
"""

from __future__ import annotations

import collections
import dataclasses
import itertools
import json
import logging
import os
import queue
import subprocess
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from datetime import datetime
from typing import Any

from ..config import PoolSettings
from ..errors import ProcessExitError, ProcessSpawnError, ProcessTimeoutError, WorkspaceBusyError
from ..workspaces.models import Workspace
from .events import EventCallback, EventChannel, EventKind, TaskEvent
from .models import LogBuffer, PoolStats, TaskResult, TaskStatus, WorkerTask, can_transition
from .output_parser import CompositeOutputParser, OutputParser
from .process import ProcessRegistry, WorkerProcess, spawn_worker, start_pump, terminate_process_group

logger = logging.getLogger(__name__)

TIMEOUT_REASON = "timeout"
_STDERR_TAIL_CHARS = 4000
_PUMP_JOIN_TIMEOUT_S = 2.0


class TaskHandle:
    """Caller-side view of a submitted task."""

    def __init__(self, task_id: str, orchestrator: ProcessOrchestrator) -> None:
        self.id = task_id
        self._orchestrator = orchestrator

    @property
    def status(self) -> TaskStatus:
        return self._orchestrator.get_task(self.id).status

    def done(self) -> bool:
        return self._orchestrator._done_event(self.id).is_set()

    def wait(self, timeout: float | None = None) -> TaskResult:
        """Block until the task is terminal.

        Raises:
            TimeoutError: If ``timeout`` elapses first.
        """
        if not self._orchestrator._done_event(self.id).wait(timeout):
            raise TimeoutError(f"Task {self.id} still running after {timeout}s")
        return self.result()

    def result(self) -> TaskResult:
        return self._orchestrator.get_task(self.id)

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        return self._orchestrator._task_channel(self.id).subscribe(callback)

    def stream(self, timeout: float | None = None) -> Iterator[TaskEvent]:
        """Yield this task's events as they happen, ending after the terminal one.

        If the task already finished, yields a single terminal state event.

        Raises:
            TimeoutError: If no event arrives within ``timeout`` seconds.
        """
        inbox: queue.Queue[TaskEvent] = queue.Queue()
        unsubscribe = self.subscribe(inbox.put)
        try:
            if self.done() and inbox.empty():
                snap = self.result()
                yield TaskEvent(kind=EventKind.STATE, task_id=self.id, status=snap.status, data=snap.error or "")
                return
            while True:
                try:
                    event = inbox.get(timeout=timeout)
                except queue.Empty:
                    raise TimeoutError(f"No event from task {self.id} within {timeout}s") from None
                yield event
                if event.is_terminal:
                    return
        finally:
            unsubscribe()

    def __repr__(self) -> str:
        return f"TaskHandle({self.id!r})"


class ProcessOrchestrator:
    """Runs at most ``capacity`` worker processes concurrently, FIFO-admitted.

    Example:
        >>> pool = ProcessOrchestrator(PoolSettings(capacity=3, worker_command=["my-worker"]))
        >>> handles = [pool.submit(ws, {"task": "ui-variation-generation"}) for ws in workspaces]
        >>> results = pool.wait_all()
        >>> pool.get_status().completed
    """

    def __init__(
        self,
        settings: PoolSettings | None = None,
        *,
        output_parser: OutputParser | None = None,
        registry: ProcessRegistry | None = None,
        extra_env: Mapping[str, str] | None = None,
    ) -> None:
        self.settings = settings or PoolSettings()
        self.capacity = self.settings.capacity
        self.output_parser: OutputParser = output_parser or CompositeOutputParser()
        self.registry = registry if registry is not None else ProcessRegistry()
        self.extra_env = dict(extra_env or {})

        self._lock = threading.Lock()
        self._changed = threading.Condition(self._lock)
        self._queue: collections.deque[WorkerTask] = collections.deque()
        self._tasks: dict[str, WorkerTask] = {}
        self._done: dict[str, threading.Event] = {}
        self._channels: dict[str, EventChannel] = {}
        self._supervisors: dict[str, threading.Thread] = {}
        self._stats = PoolStats(capacity=self.capacity)
        self._events = EventChannel()
        self._seq = itertools.count(1)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(
        self,
        workspace: Workspace,
        payload: dict[str, Any],
        timeout_s: float | None = None,
    ) -> TaskHandle:
        """Enqueue a worker run against ``workspace``; admitted at once if a slot is free.

        Raises:
            WorkspaceBusyError: If the workspace already has a non-terminal task.
            ValueError: If the workspace is destroyed or the timeout is not positive.
        """
        timeout = self.settings.task_timeout_s if timeout_s is None else float(timeout_s)
        if timeout <= 0:
            raise ValueError("timeout_s must be > 0")
        if not workspace.is_live:
            raise ValueError(f"Workspace {workspace.id} is destroyed")

        with self._lock:
            for other in self._tasks.values():
                if other.workspace.id == workspace.id and not other.status.is_terminal:
                    raise WorkspaceBusyError(f"Workspace {workspace.id} is already used by task {other.id}")

            task = WorkerTask(
                id=f"task-{next(self._seq):04d}-{workspace.id}",
                workspace=workspace,
                payload=dict(payload),
                timeout_s=timeout,
                logs=LogBuffer(self.settings.log_tail_bytes),
            )
            self._tasks[task.id] = task
            self._done[task.id] = threading.Event()
            self._channels[task.id] = EventChannel()
            self._queue.append(task)
            self._stats.submitted += 1
            admitted = self._admit_locked()

        logger.info("Submitted %s (workspace=%s, timeout=%gs)", task.id, workspace.id, timeout)
        self._publish_state(task, TaskStatus.QUEUED)
        self._launch(admitted)
        return TaskHandle(task.id, self)

    def get_status(self) -> PoolStats:
        """Snapshot of the pool counters."""
        with self._lock:
            return dataclasses.replace(self._stats)

    def get_task(self, task_id: str) -> TaskResult:
        with self._lock:
            return self._tasks[task_id].to_result()

    def tasks(self) -> list[TaskResult]:
        """Snapshots of every known task, in submission order."""
        with self._lock:
            return [t.to_result() for t in self._tasks.values()]

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Receive events from every task in this pool."""
        return self._events.subscribe(callback)

    def wait_all(self, timeout: float | None = None) -> list[TaskResult]:
        """Block until no task is queued or running; returns all task snapshots.

        Raises:
            TimeoutError: If ``timeout`` elapses first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._changed:
            idle = self._changed.wait_for(lambda: not self._queue and self._stats.active == 0, timeout)
            events = list(self._done.values())
        if not idle:
            raise TimeoutError(f"Pool still busy after {timeout}s")
        for event in events:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            if not event.wait(remaining):
                raise TimeoutError(f"Pool still busy after {timeout}s")
        return self.tasks()

    def cancel_all(self, reason: str = "cancelled", *, wait: bool = True, timeout: float | None = None) -> list[str]:
        """Terminate every running worker and drain the queue.

        Queued tasks fail without ever starting; running ones fail once their
        process group is gone. Safe to call when the pool is idle.

        Returns:
            Ids of the tasks affected.
        """
        with self._lock:
            drained = list(self._queue)
            self._queue.clear()
            for task in drained:
                self._mark_terminal_locked(
                    task, TaskStatus.FAILED, error=f"{reason} before start", cancelled=True, drained=True
                )
            running = [t for t in self._tasks.values() if t.status.holds_slot]
            self._changed.notify_all()

        if drained or running:
            logger.warning("Cancelling %d queued and %d running task(s): %s", len(drained), len(running), reason)
        for task in drained:
            self._publish_state(task, task.status, task.error or "")
            self._done[task.id].set()

        for task in running:
            handle = self.registry.get(task.id)
            if handle is not None:
                handle.kill(reason)

        if wait:
            deadline = None if timeout is None else time.monotonic() + timeout
            for task in running:
                remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                self._done[task.id].wait(remaining)
        return [t.id for t in drained + running]

    def shutdown(self, timeout: float | None = None) -> None:
        self.cancel_all("orchestrator shutdown", wait=True, timeout=timeout)

    def reset_stats(self) -> None:
        """Forget finished tasks and zero the counters (session end only).

        Raises:
            RuntimeError: If any task is still queued or running.
        """
        with self._lock:
            if self._queue or self._stats.active:
                raise RuntimeError("Cannot reset pool statistics while tasks are pending")
            self._stats = PoolStats(capacity=self.capacity)
            self._tasks.clear()
            self._done.clear()
            self._channels.clear()
            self._supervisors.clear()

    def __enter__(self) -> ProcessOrchestrator:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _admit_locked(self) -> list[WorkerTask]:
        admitted: list[WorkerTask] = []
        while self._queue and self._stats.active < self.capacity:
            task = self._queue.popleft()
            task.status = TaskStatus.STARTING
            self._stats.active += 1
            self._stats.started += 1
            self._stats.peak_active = max(self._stats.peak_active, self._stats.active)
            # Registered before spawn so cancellation can reach a starting task.
            self.registry.register(
                WorkerProcess(task.id, task.workspace.id, kill_grace_s=self.settings.kill_grace_s)
            )
            admitted.append(task)
        self._stats.queued = len(self._queue)
        return admitted

    def _launch(self, admitted: list[WorkerTask]) -> None:
        for task in admitted:
            logger.info("Admitted %s (%d/%d slots)", task.id, self._stats.active, self.capacity)
            self._publish_state(task, TaskStatus.STARTING)
            thread = threading.Thread(target=self._supervise, args=(task,), name=f"supervisor-{task.id}", daemon=True)
            with self._lock:
                self._supervisors[task.id] = thread
            thread.start()

    def _mark_terminal_locked(
        self,
        task: WorkerTask,
        status: TaskStatus,
        *,
        cancelled: bool = False,
        drained: bool = False,
        **fields: Any,
    ) -> bool:
        if task.status.is_terminal:
            return False
        if not can_transition(task.status, status):
            raise RuntimeError(f"Illegal transition for {task.id}: {task.status.value} -> {status.value}")
        for key, value in fields.items():
            setattr(task, key, value)
        if task.status.holds_slot:
            self._stats.active -= 1
        task.status = status
        task.ended_at = datetime.now()
        if status is TaskStatus.COMPLETED:
            self._stats.completed += 1
        else:
            self._stats.failed += 1
            if status is TaskStatus.TIMED_OUT:
                self._stats.timed_out += 1
            if cancelled:
                self._stats.cancelled += 1
            if drained:
                self._stats.drained += 1
        self._stats.queued = len(self._queue)
        self.registry.unregister(task.id)
        return True

    def _finish(self, task: WorkerTask, status: TaskStatus, *, cancelled: bool = False, **fields: Any) -> None:
        with self._lock:
            changed = self._mark_terminal_locked(task, status, cancelled=cancelled, **fields)
            admitted = self._admit_locked() if changed else []
            self._changed.notify_all()
        if not changed:
            return

        level = logging.INFO if status is TaskStatus.COMPLETED else logging.WARNING
        logger.log(level, "Task %s %s%s", task.id, status.value, f": {task.error}" if task.error else "")
        self._publish_state(task, status, task.error or "")
        self._done[task.id].set()
        self._launch(admitted)

    # ------------------------------------------------------------------
    # Supervision
    # ------------------------------------------------------------------

    def _supervise(self, task: WorkerTask) -> None:
        try:
            self._run_task(task)
        except Exception as exc:
            logger.exception("Supervisor for %s raised", task.id)
            handle = self.registry.get(task.id)
            if handle is not None:
                handle.kill(f"supervisor error: {exc}")
            self._finish(task, TaskStatus.FAILED, error=f"Supervisor error: {exc}")

    def _build_command(self, task: WorkerTask) -> list[str]:
        return [*self.settings.worker_command, json.dumps(task.payload, sort_keys=True)]

    def _build_env(self, task: WorkerTask) -> dict[str, str]:
        env = os.environ.copy()
        env.update(self.extra_env)
        env.update(task.workspace.worker_env())
        return env

    def _run_task(self, task: WorkerTask) -> None:
        handle = self.registry.get(task.id)
        if handle is None or handle.kill_reason is not None:
            reason = handle.kill_reason if handle is not None else "unregistered"
            self._finish(task, TaskStatus.FAILED, cancelled=True, error=f"{reason} before start")
            return

        cmd = self._build_command(task)
        try:
            proc = spawn_worker(cmd, cwd=task.workspace.path, env=self._build_env(task))
        except OSError as exc:
            err = ProcessSpawnError(f"Failed to start worker {cmd[0]!r} for {task.id}: {exc}")
            self._finish(task, TaskStatus.FAILED, error=str(err))
            return

        attached = handle.attach(proc)
        with self._lock:
            task.status = TaskStatus.RUNNING
            task.started_at = datetime.now()
            task.pid = proc.pid
        logger.info("Started %s (pid=%d, cwd=%s)", task.id, proc.pid, task.workspace.path)
        self._publish_state(task, TaskStatus.RUNNING)

        pumps = [
            start_pump(proc.stdout, lambda line: self._on_output(task, "stdout", line), name=f"{task.id}-stdout"),
            start_pump(proc.stderr, lambda line: self._on_output(task, "stderr", line), name=f"{task.id}-stderr"),
        ]
        if not attached:
            terminate_process_group(proc, grace_s=self.settings.kill_grace_s)

        try:
            returncode = proc.wait(timeout=task.timeout_s)
        except subprocess.TimeoutExpired:
            logger.warning("Task %s exceeded %gs; terminating process group", task.id, task.timeout_s)
            handle.kill(TIMEOUT_REASON)
            returncode = proc.wait()

        # Background children may still hold the pipes open.
        terminate_process_group(proc, grace_s=0)
        for pump in pumps:
            pump.join(timeout=_PUMP_JOIN_TIMEOUT_S)

        reason = handle.kill_reason
        if reason == TIMEOUT_REASON:
            err = ProcessTimeoutError(task.id, task.timeout_s)
            self._finish(task, TaskStatus.TIMED_OUT, error=str(err), exit_code=returncode)
        elif reason is not None:
            self._finish(task, TaskStatus.FAILED, cancelled=True, error=reason, exit_code=returncode)
        elif returncode == 0:
            outcome = self.output_parser.parse(task.logs.stdout)
            if outcome.warning:
                logger.warning("Task %s: %s", task.id, outcome.warning)
            self._finish(
                task,
                TaskStatus.COMPLETED,
                exit_code=0,
                outputs=outcome.outputs,
                output_strategy=outcome.strategy,
                parse_warning=outcome.warning,
            )
        else:
            stderr = task.logs.stderr
            err = ProcessExitError(task.id, returncode, stderr)
            detail = stderr.strip()[-_STDERR_TAIL_CHARS:]
            self._finish(
                task,
                TaskStatus.FAILED,
                exit_code=returncode,
                error=f"{err}: {detail}" if detail else str(err),
            )

    def _on_output(self, task: WorkerTask, stream: str, line: str) -> None:
        task.logs.append(stream, line)
        event = TaskEvent(kind=EventKind.LOG, task_id=task.id, status=task.status, stream=stream, data=line)
        self._publish(event)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _done_event(self, task_id: str) -> threading.Event:
        with self._lock:
            return self._done[task_id]

    def _task_channel(self, task_id: str) -> EventChannel:
        with self._lock:
            return self._channels[task_id]

    def _publish_state(self, task: WorkerTask, status: TaskStatus, data: str = "") -> None:
        self._publish(TaskEvent(kind=EventKind.STATE, task_id=task.id, status=status, data=data))

    def _publish(self, event: TaskEvent) -> None:
        self._events.publish(event)
        channel = self._channels.get(event.task_id)
        if channel is not None:
            channel.publish(event)
