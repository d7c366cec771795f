"""Worker process spawning, stream pumping and process-group termination."""

from __future__ import annotations

import contextlib
import logging
import os
import signal
import subprocess
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import IO

logger = logging.getLogger(__name__)

_POLL_INTERVAL_S = 0.05


def spawn_worker(
    cmd: Sequence[str],
    *,
    cwd: Path,
    env: Mapping[str, str],
) -> subprocess.Popen[str]:
    """Start a worker in its own session so its whole tree can be signalled.

    Raises:
        OSError: If the executable cannot be started.
    """
    return subprocess.Popen(
        list(cmd),
        cwd=str(cwd),
        env=dict(env),
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        encoding="utf-8",
        errors="replace",
        bufsize=1,
        start_new_session=True,
    )


def _signal_group(proc: subprocess.Popen[str], sig: int, fallback: Callable[[], None]) -> None:
    try:
        os.killpg(proc.pid, sig)
    except (AttributeError, ProcessLookupError, PermissionError, OSError):
        with contextlib.suppress(OSError):
            fallback()


def _wait_exit(proc: subprocess.Popen[str], budget_s: float) -> bool:
    deadline = time.monotonic() + budget_s
    while time.monotonic() < deadline:
        if proc.poll() is not None:
            return True
        time.sleep(_POLL_INTERVAL_S)
    return proc.poll() is not None


def terminate_process_group(proc: subprocess.Popen[str], *, grace_s: float) -> None:
    """Stop ``proc`` and every process in its group without leaving orphans.

    Escalates SIGINT -> SIGTERM -> SIGKILL, splitting ``grace_s`` between the
    first two steps.
    """
    if proc.poll() is not None:
        # Leader is gone; children may still hold the group.
        _signal_group(proc, signal.SIGKILL, lambda: None)
        return

    _signal_group(proc, signal.SIGINT, lambda: proc.send_signal(signal.SIGINT))
    if _wait_exit(proc, max(0.1, grace_s * 0.5)):
        _signal_group(proc, signal.SIGKILL, lambda: None)
        return

    _signal_group(proc, signal.SIGTERM, proc.terminate)
    if _wait_exit(proc, max(0.1, grace_s * 0.5)):
        _signal_group(proc, signal.SIGKILL, lambda: None)
        return

    _signal_group(proc, signal.SIGKILL, proc.kill)
    with contextlib.suppress(subprocess.TimeoutExpired):
        proc.wait(timeout=5)


def start_pump(src: IO[str] | None, on_line: Callable[[str], None], *, name: str) -> threading.Thread:
    """Read ``src`` line by line on a daemon thread, handing each line to ``on_line``."""

    def _pump() -> None:
        try:
            assert src is not None
            for line in iter(src.readline, ""):
                on_line(line)
        finally:
            with contextlib.suppress(Exception):
                src.close()

    thread = threading.Thread(target=_pump, name=name, daemon=True)
    thread.start()
    return thread


class WorkerProcess:
    """Kill handle for one task's worker, registered before spawn.

    ``kill`` may arrive before the process exists (cancellation during
    ``starting``); ``attach`` reports that so the supervisor can stop the
    process immediately.
    """

    def __init__(self, task_id: str, workspace_id: str, *, kill_grace_s: float) -> None:
        self.task_id = task_id
        self.workspace_id = workspace_id
        self.kill_grace_s = kill_grace_s
        self._lock = threading.Lock()
        self._proc: subprocess.Popen[str] | None = None
        self._kill_reason: str | None = None

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    @property
    def kill_reason(self) -> str | None:
        with self._lock:
            return self._kill_reason

    def attach(self, proc: subprocess.Popen[str]) -> bool:
        """Bind the spawned process. Returns False if a kill was already requested."""
        with self._lock:
            self._proc = proc
            return self._kill_reason is None

    def kill(self, reason: str) -> bool:
        """Request termination. The first reason wins; returns True if this call set it."""
        with self._lock:
            first = self._kill_reason is None
            if first:
                self._kill_reason = reason
            proc = self._proc
        if proc is not None:
            terminate_process_group(proc, grace_s=self.kill_grace_s)
        return first


class ProcessRegistry:
    """Registry of live worker processes, keyed by task id.

    Owned by the orchestrator and shared with ``WorkspaceManager`` so that
    destroying a workspace can stop whatever runs inside it.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_task: dict[str, WorkerProcess] = {}

    def register(self, handle: WorkerProcess) -> None:
        with self._lock:
            self._by_task[handle.task_id] = handle

    def unregister(self, task_id: str) -> None:
        with self._lock:
            self._by_task.pop(task_id, None)

    def get(self, task_id: str) -> WorkerProcess | None:
        with self._lock:
            return self._by_task.get(task_id)

    def for_workspace(self, workspace_id: str) -> list[WorkerProcess]:
        with self._lock:
            return [h for h in self._by_task.values() if h.workspace_id == workspace_id]

    def terminate_workspace(self, workspace_id: str, reason: str) -> int:
        handles = self.for_workspace(workspace_id)
        for handle in handles:
            logger.info("Terminating task %s bound to workspace %s (%s)", handle.task_id, workspace_id, reason)
            handle.kill(reason)
        return len(handles)

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_task)
