# SPDX-License-Identifier: MIT
"""Tests for the bounded worker pool (ProcessOrchestrator).

Workers are small Python scripts run with the current interpreter, so these
tests exercise real processes, process groups, pipes and timeouts:
- Capacity bound and FIFO admission
- Counter bookkeeping (completed + failed == submitted)
- Timeouts, including workers that ignore SIGINT/SIGTERM
- Spawn failures and non-zero exits
- Cancellation and workspace-busy checks
- Event streaming
"""

from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest

from variant_foundry.errors import WorkspaceBusyError
from variant_foundry.orchestration.events import EventKind, TaskEvent
from variant_foundry.orchestration.models import LogBuffer, TaskStatus, can_transition
from variant_foundry.orchestration.pool import ProcessOrchestrator

SLEEP_WORKER = """
time.sleep(float(os.environ.get("SLEEP_S", "0.4")))
print(json.dumps({"variant": os.environ["VARIANT_NAME"]}))
"""

HANG_WORKER = """
time.sleep(60)
"""

STUBBORN_WORKER = """
signal.signal(signal.SIGINT, signal.SIG_IGN)
signal.signal(signal.SIGTERM, signal.SIG_IGN)
print("ready", flush=True)
time.sleep(60)
"""


def _wait_until(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


# -----------------------------------------------------------------------------
# Capacity and admission
# -----------------------------------------------------------------------------


class TestCapacity:
    """Capacity bound, FIFO admission and counters."""

    def test_three_slots_five_tasks(self, worker_script, pool_settings, make_workspace) -> None:
        """With C=3 and N=5, never more than 3 run and all 5 finish."""
        pool = ProcessOrchestrator(pool_settings(worker_script(SLEEP_WORKER), capacity=3))

        running = 0
        peak = 0
        lock = threading.Lock()

        def on_event(event: TaskEvent) -> None:
            nonlocal running, peak
            if event.kind is not EventKind.STATE:
                return
            with lock:
                if event.status is TaskStatus.RUNNING:
                    running += 1
                    peak = max(peak, running)
                elif event.status.is_terminal:
                    running -= 1

        pool.subscribe(on_event)
        handles = [pool.submit(make_workspace(f"v{i}"), {"i": i}) for i in range(5)]
        results = pool.wait_all(timeout=30)

        stats = pool.get_status()
        assert peak <= 3
        assert stats.peak_active == 3
        assert all(r.status is TaskStatus.COMPLETED for r in results)
        assert stats.completed + stats.failed == stats.submitted == 5
        assert stats.active == 0
        assert stats.queued == 0
        assert stats.started == 5
        assert [h.result().outputs for h in handles] == [{"variant": f"v{i}"} for i in range(5)]

    def test_queued_tasks_start_after_a_slot_frees(self, worker_script, pool_settings, make_workspace) -> None:
        """Tasks beyond capacity start only once an earlier task has ended."""
        pool = ProcessOrchestrator(pool_settings(worker_script(SLEEP_WORKER), capacity=3))
        handles = [pool.submit(make_workspace(f"v{i}"), {}) for i in range(5)]
        pool.wait_all(timeout=30)

        results = [h.result() for h in handles]
        first_end = min(r.ended_at for r in results[:3])
        for late in results[3:]:
            assert late.started_at is not None
            assert late.started_at >= first_end

    def test_fifo_admission(self, worker_script, pool_settings, make_workspace) -> None:
        """With one slot, tasks start in submission order."""
        cmd = worker_script("time.sleep(0.1)\n")
        pool = ProcessOrchestrator(pool_settings(cmd, capacity=1))
        handles = [pool.submit(make_workspace(f"v{i}"), {}) for i in range(4)]
        pool.wait_all(timeout=30)

        starts = [h.result().started_at for h in handles]
        assert starts == sorted(starts)

    def test_status_snapshot_is_a_copy(self, pool_settings) -> None:
        pool = ProcessOrchestrator(pool_settings(["true"], capacity=2))
        snapshot = pool.get_status()
        snapshot.completed = 99
        assert pool.get_status().completed == 0
        assert pool.get_status().capacity == 2

    def test_wait_all_timeout_is_one_deadline(self, pool_settings) -> None:
        pool = ProcessOrchestrator(pool_settings(["true"]))
        # Idle pool whose tasks have not signalled completion yet.
        pool._done.update({f"task-{i}": threading.Event() for i in range(4)})

        started = time.monotonic()
        with pytest.raises(TimeoutError):
            pool.wait_all(timeout=0.3)
        assert time.monotonic() - started < 1.0


# -----------------------------------------------------------------------------
# Worker contract
# -----------------------------------------------------------------------------


class TestWorkerContract:
    """cwd, environment and payload handed to the worker."""

    def test_cwd_env_and_payload(self, worker_script, pool_settings, make_workspace) -> None:
        cmd = worker_script(
            """
            payload = json.loads(sys.argv[-1])
            print(json.dumps({
                "cwd": os.getcwd(),
                "port": os.environ["PORT"],
                "name": os.environ["WORKSPACE_NAME"],
                "branch": os.environ["WORKSPACE_BRANCH"],
                "variant": os.environ["VARIANT_NAME"],
                "payload": payload,
            }))
            """
        )
        ws = make_workspace("dark-mode")
        pool = ProcessOrchestrator(pool_settings(cmd))
        result = pool.submit(ws, {"task": "ui-variation-generation", "n": 1}).wait(timeout=30)

        assert result.status is TaskStatus.COMPLETED
        out = result.outputs
        assert Path(out["cwd"]).resolve() == ws.path.resolve()
        assert out["port"] == str(ws.port)
        assert out["name"] == ws.id
        assert out["branch"] == ws.branch
        assert out["variant"] == "dark-mode"
        assert out["payload"] == {"task": "ui-variation-generation", "n": 1}

    def test_marker_output_is_parsed(self, worker_script, pool_settings, make_workspace) -> None:
        cmd = worker_script(
            """
            print("Screenshot saved: screenshots/home.png")
            print("Report generated: reports/a11y.md")
            print("File modified: src/App.css")
            """
        )
        pool = ProcessOrchestrator(pool_settings(cmd))
        result = pool.submit(make_workspace(), {}).wait(timeout=30)

        assert result.status is TaskStatus.COMPLETED
        assert result.output_strategy == "markers"
        assert result.outputs["screenshots"] == ["screenshots/home.png"]
        assert result.outputs["changes"] == ["src/App.css"]
        assert result.screenshots() == ["screenshots/home.png"]

    def test_unstructured_output_completes_with_warning(self, worker_script, pool_settings, make_workspace) -> None:
        pool = ProcessOrchestrator(pool_settings(worker_script("print('all done')\n")))
        result = pool.submit(make_workspace(), {}).wait(timeout=30)

        assert result.status is TaskStatus.COMPLETED
        assert result.outputs is None
        assert result.parse_warning
        assert "all done" in result.stdout


# -----------------------------------------------------------------------------
# Failures
# -----------------------------------------------------------------------------


class TestFailures:
    """Per-task failures stay local to the task."""

    def test_nonzero_exit(self, worker_script, pool_settings, make_workspace) -> None:
        cmd = worker_script("sys.stderr.write('boom: missing selector\\n')\nsys.exit(3)\n")
        pool = ProcessOrchestrator(pool_settings(cmd))
        result = pool.submit(make_workspace(), {}).wait(timeout=30)

        assert result.status is TaskStatus.FAILED
        assert result.exit_code == 3
        assert "boom: missing selector" in result.stderr
        assert "boom: missing selector" in result.error
        assert pool.get_status().failed == 1

    def test_spawn_error_releases_slot(self, tmp_path: Path, pool_settings, make_workspace) -> None:
        missing = str(tmp_path / "no-such-worker")
        pool = ProcessOrchestrator(pool_settings([missing], capacity=1))
        handles = [pool.submit(make_workspace(f"v{i}"), {}) for i in range(2)]
        pool.wait_all(timeout=30)

        for handle in handles:
            result = handle.result()
            assert result.status is TaskStatus.FAILED
            assert "Failed to start" in result.error
            assert result.started_at is None
        stats = pool.get_status()
        assert stats.active == 0
        assert stats.failed == 2

    def test_timeout_kills_process(self, worker_script, pool_settings, make_workspace, alive) -> None:
        pool = ProcessOrchestrator(pool_settings(worker_script(HANG_WORKER)))
        started = time.monotonic()
        handle = pool.submit(make_workspace(), {}, timeout_s=0.5)
        assert _wait_until(lambda: handle.status is TaskStatus.RUNNING)
        pid = pool.registry.get(handle.id).pid
        result = handle.wait(timeout=30)
        elapsed = time.monotonic() - started

        assert result.status is TaskStatus.TIMED_OUT
        assert "timed out" in result.error
        assert elapsed < 10
        assert not alive(pid)
        stats = pool.get_status()
        assert stats.timed_out == 1
        assert stats.failed == 1

    def test_timeout_escalates_to_sigkill(self, worker_script, pool_settings, make_workspace, alive) -> None:
        """A worker ignoring SIGINT and SIGTERM is still stopped."""
        pool = ProcessOrchestrator(pool_settings(worker_script(STUBBORN_WORKER), kill_grace_s=0.4))
        handle = pool.submit(make_workspace(), {}, timeout_s=1.0)
        assert _wait_until(lambda: handle.status is TaskStatus.RUNNING)
        pid = pool.registry.get(handle.id).pid
        result = handle.wait(timeout=30)

        assert result.status is TaskStatus.TIMED_OUT
        assert pid is not None
        assert _wait_until(lambda: not alive(pid))
        assert pool.registry.get(handle.id) is None

    def test_grandchildren_are_terminated(self, tmp_path: Path, worker_script, pool_settings, make_workspace, alive) -> None:
        pid_file = tmp_path / "child.pid"
        cmd = worker_script(
            f"""
            child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
            open({str(pid_file)!r}, "w").write(str(child.pid))
            time.sleep(60)
            """
        )
        pool = ProcessOrchestrator(pool_settings(cmd))
        result = pool.submit(make_workspace(), {}, timeout_s=1.5).wait(timeout=30)

        assert result.status is TaskStatus.TIMED_OUT
        child_pid = int(pid_file.read_text())
        assert _wait_until(lambda: not alive(child_pid))

    def test_background_child_of_finished_worker_is_reaped(self, worker_script, pool_settings, make_workspace, alive) -> None:
        cmd = worker_script(
            """
            child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
            print(json.dumps({"child": child.pid, "screenshots": ["home.png"]}))
            """
        )
        pool = ProcessOrchestrator(pool_settings(cmd))
        result = pool.submit(make_workspace(), {}).wait(timeout=30)

        assert result.status is TaskStatus.COMPLETED
        assert result.outputs["screenshots"] == ["home.png"]
        assert _wait_until(lambda: not alive(result.outputs["child"]))

    def test_all_hanging_tasks_drain_the_queue(self, worker_script, pool_settings, make_workspace) -> None:
        """Every running task hangs until timeout; the queue still drains."""
        pool = ProcessOrchestrator(pool_settings(worker_script(HANG_WORKER), capacity=2))
        for i in range(4):
            pool.submit(make_workspace(f"v{i}"), {}, timeout_s=0.5)
        results = pool.wait_all(timeout=60)

        assert [r.status for r in results] == [TaskStatus.TIMED_OUT] * 4
        stats = pool.get_status()
        assert stats.timed_out == 4
        assert stats.completed + stats.failed == 4
        assert stats.active == 0

    def test_invalid_timeout_rejected(self, pool_settings, make_workspace) -> None:
        pool = ProcessOrchestrator(pool_settings(["true"]))
        with pytest.raises(ValueError):
            pool.submit(make_workspace(), {}, timeout_s=0)


# -----------------------------------------------------------------------------
# Cancellation and workspace binding
# -----------------------------------------------------------------------------


class TestCancellation:
    """cancel_all, busy workspaces and registry-driven termination."""

    def test_cancel_all_with_no_tasks(self, pool_settings) -> None:
        pool = ProcessOrchestrator(pool_settings(["true"]))
        assert pool.cancel_all() == []
        assert pool.get_status().failed == 0

    def test_cancel_all_running_and_queued(self, worker_script, pool_settings, make_workspace, alive) -> None:
        pool = ProcessOrchestrator(pool_settings(worker_script(HANG_WORKER), capacity=1))
        handles = [pool.submit(make_workspace(f"v{i}"), {}) for i in range(3)]
        assert _wait_until(lambda: handles[0].status is TaskStatus.RUNNING)

        affected = pool.cancel_all("user abort")

        assert sorted(affected) == sorted(h.id for h in handles)
        results = [h.wait(timeout=10) for h in handles]
        assert all(r.status is TaskStatus.FAILED for r in results)
        assert "user abort" in results[0].error
        assert results[1].error == "user abort before start"
        assert results[1].started_at is None
        stats = pool.get_status()
        assert stats.cancelled == 3
        assert stats.failed == 3
        assert stats.drained == 2
        assert stats.active == 0
        assert len(pool.registry) == 0

    def test_cancel_mid_session_fails_every_started_task(self, worker_script, pool_settings, make_workspace) -> None:
        pool = ProcessOrchestrator(pool_settings(worker_script(HANG_WORKER), capacity=3))
        handles = [pool.submit(make_workspace(f"v{i}"), {}) for i in range(5)]
        assert _wait_until(lambda: sum(h.status is TaskStatus.RUNNING for h in handles) == 3)

        pool.cancel_all("user abort")

        stats = pool.get_status()
        assert (stats.submitted, stats.started, stats.completed) == (5, 3, 0)
        assert stats.drained == 2
        assert stats.failed - stats.drained == stats.started - stats.completed
        assert stats.completed + stats.failed == stats.submitted
        assert stats.started + stats.drained == stats.submitted

    def test_workspace_busy(self, worker_script, pool_settings, make_workspace) -> None:
        pool = ProcessOrchestrator(pool_settings(worker_script(HANG_WORKER)))
        ws = make_workspace()
        pool.submit(ws, {})
        with pytest.raises(WorkspaceBusyError):
            pool.submit(ws, {})
        pool.cancel_all()

    def test_workspace_reusable_after_task_ends(self, worker_script, pool_settings, make_workspace) -> None:
        pool = ProcessOrchestrator(pool_settings(worker_script("print('{}')\n")))
        ws = make_workspace()
        pool.submit(ws, {}).wait(timeout=30)
        assert pool.submit(ws, {}).wait(timeout=30).status is TaskStatus.COMPLETED

    def test_destroyed_workspace_terminates_task(self, worker_script, pool_settings, make_workspace) -> None:
        pool = ProcessOrchestrator(pool_settings(worker_script(HANG_WORKER)))
        ws = make_workspace()
        handle = pool.submit(ws, {})
        assert _wait_until(lambda: handle.status is TaskStatus.RUNNING)

        assert pool.registry.terminate_workspace(ws.id, "workspace destroyed") == 1
        result = handle.wait(timeout=10)

        assert result.status is TaskStatus.FAILED
        assert result.error == "workspace destroyed"

    def test_reset_stats_only_when_idle(self, worker_script, pool_settings, make_workspace) -> None:
        pool = ProcessOrchestrator(pool_settings(worker_script(HANG_WORKER)))
        pool.submit(make_workspace(), {})
        with pytest.raises(RuntimeError):
            pool.reset_stats()
        pool.cancel_all()
        pool.reset_stats()
        stats = pool.get_status()
        assert stats.submitted == 0
        assert pool.tasks() == []


# -----------------------------------------------------------------------------
# Events
# -----------------------------------------------------------------------------


class TestEvents:
    """Log and state events."""

    def test_stream_yields_logs_then_terminal_state(self, worker_script, pool_settings, make_workspace) -> None:
        cmd = worker_script("time.sleep(0.3)\nprint('step 1', flush=True)\nprint('step 2', flush=True)\n")
        pool = ProcessOrchestrator(pool_settings(cmd, capacity=1))
        blocker = pool.submit(make_workspace("first"), {})
        handle = pool.submit(make_workspace("second"), {})

        events = list(handle.stream(timeout=30))
        blocker.wait(timeout=30)

        logs = [e.data.strip() for e in events if e.kind is EventKind.LOG and e.stream == "stdout"]
        assert logs == ["step 1", "step 2"]
        assert events[-1].is_terminal
        assert events[-1].status is TaskStatus.COMPLETED
        states = [e.status for e in events if e.kind is EventKind.STATE]
        assert states[0] in (TaskStatus.STARTING, TaskStatus.RUNNING)

    def test_stream_after_completion(self, worker_script, pool_settings, make_workspace) -> None:
        pool = ProcessOrchestrator(pool_settings(worker_script("print('{}')\n")))
        handle = pool.submit(make_workspace(), {})
        handle.wait(timeout=30)

        events = list(handle.stream(timeout=5))
        assert len(events) == 1
        assert events[0].status is TaskStatus.COMPLETED

    def test_failing_subscriber_does_not_break_pool(self, worker_script, pool_settings, make_workspace) -> None:
        pool = ProcessOrchestrator(pool_settings(worker_script("print('{}')\n")))

        def broken(event: TaskEvent) -> None:
            raise RuntimeError("subscriber bug")

        pool.subscribe(broken)
        result = pool.submit(make_workspace(), {}).wait(timeout=30)
        assert result.status is TaskStatus.COMPLETED

    def test_context_manager_shuts_down(self, worker_script, pool_settings, make_workspace, alive) -> None:
        with ProcessOrchestrator(pool_settings(worker_script(HANG_WORKER))) as pool:
            handle = pool.submit(make_workspace(), {})
            assert _wait_until(lambda: pool.get_task(handle.id).status is TaskStatus.RUNNING)
            pid = pool.registry.get(handle.id).pid
        result = handle.result()
        assert result.status is TaskStatus.FAILED
        assert result.error == "orchestrator shutdown"
        assert not alive(pid)


# -----------------------------------------------------------------------------
# Task model
# -----------------------------------------------------------------------------


class TestTaskModel:
    """State machine and log buffer."""

    def test_transitions(self) -> None:
        assert can_transition(TaskStatus.QUEUED, TaskStatus.STARTING)
        assert can_transition(TaskStatus.STARTING, TaskStatus.FAILED)
        assert can_transition(TaskStatus.RUNNING, TaskStatus.TIMED_OUT)
        assert not can_transition(TaskStatus.STARTING, TaskStatus.COMPLETED)
        assert not can_transition(TaskStatus.QUEUED, TaskStatus.RUNNING)
        assert not can_transition(TaskStatus.COMPLETED, TaskStatus.FAILED)

    def test_log_tail_is_bounded_but_stdout_is_kept(self) -> None:
        logs = LogBuffer(tail_bytes=14)
        for i in range(5):
            logs.append("stdout", f"line-{i}\n")
        logs.append("stderr", "oops\n")

        assert logs.stdout == "".join(f"line-{i}\n" for i in range(5))
        assert logs.stderr == "oops\n"
        tail = logs.tail()
        assert [c.text for c in tail] == ["line-4\n", "oops\n"]
        assert tail[-1].stream == "stderr"
