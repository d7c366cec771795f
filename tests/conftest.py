# SPDX-License-Identifier: MIT
"""Pytest configuration and shared fixtures for test suite.

This module provides:
- Deterministic test environment setup
- Throwaway git repositories with an initial commit
- Synthetic worker scripts run with the current interpreter
- Plain workspaces for pool tests that do not need git
"""
from __future__ import annotations

import os
import shutil
import subprocess
import sys
import textwrap
from collections.abc import Callable
from pathlib import Path

import pytest

from variant_foundry.config import PoolSettings
from variant_foundry.workspaces.models import Workspace

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

HAS_GIT = shutil.which("git") is not None

WORKER_PRELUDE = "import json, os, signal, subprocess, sys, time\n"


# ---------------------------------------------------------------------------
# Environment Setup
# ---------------------------------------------------------------------------


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest environment for determinism."""
    deterministic_env = {
        "LC_ALL": "C",
        "LANG": "C",
        "TZ": "UTC",
        "PYTHONHASHSEED": "0",
        "GIT_TERMINAL_PROMPT": "0",
    }
    for key, value in deterministic_env.items():
        os.environ.setdefault(key, value)


# ---------------------------------------------------------------------------
# Fixtures: Git
# ---------------------------------------------------------------------------


def git(args: list[str], cwd: Path) -> subprocess.CompletedProcess[str]:
    """Run a git command, failing the test on error."""
    proc = subprocess.run(["git", *args], cwd=cwd, capture_output=True, text=True)
    assert proc.returncode == 0, f"git {' '.join(args)} failed: {proc.stderr}"
    return proc


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """Create a temporary git repository on branch ``main`` with one commit."""
    if not HAS_GIT:
        pytest.skip("git is not installed")
    repo = tmp_path / "repo"
    repo.mkdir()

    git(["init", "-q"], repo)
    git(["symbolic-ref", "HEAD", "refs/heads/main"], repo)
    git(["config", "user.email", "test@test.com"], repo)
    git(["config", "user.name", "Test"], repo)
    git(["config", "commit.gpgsign", "false"], repo)

    (repo / "README.md").write_text("# Test Repo\n")
    (repo / "package.json").write_text('{"name": "demo-app", "version": "1.0.0"}\n')
    (repo / "app.css").write_text("body { color: black; }\n")
    (repo / ".gitignore").write_text("worktrees/\nreports/\nnode_modules/\n.env\n")
    git(["add", "-A"], repo)
    git(["commit", "-q", "-m", "Initial commit"], repo)
    return repo


# ---------------------------------------------------------------------------
# Fixtures: Workers
# ---------------------------------------------------------------------------


@pytest.fixture
def worker_script(tmp_path: Path) -> Callable[[str], list[str]]:
    """Factory: write a Python worker body to a file and return its command.

    The body runs after ``import json, os, signal, subprocess, sys, time``;
    the instruction payload arrives as ``sys.argv[-1]``.

    Usage:
        def test_something(worker_script):
            cmd = worker_script("print('Screenshot saved: a.png')")
    """
    scripts = tmp_path / "workers"
    scripts.mkdir(exist_ok=True)
    counter = iter(range(1_000_000))

    def _make(body: str) -> list[str]:
        path = scripts / f"worker_{next(counter)}.py"
        path.write_text(WORKER_PRELUDE + textwrap.dedent(body), encoding="utf-8")
        return [sys.executable, str(path)]

    return _make


@pytest.fixture
def pool_settings() -> Callable[..., PoolSettings]:
    """Factory for fast-failing pool settings around a worker command."""

    def _make(cmd: list[str], **overrides: object) -> PoolSettings:
        data: dict[str, object] = {
            "capacity": 3,
            "task_timeout_s": 30.0,
            "kill_grace_s": 0.5,
            "worker_command": cmd,
        }
        data.update(overrides)
        return PoolSettings.model_validate(data)

    return _make


@pytest.fixture
def make_workspace(tmp_path: Path) -> Callable[[str], Workspace]:
    """Factory for plain (non-git) workspaces; enough for the worker pool."""
    counter = iter(range(1_000_000))

    def _make(variant: str = "variant") -> Workspace:
        n = next(counter)
        path = tmp_path / "workspaces" / f"{variant}-{n}"
        path.mkdir(parents=True)
        return Workspace(
            id=f"{variant}-{n}",
            variant_name=variant,
            path=path,
            branch=f"ui-variation-{variant}-{n}",
            base_revision="HEAD",
            port=4000 + n,
        )

    return _make


def pid_alive(pid: int) -> bool:
    """True if ``pid`` exists and is not a zombie."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    stat = Path(f"/proc/{pid}/stat")
    if stat.exists():
        try:
            state = stat.read_text().rsplit(")", 1)[1].split()[0]
        except (OSError, IndexError):
            return False
        return state not in ("Z", "X")
    return True


@pytest.fixture
def alive() -> Callable[[int], bool]:
    """The ``pid_alive`` probe, for tests checking that no process is left behind."""
    return pid_alive
