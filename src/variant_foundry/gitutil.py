"""Thin wrapper around the ``git`` command line."""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

_DEFAULT_GIT_TIMEOUT_SEC = 120.0


@dataclass(frozen=True)
class GitResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return (self.stdout + "\n" + self.stderr).strip()


def run_git(
    args: list[str],
    cwd: Path | str,
    *,
    timeout: float = _DEFAULT_GIT_TIMEOUT_SEC,
) -> GitResult:
    """Run ``git <args>`` in ``cwd`` and return (returncode, stdout, stderr).

    Never raises for git failures; a missing git binary or a timeout is
    reported as returncode -1.
    """
    cmd = ["git", *args]
    logger.debug("git %s (cwd=%s)", " ".join(args), cwd)
    env = os.environ.copy()
    # Never block on an editor or credential prompt.
    env.setdefault("GIT_TERMINAL_PROMPT", "0")
    env["GIT_EDITOR"] = "true"
    try:
        proc = subprocess.run(
            cmd,
            cwd=str(cwd),
            env=env,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        return GitResult(-1, "", f"git {' '.join(args)} timed out after {timeout:g}s")
    except OSError as exc:
        return GitResult(-1, "", str(exc))
    return GitResult(proc.returncode, proc.stdout or "", proc.stderr or "")


def branch_exists(repo_root: Path, branch: str) -> bool:
    return run_git(["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"], repo_root).ok


def conflicted_paths(repo_root: Path) -> list[str]:
    """Paths with unresolved merge conflicts (UU, AA, UD, DU, ...)."""
    res = run_git(["diff", "--name-only", "--diff-filter=U"], repo_root)
    if not res.ok:
        return []
    return [line.strip() for line in res.stdout.splitlines() if line.strip()]


def list_worktrees(repo_root: Path) -> list[dict[str, str]]:
    """Parse ``git worktree list --porcelain`` into dicts with path/head/branch."""
    res = run_git(["worktree", "list", "--porcelain"], repo_root)
    if not res.ok:
        return []

    entries: list[dict[str, str]] = []
    current: dict[str, str] = {}
    for line in res.stdout.splitlines():
        if not line.strip():
            if current:
                entries.append(current)
                current = {}
            continue
        key, _, value = line.partition(" ")
        if key == "worktree":
            current["path"] = value
        elif key == "HEAD":
            current["head"] = value
        elif key == "branch":
            current["branch"] = value.removeprefix("refs/heads/")
    if current:
        entries.append(current)
    return entries
