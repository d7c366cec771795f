"""Git-worktree workspace lifecycle: create, destroy, merge, prune.

All provisioning steps mutate one shared repository, so every call that
touches git runs inside a single re-entrant lock. Worker processes that later
run inside the workspaces are not serialized; only checkout/branch/merge are.
"""

from __future__ import annotations

import logging
import re
import shutil
import subprocess
import threading
import time
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any

from ..atomic_io import atomic_write_json, atomic_write_text
from ..config import WorkspaceSettings
from ..errors import CleanupError, MergeConflictError, ProvisioningError, WorkspaceNotFoundError
from ..gitutil import branch_exists, conflicted_paths, list_worktrees, run_git
from ..orchestration.process import ProcessRegistry
from .models import MergeResult, Workspace, WorkspaceStatus
from .ports import PortAllocator

logger = logging.getLogger(__name__)

WORKSPACE_CONFIG_FILE = ".workspace-config.json"
WORKSPACE_ENV_FILE = ".env.workspace"
DESTROYED_REASON = "workspace destroyed"


def slugify(text: str) -> str:
    """Branch-safe fragment of ``text`` (lowercase, dash-separated)."""
    frag = re.sub(r"[^a-z0-9]+", "-", text.strip().lower())
    return frag.strip("-") or "variant"


class WorkspaceManager:
    """Owns every workspace created from one repository root.

    Args:
        repo_root: Root of the git repository to branch from.
        settings: Provisioning settings; defaults apply when omitted.
        registry: Process registry shared with the worker pool, so that
            destroying a workspace stops the worker running inside it.
        port_allocator: Override for tests.
        clock: Epoch-seconds clock used for branch timestamps.
    """

    def __init__(
        self,
        repo_root: Path | str,
        settings: WorkspaceSettings | None = None,
        *,
        registry: ProcessRegistry | None = None,
        port_allocator: PortAllocator | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.repo_root = Path(repo_root).resolve()
        self.settings = settings or WorkspaceSettings()
        base_dir = Path(self.settings.base_dir)
        self.base_dir = base_dir if base_dir.is_absolute() else self.repo_root / base_dir
        self.registry = registry if registry is not None else ProcessRegistry()
        self.ports = port_allocator or PortAllocator(self.settings.port_range_start, self.settings.port_range_end)
        self._clock = clock
        self._lock = threading.RLock()
        self._workspaces: dict[str, Workspace] = {}
        self._initialized = False
        self.base_branch: str | None = None
        self.base_commit: str | None = None

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """Verify the repository root and record the base branch and commit.

        Raises:
            ProvisioningError: If the root is not a git repository with commits.
        """
        with self._lock:
            if self._initialized:
                return
            if not self.repo_root.is_dir():
                raise ProvisioningError(f"Repository root does not exist: {self.repo_root}")
            res = run_git(["rev-parse", "--show-toplevel"], self.repo_root)
            if not res.ok:
                raise ProvisioningError(f"Not a git repository: {self.repo_root} ({res.output})")

            head = run_git(["rev-parse", "HEAD"], self.repo_root)
            if not head.ok:
                raise ProvisioningError(f"Repository has no commits: {self.repo_root}")
            self.base_commit = head.stdout.strip()

            branch = run_git(["rev-parse", "--abbrev-ref", "HEAD"], self.repo_root)
            name = branch.stdout.strip() if branch.ok else ""
            self.base_branch = name if name and name != "HEAD" else None

            try:
                self.base_dir.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise ProvisioningError(f"Cannot create workspace directory {self.base_dir}: {exc}") from exc

            self._initialized = True
            logger.info(
                "Workspace manager ready (repo=%s, base=%s@%s)",
                self.repo_root,
                self.base_branch or "detached",
                self.base_commit[:12],
            )

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create_workspace(
        self,
        variant_name: str,
        base_revision: str | None = None,
        config: dict[str, Any] | None = None,
    ) -> Workspace:
        """Provision a fresh worktree, branch and port for ``variant_name``.

        Raises:
            ProvisioningError: On a non-repository root, a branch or path
                collision, the optional live-workspace cap, or any provisioning step
                failing (after rolling back what was created).
        """
        with self._lock:
            self.initialize()
            live = [w for w in self._workspaces.values() if w.is_live]
            limit = self.settings.max_workspaces
            if limit is not None and len(live) >= limit:
                raise ProvisioningError(f"Maximum of {limit} live workspaces reached")

            ws_id = f"{slugify(variant_name)}-{int(self._clock() * 1000)}"
            branch = f"{self.settings.branch_prefix}-{ws_id}"
            path = self.base_dir / ws_id
            if any(w.branch == branch for w in live) or branch_exists(self.repo_root, branch):
                raise ProvisioningError(f"Branch already exists: {branch}")
            if path.exists():
                raise ProvisioningError(f"Workspace path already exists: {path}")

            revision = base_revision or self.base_commit
            assert revision is not None
            res = run_git(["worktree", "add", "-b", branch, str(path), revision], self.repo_root)
            if not res.ok:
                raise ProvisioningError(f"git worktree add failed for {variant_name!r}: {res.output}")

            port: int | None = None
            try:
                self._copy_project_files(path)
                self._setup_dependencies(path)
                port = self.ports.allocate_or_fallback()
                workspace = Workspace(
                    id=ws_id,
                    variant_name=variant_name,
                    path=path,
                    branch=branch,
                    base_revision=revision,
                    port=port,
                    created_at=datetime.fromtimestamp(self._clock()),
                    metadata={"ui": dict(config or {})},
                )
                self._write_workspace_files(workspace)
            except Exception as exc:
                logger.error("Provisioning %s failed, rolling back: %s", ws_id, exc)
                self._rollback(path, branch, port)
                raise ProvisioningError(f"Failed to provision workspace for {variant_name!r}: {exc}") from exc

            self._workspaces[ws_id] = workspace
            logger.info("Created workspace %s (branch=%s, port=%d, path=%s)", ws_id, branch, port, path)
            return workspace

    def _copy_project_files(self, path: Path) -> None:
        # Tracked files are already checked out; this picks up untracked ones.
        for name in [*self.settings.dependency_manifests, *self.settings.config_files]:
            src = self.repo_root / name
            dst = path / name
            if src.is_file() and not dst.exists():
                dst.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(src, dst)
                logger.debug("Copied %s into %s", name, path.name)

    def _setup_dependencies(self, path: Path) -> None:
        if self.settings.preserve_dependencies:
            linked_all = True
            for name in self.settings.dependency_dirs:
                src = self.repo_root / name
                dst = path / name
                if not src.is_dir() or dst.exists():
                    continue
                try:
                    dst.symlink_to(src, target_is_directory=True)
                    logger.debug("Linked %s into %s", name, path.name)
                except OSError as exc:
                    linked_all = False
                    logger.warning("Could not link %s into %s: %s", name, path.name, exc)
            if linked_all:
                return
        if self.settings.install_command:
            self._run_install(path)

    def _run_install(self, path: Path) -> None:
        cmd = list(self.settings.install_command or [])
        logger.info("Installing dependencies in %s: %s", path.name, " ".join(cmd))
        try:
            proc = subprocess.run(
                cmd,
                cwd=str(path),
                capture_output=True,
                text=True,
                timeout=self.settings.install_timeout_s,
            )
        except subprocess.TimeoutExpired:
            logger.warning("Dependency install timed out after %gs in %s", self.settings.install_timeout_s, path)
            return
        except OSError as exc:
            logger.warning("Dependency install could not start in %s: %s", path, exc)
            return
        if proc.returncode != 0:
            logger.warning(
                "Dependency install exited %d in %s: %s",
                proc.returncode,
                path,
                (proc.stderr or proc.stdout or "").strip()[-2000:],
            )

    def _write_workspace_files(self, ws: Workspace) -> None:
        config = {
            "workspace": {
                "id": ws.id,
                "name": ws.id,
                "created": ws.created_at.isoformat(),
                "variation": ws.variant_name,
                "branch": ws.branch,
                "baseRevision": ws.base_revision,
                "port": ws.port,
                "devServer": {"host": "localhost", "port": ws.port},
            },
            "ui": {
                **ws.metadata.get("ui", {}),
                "testing": {
                    "enabled": True,
                    "screenshotDir": f"screenshots/{ws.id}",
                    "baselineDir": "screenshots/baseline",
                    "reportDir": f"reports/{ws.id}",
                },
            },
        }
        atomic_write_json(ws.path / WORKSPACE_CONFIG_FILE, config)

        env_lines = [
            "# Workspace-specific environment variables",
            f"PORT={ws.port}",
            f"WORKSPACE_NAME={ws.id}",
            f"WORKSPACE_BRANCH={ws.branch}",
            f"VARIANT_NAME={ws.variant_name}",
        ]
        atomic_write_text(ws.path / WORKSPACE_ENV_FILE, "\n".join(env_lines) + "\n")

    def _rollback(self, path: Path, branch: str, port: int | None) -> None:
        self._remove_worktree(path)
        self._delete_branch(branch)
        if port is not None:
            self.ports.release(port)

    # ------------------------------------------------------------------
    # Destroy
    # ------------------------------------------------------------------

    def destroy_workspace(self, workspace_id: str) -> bool:
        """Stop bound processes, remove the worktree and branch, release the port.

        Idempotent: an unknown or already destroyed workspace is logged and
        reported as done. Failing steps are logged, never raised; the
        workspace then stays live with its port held so a later call can retry.

        Returns:
            True if every cleanup step succeeded.
        """
        with self._lock:
            ws = self._workspaces.get(workspace_id)
            if ws is None:
                logger.warning("destroy_workspace: unknown workspace %s", workspace_id)
                return True
            if ws.status is WorkspaceStatus.DESTROYED:
                logger.debug("Workspace %s already destroyed", workspace_id)
                return True

            killed = self.registry.terminate_workspace(workspace_id, DESTROYED_REASON)
            if killed:
                logger.info("Stopped %d process(es) in workspace %s", killed, workspace_id)

            ok = self._remove_worktree(ws.path)
            ok = self._delete_branch(ws.branch) and ok
            if not ok:
                # Port stays held until path and branch are really gone.
                logger.warning("Cleanup of workspace %s incomplete; keeping port %d", workspace_id, ws.port)
                return False
            self.ports.release(ws.port)
            ws.status = WorkspaceStatus.DESTROYED
            logger.info("Destroyed workspace %s", workspace_id)
            return True

    def _remove_worktree(self, path: Path) -> bool:
        if not path.exists():
            logger.info("Workspace path already gone: %s", path)
            run_git(["worktree", "prune"], self.repo_root)
            return True

        res = run_git(["worktree", "remove", "--force", str(path)], self.repo_root)
        if res.ok and not path.exists():
            return True

        logger.warning("%s", CleanupError(f"git worktree remove failed for {path}: {res.output}"))
        try:
            shutil.rmtree(path)
        except OSError as exc:
            logger.warning("%s", CleanupError(f"Failed to delete {path}: {exc}"))
            return False
        finally:
            run_git(["worktree", "prune"], self.repo_root)
        return True

    def _delete_branch(self, branch: str) -> bool:
        if not branch_exists(self.repo_root, branch):
            return True
        res = run_git(["branch", "-D", branch], self.repo_root)
        if not res.ok:
            logger.warning("%s", CleanupError(f"Failed to delete branch {branch}: {res.output}"))
        return res.ok

    def destroy_all(self) -> dict[str, bool]:
        """Destroy every live workspace; returns per-workspace success."""
        with self._lock:
            live = [w.id for w in self._workspaces.values() if w.is_live]
            return {ws_id: self.destroy_workspace(ws_id) for ws_id in live}

    def prune_stale(self) -> list[str]:
        """Remove prefixed worktrees and branches this manager does not own.

        Targets leftovers from an interrupted session: worktrees under the
        base directory and local branches whose name carries the branch
        prefix. Returns what was removed.
        """
        with self._lock:
            self.initialize()
            prefix = f"{self.settings.branch_prefix}-"
            live_paths = {w.path.resolve() for w in self._workspaces.values() if w.is_live}
            live_branches = {w.branch for w in self._workspaces.values() if w.is_live}
            base = self.base_dir.resolve()
            removed: list[str] = []

            run_git(["worktree", "prune"], self.repo_root)
            for entry in list_worktrees(self.repo_root):
                path = Path(entry.get("path", "")).resolve()
                if path in live_paths or base not in path.parents:
                    continue
                if not entry.get("branch", "").startswith(prefix):
                    continue
                if self._remove_worktree(path):
                    removed.append(str(path))

            refs = run_git(
                ["for-each-ref", "--format=%(refname:short)", f"refs/heads/{prefix}*"],
                self.repo_root,
            )
            for branch in refs.stdout.split() if refs.ok else []:
                if branch in live_branches:
                    continue
                if self._delete_branch(branch):
                    removed.append(branch)

            if removed:
                logger.info("Pruned %d stale worktree(s)/branch(es)", len(removed))
            return removed

    # ------------------------------------------------------------------
    # Merge
    # ------------------------------------------------------------------

    def merge_workspace(self, workspace_id: str, target_branch: str | None = None) -> MergeResult:
        """Merge the workspace branch into ``target_branch`` (default: base branch).

        Conflicts come back as ``MergeResult.conflict`` after the merge is
        aborted, leaving the target branch as it was.

        Raises:
            WorkspaceNotFoundError: If ``workspace_id`` is unknown.
        """
        with self._lock:
            ws = self._require(workspace_id)
            target = target_branch or self.base_branch
            if not ws.is_live:
                return MergeResult(workspace_id, target or "", success=False, error="Workspace is destroyed")
            if target is None:
                return MergeResult(workspace_id, "", success=False, error="No target branch (base is detached)")

            checkout = run_git(["checkout", target], self.repo_root)
            if not checkout.ok:
                return MergeResult(workspace_id, target, success=False, error=f"checkout failed: {checkout.output}")

            message = f"Merge UI variant: {ws.variant_name}"
            merge = run_git(["merge", "--no-ff", "-m", message, ws.branch], self.repo_root)
            if not merge.ok:
                paths = conflicted_paths(self.repo_root)
                run_git(["merge", "--abort"], self.repo_root)
                if paths:
                    conflict = MergeConflictError(
                        workspace_id=workspace_id,
                        branch=ws.branch,
                        target_branch=target,
                        conflicted_paths=tuple(paths),
                        message=merge.output,
                    )
                    logger.warning("%s", conflict)
                    return MergeResult(workspace_id, target, success=False, conflict=conflict)
                logger.error("Merge of %s into %s failed: %s", ws.branch, target, merge.output)
                return MergeResult(workspace_id, target, success=False, error=merge.output)

            ws.status = WorkspaceStatus.MERGED
            logger.info("Merged %s into %s", ws.branch, target)
            cleaned = False
            if self.settings.auto_cleanup_on_merge:
                cleaned = self.destroy_workspace(workspace_id)
            return MergeResult(workspace_id, target, success=True, merged=True, cleaned_up=cleaned)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def _require(self, workspace_id: str) -> Workspace:
        ws = self._workspaces.get(workspace_id)
        if ws is None:
            raise WorkspaceNotFoundError(workspace_id)
        return ws

    def get(self, workspace_id: str) -> Workspace:
        with self._lock:
            return self._require(workspace_id)

    def list_workspaces(self, include_destroyed: bool = False) -> list[Workspace]:
        with self._lock:
            return [w for w in self._workspaces.values() if include_destroyed or w.is_live]

    def get_status(self, workspace_id: str) -> dict[str, Any]:
        """Snapshot of one workspace plus what is on disk and running in it."""
        with self._lock:
            ws = self._require(workspace_id)
            status = ws.to_dict()
            status["exists"] = ws.path.exists()
            status["processes"] = len(self.registry.for_workspace(workspace_id))
            if status["exists"]:
                porcelain = run_git(["status", "--porcelain"], ws.path)
                status["changes"] = len(porcelain.stdout.splitlines()) if porcelain.ok else None
            return status
