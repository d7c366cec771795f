"""Workspace data model."""

from __future__ import annotations

import dataclasses
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from ..errors import MergeConflictError


class WorkspaceStatus(str, Enum):
    """Lifecycle state of a workspace."""

    ACTIVE = "active"
    MERGED = "merged"
    DESTROYED = "destroyed"


@dataclasses.dataclass
class Workspace:
    """An isolated worktree bound to one variant, branch and port.

    Only ``WorkspaceManager`` mutates instances; everything else should treat
    them as read-only (tasks borrow a workspace, they never own it).
    """

    id: str
    variant_name: str
    path: Path
    branch: str
    base_revision: str
    port: int
    status: WorkspaceStatus = WorkspaceStatus.ACTIVE
    created_at: datetime = dataclasses.field(default_factory=datetime.now)
    metadata: dict[str, Any] = dataclasses.field(default_factory=dict)

    @property
    def is_live(self) -> bool:
        return self.status is not WorkspaceStatus.DESTROYED

    def worker_env(self) -> dict[str, str]:
        """Environment variables identifying this workspace to a worker."""
        return {
            "PORT": str(self.port),
            "WORKSPACE_NAME": self.id,
            "WORKSPACE_BRANCH": self.branch,
            "WORKSPACE_PATH": str(self.path),
            "VARIANT_NAME": self.variant_name,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "variant": self.variant_name,
            "path": str(self.path),
            "branch": self.branch,
            "base_revision": self.base_revision,
            "port": self.port,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "metadata": dict(self.metadata),
        }


@dataclasses.dataclass(frozen=True)
class MergeResult:
    """Outcome of ``WorkspaceManager.merge_workspace``.

    Conflicts are reported through ``conflict`` instead of an exception.
    """

    workspace_id: str
    target_branch: str
    success: bool
    merged: bool = False
    cleaned_up: bool = False
    conflict: MergeConflictError | None = None
    error: str | None = None
