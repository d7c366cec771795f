"""Workspace provisioning (git worktrees, ports, merge)."""

from .models import MergeResult, Workspace, WorkspaceStatus
from .ports import PortAllocator, port_is_free
from .manager import WORKSPACE_CONFIG_FILE, WORKSPACE_ENV_FILE, WorkspaceManager, slugify

__all__ = [
    "MergeResult",
    "PortAllocator",
    "WORKSPACE_CONFIG_FILE",
    "WORKSPACE_ENV_FILE",
    "Workspace",
    "WorkspaceManager",
    "WorkspaceStatus",
    "port_is_free",
    "slugify",
]
