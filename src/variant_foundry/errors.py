"""Error taxonomy for workspace provisioning, worker supervision and merging.

Per-task errors (spawn, timeout, non-zero exit) are never raised out of the
worker pool; their messages are captured on the task. The classes below still
exist so callers and reports can name the failure category consistently.
"""

from __future__ import annotations

from dataclasses import dataclass, field


class VariantFoundryError(Exception):
    """Base exception for all variant_foundry errors."""

    pass


class ConfigError(VariantFoundryError, ValueError):
    """Raised when a configuration or variants file is invalid."""

    pass


class ProvisioningError(VariantFoundryError):
    """Raised when a repository or filesystem precondition is violated."""

    pass


class PortExhaustionError(ProvisioningError):
    """Raised when no free port exists in the managed range.

    The workspace manager recovers from this by falling back to a randomized
    high port, so it is logged rather than surfaced to callers.
    """

    def __init__(self, start: int, end: int) -> None:
        super().__init__(f"No free port in range [{start}, {end})")
        self.start = start
        self.end = end


class WorkspaceNotFoundError(VariantFoundryError, KeyError):
    """Raised when a workspace id is not known to the manager."""

    def __init__(self, workspace_id: str) -> None:
        super().__init__(workspace_id)
        self.workspace_id = workspace_id

    def __str__(self) -> str:
        return f"Workspace not found: {self.workspace_id}"


class WorkspaceBusyError(VariantFoundryError):
    """Raised when a workspace already has a non-terminal task."""

    pass


class ProcessSpawnError(VariantFoundryError):
    """Worker process could not be started."""

    pass


class ProcessTimeoutError(VariantFoundryError):
    """Worker process exceeded its deadline and was terminated."""

    def __init__(self, task_id: str, timeout_s: float) -> None:
        super().__init__(f"Task {task_id} timed out after {timeout_s:g}s")
        self.task_id = task_id
        self.timeout_s = timeout_s


class ProcessExitError(VariantFoundryError):
    """Worker process exited with a non-zero code."""

    def __init__(self, task_id: str, returncode: int, stderr: str) -> None:
        super().__init__(f"Task {task_id} exited with code {returncode}")
        self.task_id = task_id
        self.returncode = returncode
        self.stderr = stderr


class OutputParseWarning(UserWarning):
    """Worker succeeded but its stdout carried no structured data."""

    pass


class CleanupError(VariantFoundryError):
    """Best-effort cleanup step failed. Logged, never propagated."""

    pass


class SessionError(VariantFoundryError):
    """Unrecoverable whole-session failure (e.g. unusable repository root)."""

    pass


@dataclass(frozen=True)
class MergeConflictError:
    """Merge conflict record.

    Returned inside ``MergeResult`` rather than raised, so the caller decides
    whether to retry, resolve by hand or discard the variant.
    """

    workspace_id: str
    branch: str
    target_branch: str
    conflicted_paths: tuple[str, ...] = field(default_factory=tuple)
    message: str = ""

    def __str__(self) -> str:
        paths = ", ".join(self.conflicted_paths) or "(unknown paths)"
        return f"Merge conflict merging {self.branch} into {self.target_branch}: {paths}"
