"""Variant Foundry: parallel UI-variant generation in isolated git worktrees.

One workspace (worktree + branch + port) is provisioned per variant spec, an
external worker process is run inside each through a bounded pool, and the
completed variants are scored against each other.

Public API
----------
- :class:`WorkspaceManager` - create, destroy and merge worktree workspaces
- :class:`ProcessOrchestrator` - bounded FIFO worker pool with timeouts
- :class:`ComparisonEngine` - pairwise similarity, clustering, recommendations
- :class:`VariantSession` - end-to-end driver producing a :class:`SessionSummary`

Example
-------
>>> from variant_foundry import VariantSession, load_config, load_variants_file
>>> config = load_config("orchestrator.yaml")
>>> summary = VariantSession(".", config).run(load_variants_file("variants.yaml"))
>>> [o.status for o in summary.outcomes]
"""

from __future__ import annotations

__version__ = "0.1.0"

from .comparison import ComparisonEngine, ComparisonResult, SimilarityAnalysis
from .config import ComparisonWeights, OrchestratorConfig, PoolSettings, WorkspaceSettings, load_config
from .errors import (
    CleanupError,
    ConfigError,
    MergeConflictError,
    OutputParseWarning,
    PortExhaustionError,
    ProcessExitError,
    ProcessSpawnError,
    ProcessTimeoutError,
    ProvisioningError,
    SessionError,
    VariantFoundryError,
    WorkspaceBusyError,
    WorkspaceNotFoundError,
)
from .orchestration import PoolStats, ProcessOrchestrator, TaskHandle, TaskResult, TaskStatus
from .reporting import FileSessionReporter, build_session_report, validate_session_report
from .session import SessionSummary, VariantOutcome, VariantSession
from .variants import VariantSpec, load_variant_specs, load_variants_file
from .workspaces import MergeResult, Workspace, WorkspaceManager, WorkspaceStatus

__all__ = [
    "CleanupError",
    "ComparisonEngine",
    "ComparisonResult",
    "ComparisonWeights",
    "ConfigError",
    "FileSessionReporter",
    "MergeConflictError",
    "MergeResult",
    "OrchestratorConfig",
    "OutputParseWarning",
    "PoolSettings",
    "PoolStats",
    "PortExhaustionError",
    "ProcessExitError",
    "ProcessOrchestrator",
    "ProcessSpawnError",
    "ProcessTimeoutError",
    "ProvisioningError",
    "SessionError",
    "SessionSummary",
    "SimilarityAnalysis",
    "TaskHandle",
    "TaskResult",
    "TaskStatus",
    "VariantFoundryError",
    "VariantOutcome",
    "VariantSession",
    "VariantSpec",
    "WorkspaceBusyError",
    "WorkspaceManager",
    "WorkspaceNotFoundError",
    "WorkspaceSettings",
    "WorkspaceStatus",
    "Workspace",
    "load_config",
    "load_variant_specs",
    "load_variants_file",
]
