"""Session driver: provision, run, compare, report, tear down.

A session is the unit a caller submits: a list of variant specs in, one
immutable ``SessionSummary`` out. Per-variant failures (provisioning, spawn,
timeout, non-zero exit) are recorded on that variant only; the only
whole-session fatal error is ``SessionError``.
"""

from __future__ import annotations

import dataclasses
import logging
import uuid
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from .comparison.engine import ComparisonEngine, ComparisonResult, SimilarityAnalysis
from .config import OrchestratorConfig
from .errors import ProvisioningError, SessionError
from .orchestration.events import EventCallback
from .orchestration.instructions import build_instruction_payload
from .orchestration.models import PoolStats, TaskResult, TaskStatus
from .orchestration.pool import ProcessOrchestrator, TaskHandle
from .orchestration.process import ProcessRegistry
from .variants import VariantSpec
from .workspaces.manager import WorkspaceManager

logger = logging.getLogger(__name__)

PROVISIONING_FAILED = "provisioning_failed"


@dataclasses.dataclass(frozen=True)
class VariantOutcome:
    """Final state of one variant within a session."""

    name: str
    status: str
    success: bool
    duration_s: float | None = None
    task_id: str | None = None
    workspace_id: str | None = None
    workspace_path: str | None = None
    outputs: Any = None
    error: str | None = None
    parse_warning: str | None = None
    result: TaskResult | None = dataclasses.field(default=None, repr=False, compare=False)

    @classmethod
    def from_result(cls, result: TaskResult) -> VariantOutcome:
        return cls(
            name=result.variant_name,
            status=result.status.value,
            success=result.success,
            duration_s=result.duration_s,
            task_id=result.task_id,
            workspace_id=result.workspace_id,
            workspace_path=result.workspace_path,
            outputs=result.outputs,
            error=result.error,
            parse_warning=result.parse_warning,
            result=result,
        )

    @classmethod
    def provisioning_failed(cls, name: str, error: str) -> VariantOutcome:
        return cls(name=name, status=PROVISIONING_FAILED, success=False, error=error)


@dataclasses.dataclass(frozen=True)
class SessionSummary:
    """Immutable record of a finished session."""

    session_id: str
    started_at: datetime
    ended_at: datetime
    specs: tuple[VariantSpec, ...]
    outcomes: tuple[VariantOutcome, ...]
    process_stats: PoolStats
    comparisons: tuple[ComparisonResult, ...] = ()
    analysis: SimilarityAnalysis = dataclasses.field(default_factory=SimilarityAnalysis)
    comparison_recommendations: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    report_paths: dict[str, Path] = dataclasses.field(default_factory=dict)

    @property
    def duration_s(self) -> float:
        return (self.ended_at - self.started_at).total_seconds()

    @property
    def successful(self) -> list[VariantOutcome]:
        return [o for o in self.outcomes if o.success]

    @property
    def failed(self) -> list[VariantOutcome]:
        return [o for o in self.outcomes if not o.success]

    @property
    def success_rate(self) -> float:
        return len(self.successful) / len(self.outcomes) if self.outcomes else 0.0

    @property
    def all_succeeded(self) -> bool:
        return bool(self.outcomes) and not self.failed


class Session:
    """Mutable aggregate while a session runs; frozen by ``finalize``."""

    def __init__(self, specs: Sequence[VariantSpec], session_id: str | None = None) -> None:
        self.id = session_id or f"{datetime.now():%Y%m%d-%H%M%S}-{uuid.uuid4().hex[:6]}"
        self.specs = tuple(specs)
        names = [s.name for s in self.specs]
        if len(set(names)) != len(names):
            raise ValueError("Variant names must be unique within a session")
        self.started_at = datetime.now()
        self.outcomes: dict[str, VariantOutcome] = {}
        self.comparisons: list[ComparisonResult] = []
        self.analysis = SimilarityAnalysis()
        self.recommendations: list[str] = []
        self.warnings: list[str] = []
        self.summary: SessionSummary | None = None

    def add_outcome(self, outcome: VariantOutcome) -> None:
        if self.summary is not None:
            raise RuntimeError(f"Session {self.id} is already finalized")
        self.outcomes[outcome.name] = outcome

    def add_warning(self, message: str) -> None:
        logger.warning("%s", message)
        self.warnings.append(message)

    def finalize(self, process_stats: PoolStats) -> SessionSummary:
        """Freeze the session; every spec must have an outcome.

        Raises:
            RuntimeError: If already finalized or a variant has no outcome.
        """
        if self.summary is not None:
            raise RuntimeError(f"Session {self.id} is already finalized")
        missing = [s.name for s in self.specs if s.name not in self.outcomes]
        if missing:
            raise RuntimeError(f"Variants without an outcome: {', '.join(missing)}")

        self.summary = SessionSummary(
            session_id=self.id,
            started_at=self.started_at,
            ended_at=datetime.now(),
            specs=self.specs,
            outcomes=tuple(self.outcomes[s.name] for s in self.specs),
            process_stats=process_stats,
            comparisons=tuple(self.comparisons),
            analysis=self.analysis,
            comparison_recommendations=tuple(self.recommendations),
            warnings=tuple(self.warnings),
        )
        return self.summary


class SessionReporter(Protocol):
    def report(self, summary: SessionSummary) -> dict[str, Path]:
        """Persist or publish ``summary``; returns written paths by kind."""
        ...


class VariantSession:
    """Wires manager, pool and engine together for one repository.

    The pool and the manager share one ``ProcessRegistry`` so that tearing
    down a workspace also stops its worker.

    Example:
        >>> session = VariantSession(repo, config, reporter=FileSessionReporter(config.reports_dir))
        >>> summary = session.run(load_variants_file("variants.yaml"))
        >>> summary.success_rate
    """

    def __init__(
        self,
        repo_root: Path | str,
        config: OrchestratorConfig | None = None,
        *,
        manager: WorkspaceManager | None = None,
        orchestrator: ProcessOrchestrator | None = None,
        engine: ComparisonEngine | None = None,
        reporter: SessionReporter | None = None,
        on_event: EventCallback | None = None,
    ) -> None:
        self.config = config or OrchestratorConfig()
        registry = orchestrator.registry if orchestrator is not None else ProcessRegistry()
        self.orchestrator = orchestrator or ProcessOrchestrator(self.config.pool, registry=registry)
        self.manager = manager or WorkspaceManager(repo_root, self.config.workspace, registry=registry)
        self.engine = engine or ComparisonEngine(weights=self.config.weights)
        self.reporter = reporter
        self.on_event = on_event

    def run(
        self,
        specs: Sequence[VariantSpec],
        *,
        session_id: str | None = None,
        timeout_s: float | None = None,
    ) -> SessionSummary:
        """Run every spec and return the finalized summary.

        Raises:
            SessionError: If the repository cannot be used at all.
        """
        session = Session(specs, session_id)
        logger.info("Session %s: %d variant(s), capacity %d", session.id, len(session.specs), self.orchestrator.capacity)
        try:
            self.manager.initialize()
        except ProvisioningError as exc:
            raise SessionError(f"Repository unusable for session {session.id}: {exc}") from exc

        unsubscribe = self.orchestrator.subscribe(self.on_event) if self.on_event else None
        try:
            handles = self._provision_and_submit(session, timeout_s)
            for name, handle in handles.items():
                result = handle.wait()
                session.add_outcome(VariantOutcome.from_result(result))
                if result.status is TaskStatus.COMPLETED and result.parse_warning:
                    session.add_warning(f"{name}: {result.parse_warning}")
            self._compare(session)
        finally:
            if unsubscribe is not None:
                unsubscribe()
            self._teardown(session)

        summary = session.finalize(self.orchestrator.get_status())
        self.orchestrator.reset_stats()
        logger.info(
            "Session %s finished: %d/%d succeeded in %.1fs",
            summary.session_id,
            len(summary.successful),
            len(summary.outcomes),
            summary.duration_s,
        )

        if self.reporter is not None:
            paths = self.reporter.report(summary)
            summary = dataclasses.replace(summary, report_paths=dict(paths))
        return summary

    def _provision_and_submit(self, session: Session, timeout_s: float | None) -> dict[str, TaskHandle]:
        # Provisioning is sequential; workers start as soon as each is ready.
        handles: dict[str, TaskHandle] = {}
        for spec in session.specs:
            ui = {**spec.ui_config(), "description": spec.description, "baseUrl": spec.base_url}
            try:
                workspace = self.manager.create_workspace(spec.name, config=ui)
            except ProvisioningError as exc:
                logger.error("Provisioning failed for %s: %s", spec.name, exc)
                session.add_outcome(VariantOutcome.provisioning_failed(spec.name, str(exc)))
                continue
            payload = build_instruction_payload(workspace, spec)
            handles[spec.name] = self.orchestrator.submit(workspace, payload, timeout_s=timeout_s)
        return handles

    def _compare(self, session: Session) -> None:
        completed = [o.result for o in session.outcomes.values() if o.success and o.result is not None]
        session.comparisons = self.engine.compare_all(completed)
        session.analysis = self.engine.cluster_and_rank(session.comparisons)
        session.recommendations = self.engine.generate_recommendations(session.analysis)

    def _teardown(self, session: Session) -> None:
        cancelled = self.orchestrator.cancel_all("session teardown")
        if cancelled:
            session.add_warning(f"Cancelled {len(cancelled)} unfinished task(s) at teardown")
        if not self.config.cleanup_on_exit:
            logger.info("Keeping workspaces under %s", self.manager.base_dir)
            return
        for ws_id, ok in self.manager.destroy_all().items():
            if not ok:
                session.add_warning(f"Cleanup of workspace {ws_id} was incomplete")
