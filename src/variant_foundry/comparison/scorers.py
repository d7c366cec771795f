"""Scorer interfaces for the comparison engine, plus file-backed defaults.

Visual and metric scoring are collaborators the engine is given; nothing
here attempts image diffing. The defaults only read what workers leave in
their workspaces.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from ..orchestration.models import TaskResult

logger = logging.getLogger(__name__)

SCREENSHOT_SUFFIXES = (".png", ".jpg", ".jpeg", ".webp")


@dataclass(frozen=True)
class ComparableVariant:
    """What the engine needs to know about one completed variant."""

    name: str
    workspace_path: Path
    screenshots: tuple[Path, ...] = ()
    outputs: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_result(cls, result: TaskResult) -> ComparableVariant:
        """Build from a task result.

        Screenshots reported by the worker win; otherwise image files under
        ``<workspace>/screenshots/current`` are used.
        """
        root = Path(result.workspace_path)
        shots = [Path(s) if Path(s).is_absolute() else root / s for s in result.screenshots()]
        if not shots:
            current = root / "screenshots" / "current"
            if current.is_dir():
                shots = sorted(p for p in current.iterdir() if p.suffix.lower() in SCREENSHOT_SUFFIXES)
        outputs = result.outputs if isinstance(result.outputs, dict) else {}
        return cls(name=result.variant_name, workspace_path=root, screenshots=tuple(shots), outputs=dict(outputs))


class VisualScorer(Protocol):
    def score(self, a: ComparableVariant, b: ComparableVariant) -> float | None:
        """Visual similarity in [0, 1], or None when it cannot be judged."""
        ...


class MetricScorer(Protocol):
    name: str

    def score(self, variant: ComparableVariant) -> float | None:
        """A 0-100 score for ``variant``, or None when unavailable."""
        ...


def sha256_file(path: Path) -> str:
    return hashlib.sha256(path.read_bytes()).hexdigest()


class DigestVisualScorer:
    """Share of screenshots, matched by file name, with identical content.

    Names present on only one side count as mismatches. Returns None when
    either side has no readable screenshots.
    """

    def _digests(self, variant: ComparableVariant) -> dict[str, str]:
        digests: dict[str, str] = {}
        for shot in variant.screenshots:
            try:
                digests[shot.name] = sha256_file(shot)
            except OSError as exc:
                logger.debug("Skipping unreadable screenshot %s: %s", shot, exc)
        return digests

    def score(self, a: ComparableVariant, b: ComparableVariant) -> float | None:
        da = self._digests(a)
        db = self._digests(b)
        if not da or not db:
            return None
        names = set(da) | set(db)
        same = sum(1 for n in names if n in da and n in db and da[n] == db[n])
        return same / len(names)


class ReportScoreReader:
    """Reads a 0-100 ``score`` for one metric.

    Looks first at ``outputs["scores"][name]`` from the worker's structured
    output, then at ``<workspace>/reports/<name>.json``.
    """

    def __init__(self, name: str, reports_subdir: str = "reports") -> None:
        self.name = name
        self.reports_subdir = reports_subdir

    def score(self, variant: ComparableVariant) -> float | None:
        scores = variant.outputs.get("scores")
        if isinstance(scores, dict) and _is_number(scores.get(self.name)):
            return float(scores[self.name])

        path = variant.workspace_path / self.reports_subdir / f"{self.name}.json"
        if not path.is_file():
            return None
        try:
            report = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Unreadable %s report for %s: %s", self.name, variant.name, exc)
            return None
        value = report.get("score") if isinstance(report, dict) else None
        return float(value) if _is_number(value) else None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)
