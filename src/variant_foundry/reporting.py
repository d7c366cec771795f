"""Session reports: JSON document, schema check and markdown summary."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from jsonschema import Draft202012Validator

from .atomic_io import atomic_write_json, atomic_write_text
from .errors import VariantFoundryError
from .session import PROVISIONING_FAILED, SessionSummary, VariantOutcome

logger = logging.getLogger(__name__)

REPORT_PREFIX = "parallel-session"

_NULLABLE_NUMBER = {"type": ["number", "null"]}
_NULLABLE_STRING = {"type": ["string", "null"]}

SESSION_REPORT_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "title": "Parallel variant session report",
    "type": "object",
    "required": [
        "sessionId",
        "startedAt",
        "endedAt",
        "durationMs",
        "summary",
        "processStats",
        "variations",
        "comparison",
        "recommendations",
        "warnings",
    ],
    "properties": {
        "sessionId": {"type": "string", "minLength": 1},
        "startedAt": {"type": "string"},
        "endedAt": {"type": "string"},
        "durationMs": {"type": "integer", "minimum": 0},
        "summary": {
            "type": "object",
            "required": ["totalVariations", "successfulVariations", "failedVariations", "averageDurationMs"],
            "properties": {
                "totalVariations": {"type": "integer", "minimum": 0},
                "successfulVariations": {"type": "integer", "minimum": 0},
                "failedVariations": {"type": "integer", "minimum": 0},
                "averageDurationMs": {"type": "number", "minimum": 0},
            },
        },
        "processStats": {
            "type": "object",
            "required": ["capacity", "submitted", "started", "active", "completed", "failed"],
            "additionalProperties": {"type": "integer", "minimum": 0},
        },
        "variations": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["name", "success", "status", "durationMs", "workspacePath", "outputs", "error"],
                "properties": {
                    "name": {"type": "string"},
                    "success": {"type": "boolean"},
                    "status": {"type": "string"},
                    "durationMs": {"type": ["integer", "null"], "minimum": 0},
                    "workspacePath": _NULLABLE_STRING,
                    "outputs": {"type": ["object", "array", "null"]},
                    "error": _NULLABLE_STRING,
                    "parseWarning": _NULLABLE_STRING,
                    "failure": {
                        "type": ["object", "null"],
                        "required": ["category", "nextAction"],
                    },
                },
            },
        },
        "comparison": {
            "type": "object",
            "required": ["analysis", "comparisons", "recommendations"],
            "properties": {
                "analysis": {
                    "type": "object",
                    "required": ["totalComparisons", "averageSimilarity", "clusters"],
                    "properties": {
                        "totalComparisons": {"type": "integer", "minimum": 0},
                        "averageSimilarity": {"type": "number", "minimum": 0, "maximum": 1},
                    },
                },
                "comparisons": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "required": ["variations", "overallSimilarity"],
                        "properties": {
                            "variations": {"type": "array", "minItems": 2, "maxItems": 2},
                            "visualSimilarity": _NULLABLE_NUMBER,
                            "overallSimilarity": {"type": "number", "minimum": 0, "maximum": 1},
                        },
                    },
                },
                "recommendations": {"type": "array", "items": {"type": "string"}},
            },
        },
        "recommendations": {"type": "array", "items": {"type": "string"}},
        "warnings": {"type": "array", "items": {"type": "string"}},
    },
}


class ReportValidationError(VariantFoundryError):
    """A built report does not match ``SESSION_REPORT_SCHEMA``."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("Session report failed schema validation: " + "; ".join(errors))
        self.errors = errors


@dataclass
class FailureClassification:
    category: str
    next_action: str


def classify_variant_failure(outcome: VariantOutcome) -> FailureClassification | None:
    """Root-cause bucket and suggested next step for a failed variant."""
    if outcome.success:
        return None
    status = outcome.status
    error_text = (outcome.error or "").lower()

    if status == PROVISIONING_FAILED:
        return FailureClassification(
            category="provisioning",
            next_action="Check the repository state, free ports and workspace limits, then re-run the variant.",
        )
    if status == "timed_out":
        return FailureClassification(
            category="timeout",
            next_action="Raise the task timeout or simplify the variant instructions.",
        )
    if "failed to start" in error_text:
        return FailureClassification(
            category="spawn_error",
            next_action="Verify the worker command is installed and on PATH.",
        )
    if "cancel" in error_text or "teardown" in error_text or "workspace destroyed" in error_text:
        return FailureClassification(
            category="cancelled",
            next_action="Re-run the variant; it was stopped before finishing.",
        )
    if "exited with code" in error_text:
        return FailureClassification(
            category="worker_error",
            next_action="Inspect the worker stderr in the report, then re-run with a targeted fix.",
        )
    return FailureClassification(
        category="unknown_failure",
        next_action="Inspect logs, determine root cause, and re-run with a targeted fix.",
    )


def session_recommendations(summary: SessionSummary) -> list[str]:
    """Advice driven by the session's success rate."""
    total = len(summary.outcomes)
    if total == 0:
        return ["No variations were submitted."]

    recs: list[str] = []
    rate = summary.success_rate
    if rate == 1.0:
        recs.append("All variations completed successfully!")
    elif rate > 0.8:
        recs.append("Most variations succeeded. Review failed cases for improvements.")
    else:
        recs.append("Multiple failures detected. Check process configuration and resource limits.")
    if total > 1:
        recs.append("Consider running variation comparison analysis.")
    return recs


def _ms(seconds: float | None) -> int | None:
    return None if seconds is None else max(0, int(round(seconds * 1000)))


def build_session_report(summary: SessionSummary) -> dict[str, Any]:
    """Serialize ``summary`` into the stable report document."""
    durations = [o.duration_s for o in summary.outcomes if o.duration_s is not None]
    average_ms = (sum(durations) / len(durations) * 1000) if durations else 0.0

    variations = []
    for outcome in summary.outcomes:
        failure = classify_variant_failure(outcome)
        variations.append(
            {
                "name": outcome.name,
                "success": outcome.success,
                "status": outcome.status,
                "durationMs": _ms(outcome.duration_s),
                "workspacePath": outcome.workspace_path,
                "outputs": outcome.outputs if isinstance(outcome.outputs, (dict, list)) else None,
                "error": outcome.error,
                "parseWarning": outcome.parse_warning,
                "failure": (
                    {"category": failure.category, "nextAction": failure.next_action} if failure else None
                ),
            }
        )

    return {
        "sessionId": summary.session_id,
        "startedAt": summary.started_at.isoformat(),
        "endedAt": summary.ended_at.isoformat(),
        "durationMs": _ms(summary.duration_s) or 0,
        "summary": {
            "totalVariations": len(summary.outcomes),
            "successfulVariations": len(summary.successful),
            "failedVariations": len(summary.failed),
            "averageDurationMs": average_ms,
        },
        "processStats": summary.process_stats.to_dict(),
        "variations": variations,
        "comparison": {
            "analysis": summary.analysis.to_dict(),
            "comparisons": [c.to_dict() for c in summary.comparisons],
            "recommendations": list(summary.comparison_recommendations),
        },
        "recommendations": session_recommendations(summary),
        "warnings": list(summary.warnings),
    }


def validate_session_report(report: dict[str, Any]) -> list[str]:
    """Return schema violations as ``path: message`` strings (empty if valid)."""
    validator = Draft202012Validator(SESSION_REPORT_SCHEMA)
    errors = []
    for error in validator.iter_errors(report):
        path = ".".join(str(p) for p in error.absolute_path) or "(root)"
        errors.append(f"{path}: {error.message}")
    return errors


def _fmt_seconds(ms: float | None) -> str:
    return "n/a" if ms is None else f"{round(ms / 1000)}s"


def render_markdown(report: dict[str, Any]) -> str:
    """Human-readable companion to the JSON report."""
    summary = report["summary"]
    stats = report["processStats"]
    lines = [
        "# Parallel Variant Session Report",
        "",
        f"**Session ID:** {report['sessionId']}  ",
        f"**Started:** {report['startedAt']}  ",
        f"**Ended:** {report['endedAt']}  ",
        f"**Duration:** {_fmt_seconds(report['durationMs'])}  ",
        "",
        "## Summary",
        "",
        f"- **Total Variations:** {summary['totalVariations']}",
        f"- **Successful:** {summary['successfulVariations']}",
        f"- **Failed:** {summary['failedVariations']}",
        f"- **Average Duration:** {_fmt_seconds(summary['averageDurationMs'])}",
        "",
        "## Process Statistics",
        "",
        f"- **Capacity:** {stats['capacity']}",
        f"- **Started:** {stats['started']}",
        f"- **Completed:** {stats['completed']}",
        f"- **Failed:** {stats['failed']}",
        f"- **Timed out:** {stats.get('timed_out', 0)}",
        "",
        "## Variation Results",
    ]

    for v in report["variations"]:
        lines.extend(
            [
                "",
                f"### {v['name']}",
                f"- **Status:** {'Success' if v['success'] else 'Failed'} ({v['status']})",
                f"- **Duration:** {_fmt_seconds(v['durationMs'])}",
                f"- **Workspace:** `{v['workspacePath'] or 'none'}`",
            ]
        )
        if v["error"]:
            lines.append(f"- **Error:** {v['error'].splitlines()[0]}")
        if v.get("failure"):
            lines.append(f"- **Next action:** {v['failure']['nextAction']}")
        outputs = v["outputs"] if isinstance(v["outputs"], dict) else {}
        for key in ("screenshots", "reports"):
            if isinstance(outputs.get(key), list):
                lines.append(f"- **{key.capitalize()}:** {len(outputs[key])}")
        if v.get("parseWarning"):
            lines.append(f"- **Parse warning:** {v['parseWarning']}")

    analysis = report["comparison"]["analysis"]
    lines.extend(
        [
            "",
            "## Comparison",
            "",
            f"- **Comparisons:** {analysis['totalComparisons']}",
            f"- **Average similarity:** {analysis['averageSimilarity'] * 100:.1f}%",
        ]
    )
    for cluster in analysis["clusters"]:
        lines.append(f"- **{cluster['name']}** ({cluster['threshold']}): {cluster['count']}")
    lines.extend(f"- {rec}" for rec in report["comparison"]["recommendations"])

    lines.extend(["", "## Recommendations", ""])
    lines.extend(f"- {rec}" for rec in report["recommendations"])

    if report["warnings"]:
        lines.extend(["", "## Warnings", ""])
        lines.extend(f"- {w}" for w in report["warnings"])

    lines.extend(["", "---", "", "*Generated by variant-foundry*", ""])
    return "\n".join(lines)


class FileSessionReporter:
    """Writes ``parallel-session-<id>.json`` and ``.md`` into ``reports_dir``."""

    def __init__(self, reports_dir: Path | str) -> None:
        self.reports_dir = Path(reports_dir)

    def report(self, summary: SessionSummary) -> dict[str, Path]:
        """Build, validate and write both report files.

        Raises:
            ReportValidationError: If the report does not match the schema.
        """
        report = build_session_report(summary)
        errors = validate_session_report(report)
        if errors:
            raise ReportValidationError(errors)

        self.reports_dir.mkdir(parents=True, exist_ok=True)
        json_path = self.reports_dir / f"{REPORT_PREFIX}-{summary.session_id}.json"
        md_path = self.reports_dir / f"{REPORT_PREFIX}-{summary.session_id}.md"
        atomic_write_json(json_path, report)
        atomic_write_text(md_path, render_markdown(report))
        logger.info("Session report written to %s", json_path)
        return {"json": json_path, "markdown": md_path}
