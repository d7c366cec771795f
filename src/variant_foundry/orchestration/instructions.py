"""Instruction payload handed to each worker as its single argument."""

from __future__ import annotations

import copy
from typing import Any

from ..variants import VariantSpec
from ..workspaces.models import Workspace

TASK_NAME = "ui-variation-generation"

DEFAULT_WORKFLOW: tuple[str, ...] = (
    "analyze-current-implementation",
    "apply-variation-changes",
    "test-visual-changes",
    "validate-accessibility",
    "generate-screenshots",
    "create-variation-report",
)

DEFAULT_CONSTRAINTS: dict[str, bool] = {
    "maintainFunctionality": True,
    "preserveAccessibility": True,
    "keepResponsiveDesign": True,
    "followDesignSystem": True,
}

DEFAULT_OUTPUT: dict[str, Any] = {
    "screenshotsRequired": True,
    "reportFormat": "markdown",
    "includeComparison": True,
}


def build_instruction_payload(
    workspace: Workspace,
    spec: VariantSpec | None = None,
    overrides: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Assemble the worker instructions for ``workspace``.

    UI fields come from ``spec`` when given, otherwise from the configuration
    recorded on the workspace at creation. The spec's own ``instructions``
    mapping and then ``overrides`` are merged over the defaults (top-level keys
    replace).
    """
    if spec is not None:
        ui = spec.ui_config()
        description = spec.description
        base_url = spec.base_url
        extra = dict(spec.instructions)
    else:
        ui = dict(workspace.metadata.get("ui") or {})
        description = ui.get("description")
        base_url = ui.get("baseUrl")
        extra = {}

    payload: dict[str, Any] = {
        "task": TASK_NAME,
        "workspaceRoot": str(workspace.path),
        "variation": {
            "name": workspace.variant_name,
            "description": description or "",
            "theme": ui.get("theme") or "default",
            "components": list(ui.get("components") or []),
            "layout": ui.get("layout") or "default",
        },
        "workflow": list(DEFAULT_WORKFLOW),
        "constraints": dict(DEFAULT_CONSTRAINTS),
        "output": copy.deepcopy(DEFAULT_OUTPUT),
    }
    if base_url:
        payload["baseUrl"] = base_url
    payload.update(extra)
    if overrides:
        payload.update(overrides)
    return payload
