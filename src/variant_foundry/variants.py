"""Variant specifications (orchestrator input)."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import read_structured_file
from .errors import ConfigError


class VariantSpec(BaseModel):
    """One UI variant to generate.

    Field names follow the variants-file format; ``baseUrl`` is accepted as an
    alias of ``base_url``.
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)

    name: str = Field(..., min_length=1)
    base_url: str = Field(..., min_length=1, alias="baseUrl")
    description: str | None = None
    theme: str | None = None
    components: list[str] = Field(default_factory=list)
    layout: str | None = None
    instructions: dict[str, Any] = Field(default_factory=dict)

    def ui_config(self) -> dict[str, Any]:
        """UI section written into the workspace config file."""
        return {
            "variation": self.name,
            "theme": self.theme,
            "components": list(self.components),
            "layout": self.layout,
        }


def load_variant_specs(data: Any) -> list[VariantSpec]:
    """Validate variant specs from a list or a ``{"variants": [...]}`` mapping.

    Raises:
        ConfigError: On validation failure or duplicate variant names.
    """
    if isinstance(data, dict) and "variants" in data:
        data = data["variants"]
    if not isinstance(data, list):
        raise ConfigError(f"Variants must be a list, got {type(data).__name__}")

    specs: list[VariantSpec] = []
    seen: set[str] = set()
    for index, item in enumerate(data):
        try:
            spec = VariantSpec.model_validate(item)
        except ValidationError as exc:
            raise ConfigError(f"Invalid variant at index {index}: {exc}") from exc
        if spec.name in seen:
            raise ConfigError(f"Duplicate variant name: {spec.name}")
        seen.add(spec.name)
        specs.append(spec)
    return specs


def load_variants_file(path: Path | str) -> list[VariantSpec]:
    """Load variant specs from a YAML or JSON file."""
    return load_variant_specs(read_structured_file(path))
