"""Structured-output extraction from worker stdout.

Workers are loosely specified: they may end their output with a JSON object
or array on its own line, or print fixed marker lines. The pool only talks to
``OutputParser``; swapping in a stricter protocol means adding a strategy.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Protocol

from ..errors import OutputParseWarning

MARKER_PATTERNS: dict[str, re.Pattern[str]] = {
    "screenshots": re.compile(r"Screenshot saved:\s*(.+?)\s*$"),
    "reports": re.compile(r"Report generated:\s*(.+?)\s*$"),
    "changes": re.compile(r"File modified:\s*(.+?)\s*$"),
    "errors": re.compile(r"Error:\s*(.+?)\s*$"),
}


@dataclass(frozen=True)
class ParseOutcome:
    """Parsed worker output and the strategy that produced it."""

    outputs: dict[str, Any] | list[Any] | None
    strategy: str | None
    warning: str | None = None

    @property
    def structured(self) -> bool:
        return self.outputs is not None


class OutputStrategy(Protocol):
    name: str

    def extract(self, stdout: str) -> dict[str, Any] | list[Any] | None:
        """Return structured data, or None if this strategy found nothing."""
        ...


class OutputParser(Protocol):
    def parse(self, stdout: str) -> ParseOutcome: ...


class JsonLineStrategy:
    """Last syntactically valid JSON object/array that sits on its own line."""

    name = "json"

    def extract(self, stdout: str) -> dict[str, Any] | list[Any] | None:
        for raw in reversed(stdout.splitlines()):
            line = raw.strip()
            if not line or line[0] not in "{[":
                continue
            try:
                obj = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(obj, (dict, list)):
                return obj
        return None


class MarkerStrategy:
    """Fixed marker lines: screenshots, reports, modified files and errors."""

    name = "markers"

    def __init__(self, patterns: dict[str, re.Pattern[str]] | None = None) -> None:
        self.patterns = patterns or MARKER_PATTERNS

    def extract(self, stdout: str) -> dict[str, Any] | None:
        found: dict[str, list[str]] = {key: [] for key in self.patterns}
        matched = False
        for line in stdout.splitlines():
            for key, pattern in self.patterns.items():
                m = pattern.search(line)
                if m:
                    found[key].append(m.group(1))
                    matched = True
        return found if matched else None


class CompositeOutputParser:
    """Tries each strategy in order; the first non-empty result wins."""

    def __init__(self, strategies: list[OutputStrategy] | None = None) -> None:
        self.strategies: list[OutputStrategy] = strategies or [JsonLineStrategy(), MarkerStrategy()]

    def parse(self, stdout: str) -> ParseOutcome:
        for strategy in self.strategies:
            outputs = strategy.extract(stdout)
            if outputs is not None:
                return ParseOutcome(outputs=outputs, strategy=strategy.name)
        names = ", ".join(s.name for s in self.strategies)
        warning = OutputParseWarning(f"No structured output found in worker stdout (tried: {names})")
        return ParseOutcome(outputs=None, strategy=None, warning=str(warning))


def default_output_parser() -> CompositeOutputParser:
    return CompositeOutputParser()
