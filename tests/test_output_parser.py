# SPDX-License-Identifier: MIT
"""Unit tests for worker stdout parsing.

Two strategies, tried in order:
- JSON: last syntactically valid object/array on its own line
- Markers: "Screenshot saved:", "Report generated:", "File modified:", "Error:"
"""

from __future__ import annotations

from variant_foundry.orchestration.output_parser import (
    CompositeOutputParser,
    JsonLineStrategy,
    MarkerStrategy,
    default_output_parser,
)


class TestJsonLineStrategy:
    """Tests for JsonLineStrategy."""

    def test_last_valid_json_line_wins(self) -> None:
        stdout = '{"first": 1}\nworking...\n{"second": 2}\n'
        assert JsonLineStrategy().extract(stdout) == {"second": 2}

    def test_skips_trailing_malformed_json(self) -> None:
        stdout = '{"ok": true}\n{"broken": \n'
        assert JsonLineStrategy().extract(stdout) == {"ok": True}

    def test_accepts_arrays(self) -> None:
        assert JsonLineStrategy().extract('noise\n["a.png", "b.png"]\n') == ["a.png", "b.png"]

    def test_ignores_inline_json(self) -> None:
        assert JsonLineStrategy().extract('result = {"a": 1}\n') is None

    def test_empty_output(self) -> None:
        assert JsonLineStrategy().extract("") is None


class TestMarkerStrategy:
    """Tests for MarkerStrategy."""

    def test_collects_all_marker_kinds(self) -> None:
        stdout = "\n".join(
            [
                "Screenshot saved: shots/home.png",
                "Screenshot saved: shots/cart.png",
                "Report generated: reports/a11y.md",
                "File modified: src/theme.css",
                "Error: contrast too low",
                "unrelated line",
            ]
        )
        found = MarkerStrategy().extract(stdout)
        assert found == {
            "screenshots": ["shots/home.png", "shots/cart.png"],
            "reports": ["reports/a11y.md"],
            "changes": ["src/theme.css"],
            "errors": ["contrast too low"],
        }

    def test_no_markers(self) -> None:
        assert MarkerStrategy().extract("hello\nworld\n") is None


class TestCompositeOutputParser:
    """Tests for strategy ordering and the parse warning."""

    def test_json_preferred_over_markers(self) -> None:
        stdout = 'Screenshot saved: a.png\n{"screenshots": ["b.png"]}\n'
        outcome = default_output_parser().parse(stdout)
        assert outcome.strategy == "json"
        assert outcome.outputs == {"screenshots": ["b.png"]}
        assert outcome.warning is None
        assert outcome.structured

    def test_markers_fallback(self) -> None:
        outcome = default_output_parser().parse("Screenshot saved: a.png\n")
        assert outcome.strategy == "markers"
        assert outcome.outputs["screenshots"] == ["a.png"]

    def test_warning_when_nothing_parses(self) -> None:
        outcome = default_output_parser().parse("done\n")
        assert outcome.outputs is None
        assert outcome.strategy is None
        assert not outcome.structured
        assert "json" in outcome.warning and "markers" in outcome.warning

    def test_custom_strategy_order(self) -> None:
        parser = CompositeOutputParser([MarkerStrategy(), JsonLineStrategy()])
        outcome = parser.parse('Screenshot saved: a.png\n{"x": 1}\n')
        assert outcome.strategy == "markers"
