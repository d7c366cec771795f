# SPDX-License-Identifier: MIT
"""Unit tests for variant_foundry/atomic_io.py.

Atomic writes back both the session reports and the per-workspace config
files, so readers must never observe a partial document.
"""

from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from variant_foundry.atomic_io import AtomicWriteError, atomic_write_json, atomic_write_text


# -----------------------------------------------------------------------------
# atomic_write_text tests
# -----------------------------------------------------------------------------


class TestAtomicWriteText:
    """Tests for atomic_write_text function."""

    def test_basic_write(self, tmp_path: Path) -> None:
        target = tmp_path / ".env.workspace"
        atomic_write_text(target, "PORT=3000\n")
        assert target.read_text() == "PORT=3000\n"

    def test_creates_parent_directories(self, tmp_path: Path) -> None:
        """Parent directories are created if they don't exist."""
        target = tmp_path / "reports" / "nested" / "session.md"
        atomic_write_text(target, "# Report")
        assert target.read_text() == "# Report"

    def test_overwrites_existing_file(self, tmp_path: Path) -> None:
        target = tmp_path / "session.md"
        target.write_text("Old content")
        atomic_write_text(target, "New content")
        assert target.read_text() == "New content"

    def test_unicode_content(self, tmp_path: Path) -> None:
        target = tmp_path / "unicode.md"
        content = "Variante: dunkles Thema, 世界"
        atomic_write_text(target, content)
        assert target.read_text(encoding="utf-8") == content

    def test_no_temp_file_left_on_success(self, tmp_path: Path) -> None:
        """Only the target remains after a successful write."""
        target = tmp_path / "test.txt"
        atomic_write_text(target, "Content")
        assert [p.name for p in tmp_path.iterdir()] == ["test.txt"]

    def test_path_as_string(self, tmp_path: Path) -> None:
        target = str(tmp_path / "test.txt")
        atomic_write_text(target, "Content")
        assert Path(target).read_text() == "Content"

    def test_failed_replace_cleans_up(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        target = tmp_path / "test.txt"
        target.write_text("original")

        def fail_replace(src: object, dst: object) -> None:
            raise OSError("rename refused")

        monkeypatch.setattr(os, "replace", fail_replace)
        with pytest.raises(AtomicWriteError, match="rename refused"):
            atomic_write_text(target, "new")

        assert target.read_text() == "original"
        assert [p.name for p in tmp_path.iterdir()] == ["test.txt"]


# -----------------------------------------------------------------------------
# atomic_write_json tests
# -----------------------------------------------------------------------------


class TestAtomicWriteJson:
    """Tests for atomic_write_json function."""

    def test_basic_dict_write(self, tmp_path: Path) -> None:
        target = tmp_path / ".workspace-config.json"
        data = {"workspace": {"id": "dark-1", "port": 3001}}
        atomic_write_json(target, data)
        assert json.loads(target.read_text()) == data
        assert target.read_text().endswith("\n")

    def test_non_ascii_is_kept_readable(self, tmp_path: Path) -> None:
        target = tmp_path / "report.json"
        atomic_write_json(target, {"variant": "café"})
        assert "café" in target.read_text(encoding="utf-8")

    def test_unserializable_data(self, tmp_path: Path) -> None:
        target = tmp_path / "bad.json"
        with pytest.raises(ValueError, match="serialize"):
            atomic_write_json(target, {"path": object()})
        assert not target.exists()
