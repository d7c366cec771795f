"""Atomic file writes for reports and workspace config files.

Readers never observe a partial file: content goes to a sibling temp file,
is fsync'd, then renamed over the target.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any


class AtomicWriteError(OSError):
    """Raised when an atomic write fails."""

    pass


def atomic_write_text(path: Path | str, content: str, encoding: str = "utf-8") -> None:
    """Write text to ``path`` atomically.

    Raises:
        AtomicWriteError: If the write or rename fails.
    """
    path = Path(path)
    tmp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(tmp_path, "w", encoding=encoding) as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except OSError as e:
        if tmp_path.exists():
            tmp_path.unlink(missing_ok=True)
        raise AtomicWriteError(f"Failed to write {path}: {e}") from e


def atomic_write_json(path: Path | str, data: Any, indent: int = 2) -> None:
    """Serialize ``data`` first, then write it atomically.

    Raises:
        ValueError: If ``data`` is not JSON serializable.
        AtomicWriteError: If the write fails.
    """
    try:
        content = json.dumps(data, indent=indent, ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Failed to serialize JSON for {path}: {e}") from e
    atomic_write_text(path, content + "\n")
