"""UTF-8 text helpers and atomic JSON documents for persisted state."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

PathLike = Path | str


def _as_path(path: PathLike) -> Path:
    return path if isinstance(path, Path) else Path(path)


def read_text(path: PathLike, errors: str = "strict") -> str:
    """Read *path* as UTF-8 text."""
    return _as_path(path).read_text(encoding="utf-8", errors=errors)


def write_text(path: PathLike, text: str) -> None:
    """Write *text* to *path* as UTF-8, creating parent directories."""
    p = _as_path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(text, encoding="utf-8")


def read_json(path: PathLike) -> Any:
    """Load a JSON document. Raises ``FileNotFoundError``/``json.JSONDecodeError``."""
    return json.loads(read_text(path))


def write_json_atomic(path: PathLike, data: Any) -> None:
    """Write *data* as indented JSON via a temp file + rename.

    Readers in another process never observe a half-written document.
    """
    p = _as_path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{p.name}.", dir=p.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp, p)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise
