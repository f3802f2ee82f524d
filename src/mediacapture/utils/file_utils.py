# -*- coding: utf-8 -*-
"""File helpers with UTF-8 defaults."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any


def ensure_dir(path: str | Path) -> Path:
    """Create a directory if it does not exist."""
    dir_path = Path(path)
    dir_path.mkdir(parents=True, exist_ok=True)
    return dir_path


def read_json_file(path: str | Path) -> dict[str, Any]:
    """Read a JSON file."""
    file_path = Path(path)
    with file_path.open("r", encoding="utf-8") as handle:
        data = json.load(handle)
    if not isinstance(data, dict):
        raise ValueError(f"Expected JSON object in {file_path}")
    return data


def write_json_file(path: str | Path, data: dict[str, Any]) -> Path:
    """Write JSON to a file with indentation."""
    file_path = Path(path)
    ensure_dir(file_path.parent)
    with file_path.open("w", encoding="utf-8") as handle:
        json.dump(data, handle, indent=2, ensure_ascii=True)
        handle.write("\n")
    return file_path


def write_bytes_atomic(path: str | Path, data: bytes) -> Path:
    """Write bytes through a temp file in the same directory, then rename."""
    file_path = Path(path)
    ensure_dir(file_path.parent)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{file_path.name}.", dir=str(file_path.parent))
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        os.replace(tmp_name, file_path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    return file_path
