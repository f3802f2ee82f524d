# -*- coding: utf-8 -*-
"""Tests for run logging setup."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from mediacapture.utils.logger import setup_session_logging


@pytest.fixture
def clean_root_logger():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield root
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)
    for attr in ("_mediacapture_logging_configured", "_mediacapture_session_log"):
        if hasattr(root, attr):
            delattr(root, attr)


def test_setup_creates_log_file_once(tmp_path: Path, clean_root_logger) -> None:
    path = setup_session_logging(tmp_path, "Media Capture", level=logging.DEBUG)

    assert path is not None
    assert path.parent == tmp_path / "logs"
    assert path.name.startswith("media-capture-")
    logging.getLogger("mediacapture.test").info("hello from test")
    for handler in clean_root_logger.handlers:
        handler.flush()
    assert "hello from test" in path.read_text(encoding="utf-8")

    assert setup_session_logging(tmp_path / "other", "Media Capture") == path
    assert not (tmp_path / "other").exists()


def test_level_comes_from_environment(tmp_path: Path, clean_root_logger, monkeypatch) -> None:
    monkeypatch.setenv("MEDIACAPTURE_LOG_LEVEL", "warning")
    setup_session_logging(tmp_path, "mediacapture")
    assert clean_root_logger.level == logging.WARNING
