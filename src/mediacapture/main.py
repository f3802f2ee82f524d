# -*- coding: utf-8 -*-
"""Application entry point."""

from __future__ import annotations

import logging
import sys
import traceback
from pathlib import Path

from PyQt6.QtWidgets import QApplication, QMainWindow, QMessageBox

from mediacapture.config import ConfigError, build_session, load_config
from mediacapture.constants import APP_NAME, APP_VERSION
from mediacapture.gui.recorder_widget import RecorderWidget
from mediacapture.utils.logger import setup_session_logging


def global_exception_handler(exc_type, exc_value, exc_traceback):
    """Log fatal errors and keep a copy in logs/LAST_CRASH.log."""
    error_msg = "".join(traceback.format_exception(exc_type, exc_value, exc_traceback))
    logging.getLogger().critical("FATAL CRASH:\n%s", error_msg)

    crash_path = Path.cwd() / "logs" / "LAST_CRASH.log"
    crash_path.parent.mkdir(parents=True, exist_ok=True)
    crash_path.write_text(error_msg, encoding="utf-8")

    if QApplication.instance():
        QMessageBox.critical(None, "Application Crash", f"A fatal error occurred.\nDetails saved to: {crash_path}")

    sys.__excepthook__(exc_type, exc_value, exc_traceback)


def main() -> int:
    """Start the recorder window."""
    session_log_path = setup_session_logging(Path.cwd(), APP_NAME)
    logger = logging.getLogger(__name__)
    sys.excepthook = global_exception_handler
    app = QApplication(sys.argv)
    if session_log_path is not None:
        logger.info("Session log file: %s", session_log_path)

    settings_path = Path(sys.argv[1]) if len(sys.argv) > 1 else None
    try:
        settings = load_config(settings_path)
    except ConfigError as exc:
        QMessageBox.critical(None, "Invalid settings", str(exc))
        return 2

    session = build_session(settings)
    window = QMainWindow()
    window.setWindowTitle(f"{APP_NAME} {APP_VERSION}")
    window.setCentralWidget(RecorderWidget(session))
    window.resize(960, 720)
    window.show()

    app.aboutToQuit.connect(session.close)
    return app.exec()


if __name__ == "__main__":
    raise SystemExit(main())
