# -*- coding: utf-8 -*-
"""Recorder widget: mode selection, live preview, level meter and preview/upload actions."""

from __future__ import annotations

import logging
from pathlib import Path

import cv2
from PyQt6.QtCore import Qt, QTimer, pyqtSignal
from PyQt6.QtGui import QImage, QPixmap
from PyQt6.QtWidgets import (
    QButtonGroup,
    QFileDialog,
    QHBoxLayout,
    QLabel,
    QProgressBar,
    QPushButton,
    QVBoxLayout,
    QWidget,
)

from mediacapture.core.session import RecordingSession
from mediacapture.errors import CaptureError
from mediacapture.models.session_event import ARTIFACT_READY, ERROR, STATE_CHANGED, TICK, UPLOAD_COMPLETE, SessionEvent
from mediacapture.models.states import CaptureMode, SessionState

logger = logging.getLogger(__name__)

MODE_LABELS = {
    CaptureMode.CAMERA: "Camera",
    CaptureMode.SCREEN: "Screen",
    CaptureMode.SCREEN_WITH_CAMERA_AUDIO: "Screen + Mic",
}

ERROR_MESSAGES = {
    "permission_denied": "Access to camera or microphone was denied. Allow access in your system settings and retry.",
    "device_unavailable": "No matching input device was found, or screen sharing was cancelled.",
    "acquisition_timeout": "The device request timed out. Check for a pending permission prompt and retry.",
    "device_lost": "A capture device was disconnected. The partial recording was discarded.",
    "recording_failed": "The recording could not be encoded and was discarded. Check the audio and video settings.",
    "upload_failed": "Upload failed. The recording is kept, you can try again.",
}


def _format_clock(seconds: float) -> str:
    total = max(0, int(seconds))
    return f"{total // 60:02d}:{total % 60:02d}"


def frame_to_qimage(frame) -> QImage:
    """Convert a BGR numpy frame into a detached QImage."""
    rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
    height, width = rgb.shape[:2]
    image = QImage(rgb.data, width, height, rgb.strides[0], QImage.Format.Format_RGB888)
    return image.copy()


class RecorderWidget(QWidget):
    """Presentation layer over a `RecordingSession`; reacts to session events only."""

    event_received = pyqtSignal(object)
    upload_finished = pyqtSignal(str)

    def __init__(self, session: RecordingSession, parent: QWidget | None = None, refresh_ms: int = 66) -> None:
        super().__init__(parent)
        self.session = session
        self._elapsed = 0

        layout = QVBoxLayout(self)
        layout.setContentsMargins(12, 12, 12, 12)
        layout.setSpacing(8)

        mode_row = QHBoxLayout()
        self.mode_group = QButtonGroup(self)
        self.mode_group.setExclusive(True)
        self.mode_buttons: dict[CaptureMode, QPushButton] = {}
        for mode, text in MODE_LABELS.items():
            button = QPushButton(text)
            button.setCheckable(True)
            button.setChecked(mode is session.mode)
            button.clicked.connect(lambda _checked=False, m=mode: self._select_mode(m))
            self.mode_group.addButton(button)
            self.mode_buttons[mode] = button
            mode_row.addWidget(button)
        layout.addLayout(mode_row)

        self.error_banner = QLabel("")
        self.error_banner.setObjectName("errorBanner")
        self.error_banner.setWordWrap(True)
        self.error_banner.setStyleSheet("background:#fdecea;color:#611a15;padding:6px;border-radius:4px;")
        self.error_banner.hide()
        layout.addWidget(self.error_banner)

        self.preview_label = QLabel("Camera preview")
        self.preview_label.setAlignment(Qt.AlignmentFlag.AlignCenter)
        self.preview_label.setMinimumSize(480, 270)
        self.preview_label.setStyleSheet("background:#111;color:#888;")
        layout.addWidget(self.preview_label, 1)

        status_row = QHBoxLayout()
        self.rec_label = QLabel("")
        self.rec_label.setStyleSheet("color:#d32f2f;font-weight:bold;")
        self.duration_bar = QProgressBar()
        self.duration_bar.setRange(0, max(1, int(session.max_duration_seconds)))
        self.duration_bar.setTextVisible(False)
        status_row.addWidget(self.rec_label)
        status_row.addWidget(self.duration_bar, 1)
        layout.addLayout(status_row)

        level_row = QHBoxLayout()
        level_row.addWidget(QLabel("Level"))
        self.level_bar = QProgressBar()
        self.level_bar.setRange(0, 100)
        self.level_bar.setTextVisible(False)
        level_row.addWidget(self.level_bar, 1)
        layout.addLayout(level_row)

        buttons = QHBoxLayout()
        self.start_button = self._make_button("Start recording", self._start)
        self.retry_button = self._make_button("Retry", self._retry)
        self.mute_button = self._make_button("Mute", self._toggle_mute)
        self.stop_button = self._make_button("Stop", self._stop)
        self.discard_button = self._make_button("Discard", self._discard)
        self.download_button = self._make_button("Download", self._download)
        self.upload_button = self._make_button("Upload", self._upload)
        self.new_button = self._make_button("New recording", self._new_session)
        for button in (
            self.start_button,
            self.retry_button,
            self.mute_button,
            self.stop_button,
            self.discard_button,
            self.download_button,
            self.upload_button,
            self.new_button,
        ):
            buttons.addWidget(button)
        layout.addLayout(buttons)

        self.status_label = QLabel("")
        self.status_label.setWordWrap(True)
        layout.addWidget(self.status_label)

        self.event_received.connect(self._handle_event)
        self._forward_event = self.event_received.emit
        session.add_listener(self._forward_event)

        self._refresh_timer = QTimer(self)
        self._refresh_timer.setInterval(max(10, int(refresh_ms)))
        self._refresh_timer.timeout.connect(self._refresh_live)
        self._refresh_timer.start()

        self._apply_state(session.state)

    def _make_button(self, text: str, handler) -> QPushButton:
        button = QPushButton(text)
        button.clicked.connect(handler)
        return button

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def _run(self, action, *args):
        try:
            return action(*args)
        except CaptureError as exc:
            logger.warning("Action %s rejected: %s", getattr(action, "__name__", action), exc)
            self._show_error(exc)
        return None

    def _select_mode(self, mode: CaptureMode) -> None:
        if self._run(self.session.select_mode, mode) is None:
            self.mode_buttons[self.session.mode].setChecked(True)

    def _start(self) -> None:
        self._hide_error()
        self._run(self.session.start_recording)

    def _retry(self) -> None:
        self._hide_error()
        self._run(self.session.retry)

    def _toggle_mute(self) -> None:
        muted = self._run(self.session.toggle_mute)
        if muted is not None:
            self.mute_button.setText("Unmute" if muted else "Mute")

    def _stop(self) -> None:
        self._run(self.session.stop_recording)

    def _discard(self) -> None:
        self._run(self.session.discard)

    def _download(self) -> None:
        artifact = self.session.artifact
        if artifact is None:
            return
        suggested = self.session.egress.export_filename(artifact)
        target, _filter = QFileDialog.getSaveFileName(self, "Save recording", suggested, "Video (*.webm)")
        if target:
            self.export_to(Path(target))

    def export_to(self, target: Path) -> Path | None:
        path = self._run(self.session.export, target)
        if path is not None:
            self.status_label.setText(f"Saved to {path}")
        return path

    def _upload(self) -> None:
        self._hide_error()
        future = self._run(self.session.upload)
        if future is not None:
            self.status_label.setText("Uploading...")

    def _new_session(self) -> None:
        self._run(self.session.new_session)

    # ------------------------------------------------------------------
    # Session events (Qt thread)
    # ------------------------------------------------------------------

    def _handle_event(self, event: SessionEvent) -> None:
        if event.kind == STATE_CHANGED:
            self._apply_state(event.state)
        elif event.kind == TICK:
            self._elapsed = int(event.payload.get("elapsed", 0))
            self._update_clock()
        elif event.kind == ARTIFACT_READY:
            artifact = event.payload["artifact"]
            thumbnail = event.payload.get("thumbnail")
            self.status_label.setText(f"Recorded {artifact.duration:.0f}s ({artifact.size // 1024} KiB)")
            if thumbnail is not None:
                pixmap = QPixmap()
                pixmap.loadFromData(thumbnail.data, "JPG")
                self._set_preview_pixmap(pixmap)
        elif event.kind == UPLOAD_COMPLETE:
            locator = str(event.payload.get("locator", ""))
            self.status_label.setText(f"Uploaded: {locator}")
            self.upload_finished.emit(locator)
        elif event.kind == ERROR:
            error = event.payload.get("error")
            if isinstance(error, CaptureError):
                self._show_error(error)

    def _apply_state(self, state: SessionState) -> None:
        idle = state is SessionState.IDLE
        recording = state is SessionState.RECORDING
        preview = state is SessionState.PREVIEW
        errored = state is SessionState.ERROR

        for button in self.mode_buttons.values():
            button.setEnabled(idle or errored)
        self.start_button.setVisible(idle)
        self.retry_button.setVisible(errored)
        self.mute_button.setEnabled(recording)
        self.mute_button.setVisible(recording)
        self.stop_button.setVisible(recording)
        self.discard_button.setVisible(preview)
        self.download_button.setVisible(preview)
        self.upload_button.setVisible(preview)
        self.upload_button.setEnabled(preview)
        self.new_button.setVisible(state is SessionState.DONE)

        if state is SessionState.ACQUIRING:
            self.status_label.setText("Requesting devices...")
        elif recording:
            self._elapsed = 0
            self.mute_button.setText("Mute")
            self.status_label.setText("")
            self._update_clock()
        elif idle:
            self._elapsed = 0
            self.rec_label.setText("")
            self.duration_bar.setValue(0)
            self.level_bar.setValue(0)
            self.preview_label.setPixmap(QPixmap())
            self.preview_label.setText("Camera preview")
        if not recording:
            self.level_bar.setValue(0)

    def _update_clock(self) -> None:
        limit = self.session.max_duration_seconds
        self.rec_label.setText(f"REC {_format_clock(self._elapsed)} / {_format_clock(limit)}")
        self.duration_bar.setValue(min(int(limit), self._elapsed))

    def _show_error(self, error: CaptureError) -> None:
        message = ERROR_MESSAGES.get(error.kind, str(error))
        self.error_banner.setText(message)
        self.error_banner.show()

    def _hide_error(self) -> None:
        self.error_banner.hide()
        self.error_banner.setText("")

    # ------------------------------------------------------------------
    # Live refresh
    # ------------------------------------------------------------------

    def _refresh_live(self) -> None:
        if self.session.state is not SessionState.RECORDING:
            return
        level = self.session.audio_level
        self.level_bar.setValue(int(round(level)) if level is not None else 0)
        frame = self.session.preview_frame()
        if frame is None:
            return
        try:
            image = frame_to_qimage(frame)
        except cv2.error as exc:
            logger.debug("Preview frame conversion failed: %s", exc)
            return
        self._set_preview_pixmap(QPixmap.fromImage(image))

    def _set_preview_pixmap(self, pixmap: QPixmap) -> None:
        if pixmap.isNull():
            return
        scaled = pixmap.scaled(
            self.preview_label.size(),
            Qt.AspectRatioMode.KeepAspectRatio,
            Qt.TransformationMode.SmoothTransformation,
        )
        self.preview_label.setPixmap(scaled)

    def closeEvent(self, event) -> None:  # noqa: N802 - Qt API
        self._refresh_timer.stop()
        self.session.remove_listener(self._forward_event)
        super().closeEvent(event)
