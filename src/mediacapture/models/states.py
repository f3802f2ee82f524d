# -*- coding: utf-8 -*-
"""Capture mode and session lifecycle enums."""

from __future__ import annotations

from enum import Enum


class CaptureMode(str, Enum):
    """Which inputs a recording session composes."""

    CAMERA = "camera"
    SCREEN = "screen"
    # Screen video plus the camera microphone; the camera picture is dropped.
    SCREEN_WITH_CAMERA_AUDIO = "screen_with_camera"

    @classmethod
    def parse(cls, value: "str | CaptureMode") -> "CaptureMode":
        if isinstance(value, CaptureMode):
            return value
        raw = str(value).strip().lower().replace("-", "_")
        for mode in cls:
            if raw in {mode.value, mode.name.lower()}:
                return mode
        raise ValueError(f"Unknown capture mode: {value!r}")


class SessionState(str, Enum):
    """Lifecycle tag owned by the recording session."""

    IDLE = "idle"
    ACQUIRING = "acquiring"
    RECORDING = "recording"
    PREVIEW = "preview"
    UPLOADING = "uploading"
    DONE = "done"
    DISCARDED = "discarded"
    ERROR = "error"
