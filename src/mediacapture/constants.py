# -*- coding: utf-8 -*-
"""Application constants."""

APP_NAME = "mediacapture"
APP_VERSION = "0.1.0"

DEFAULT_SETTINGS_FILE = "settings.json"

# 10 minutes, the recorder widget default.
DEFAULT_MAX_DURATION_SECONDS = 600
DEFAULT_CHUNK_INTERVAL_SECONDS = 1.0
DEFAULT_FRAME_RATE = 20
DEFAULT_ACQUISITION_TIMEOUT_SECONDS = 30.0
# How long stop waits for a finalize the duration timer already started.
FINALIZE_WAIT_SECONDS = 10.0

DEFAULT_AUDIO_SAMPLE_RATE = 48000
DEFAULT_AUDIO_CHANNELS = 1
# Rates libopus accepts; other input rates are resampled to 48 kHz.
OPUS_SAMPLE_RATES = (8000, 12000, 16000, 24000, 48000)

LEVEL_REFRESH_HZ = 60
LEVEL_FFT_SIZE = 256
LEVEL_MIN_DECIBELS = -100.0
LEVEL_MAX_DECIBELS = -30.0

THUMBNAIL_JPEG_QUALITY = 70

UPLOAD_MAX_BYTES = 50 * 1024 * 1024
UPLOAD_FIELD_NAME = "file"

RESOLUTION_PRESETS: dict[str, tuple[int, int]] = {
    "240p": (320, 240),
    "480p": (640, 480),
    "720p": (1280, 720),
    "1080p": (1920, 1080),
    "1440p": (2560, 1440),
    "4k": (3840, 2160),
}

CAMERA_RESOLUTION = "720p"
SCREEN_RESOLUTION = "1080p"
# Only the microphone of this camera is used, so the video request stays small.
COMPANION_CAMERA_RESOLUTION = "240p"

MEDIA_EXTENSIONS = {
    "video/webm": "webm",
    "video/mp4": "mp4",
    "video/x-matroska": "mkv",
    "image/jpeg": "jpg",
}

EXPORT_FILENAME_TEMPLATE = "recording_{timestamp_ms}.{extension}"
