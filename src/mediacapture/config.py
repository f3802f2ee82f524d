# -*- coding: utf-8 -*-
"""Settings persistence, validation and session wiring."""

from __future__ import annotations

import os
from copy import deepcopy
from pathlib import Path
from typing import Any

from mediacapture.constants import (
    DEFAULT_ACQUISITION_TIMEOUT_SECONDS,
    DEFAULT_AUDIO_CHANNELS,
    DEFAULT_AUDIO_SAMPLE_RATE,
    DEFAULT_CHUNK_INTERVAL_SECONDS,
    DEFAULT_FRAME_RATE,
    DEFAULT_MAX_DURATION_SECONDS,
    DEFAULT_SETTINGS_FILE,
    LEVEL_FFT_SIZE,
    LEVEL_REFRESH_HZ,
    OPUS_SAMPLE_RATES,
    RESOLUTION_PRESETS,
    THUMBNAIL_JPEG_QUALITY,
    UPLOAD_FIELD_NAME,
    UPLOAD_MAX_BYTES,
)
from mediacapture.models.states import CaptureMode
from mediacapture.utils.file_utils import read_json_file, write_json_file

ENV_UPLOAD_TOKEN = "MEDIACAPTURE_UPLOAD_TOKEN"
ENV_UPLOAD_URL = "MEDIACAPTURE_UPLOAD_URL"

DEFAULT_CONFIG: dict[str, Any] = {
    "capture": {
        "mode": CaptureMode.CAMERA.value,
        "camera_index": 0,
        "camera_url": "",
        "microphone_index": None,
        "screen_monitor": 1,
        "screen_audio_device": None,
        "camera_resolution": "720p",
        "screen_resolution": "1080p",
        "frame_rate": DEFAULT_FRAME_RATE,
        "audio_sample_rate": DEFAULT_AUDIO_SAMPLE_RATE,
        "audio_channels": DEFAULT_AUDIO_CHANNELS,
        "acquisition_timeout_seconds": DEFAULT_ACQUISITION_TIMEOUT_SECONDS,
    },
    "recording": {
        "max_duration_seconds": DEFAULT_MAX_DURATION_SECONDS,
        "chunk_interval_seconds": DEFAULT_CHUNK_INTERVAL_SECONDS,
        "video_codec": "libvpx",
        "audio_codec": "libopus",
    },
    "monitor": {"refresh_hz": LEVEL_REFRESH_HZ, "fft_size": LEVEL_FFT_SIZE},
    "thumbnail": {"jpeg_quality": THUMBNAIL_JPEG_QUALITY, "max_width": 0},
    "upload": {
        "endpoint": "",
        "public_base_url": "",
        "api_token": "USE_ENV_FILE",
        "timeout_seconds": 60,
        "max_bytes": UPLOAD_MAX_BYTES,
        "field_name": UPLOAD_FIELD_NAME,
        "local_dir": "uploads",
    },
    "export": {"directory": "recordings"},
}


class ConfigError(ValueError):
    """Raised when settings are invalid."""


def get_default_config() -> dict[str, Any]:
    """Return a deep copy of the default config."""
    return deepcopy(DEFAULT_CONFIG)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _load_env_file(env_path: Path) -> dict[str, str]:
    """Load a simple .env file (KEY=VALUE)."""
    values: dict[str, str] = {}
    if not env_path.exists():
        return values

    for raw_line in env_path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip()
        if not key:
            continue
        if (value.startswith('"') and value.endswith('"')) or (
            value.startswith("'") and value.endswith("'")
        ):
            value = value[1:-1]
        values[key] = value
    return values


def _apply_env_overrides(config: dict[str, Any], env_values: dict[str, str]) -> dict[str, Any]:
    """Apply .env and process environment overrides; the process environment wins."""
    merged = deepcopy(config)
    values = dict(env_values)
    for name in (ENV_UPLOAD_TOKEN, ENV_UPLOAD_URL):
        if os.environ.get(name, "").strip():
            values[name] = os.environ[name]

    token = values.get(ENV_UPLOAD_TOKEN, "").strip()
    url = values.get(ENV_UPLOAD_URL, "").strip()
    if token:
        merged.setdefault("upload", {})
        merged["upload"]["api_token"] = token
    if url:
        merged.setdefault("upload", {})
        merged["upload"]["endpoint"] = url
    return merged


def _is_resolution(value: Any) -> bool:
    raw = str(value).strip().lower()
    if raw in RESOLUTION_PRESETS:
        return True
    left, sep, right = raw.partition("x")
    return bool(sep) and left.isdigit() and right.isdigit()


def validate_config(config: dict[str, Any]) -> None:
    """Validate the fields the session depends on."""
    capture = config.get("capture", {})
    try:
        CaptureMode.parse(capture.get("mode"))
    except ValueError as exc:
        raise ConfigError(f"capture.mode: {exc}") from None
    for key in ("camera_resolution", "screen_resolution"):
        if not _is_resolution(capture.get(key)):
            raise ConfigError(f"capture.{key} must be a preset ({', '.join(RESOLUTION_PRESETS)}) or WxH")
    frame_rate = capture.get("frame_rate")
    if not isinstance(frame_rate, (int, float)) or not (1 <= frame_rate <= 60):
        raise ConfigError("capture.frame_rate must be in range 1..60")
    timeout = capture.get("acquisition_timeout_seconds")
    if timeout is not None and (not isinstance(timeout, (int, float)) or timeout <= 0):
        raise ConfigError("capture.acquisition_timeout_seconds must be > 0 or null")
    if capture.get("audio_channels") not in {1, 2}:
        raise ConfigError("capture.audio_channels must be 1 or 2")
    if capture.get("audio_sample_rate") not in OPUS_SAMPLE_RATES:
        rates = ", ".join(str(rate) for rate in OPUS_SAMPLE_RATES)
        raise ConfigError(f"capture.audio_sample_rate must be one of {rates}")

    recording = config.get("recording", {})
    max_duration = recording.get("max_duration_seconds")
    if not isinstance(max_duration, int) or not (1 <= max_duration <= 86400):
        raise ConfigError("recording.max_duration_seconds must be an int in range 1..86400")
    chunk_interval = recording.get("chunk_interval_seconds")
    if not isinstance(chunk_interval, (int, float)) or not (0.1 <= float(chunk_interval) <= 60):
        raise ConfigError("recording.chunk_interval_seconds must be in range 0.1..60")

    monitor = config.get("monitor", {})
    refresh_hz = monitor.get("refresh_hz")
    if not isinstance(refresh_hz, (int, float)) or not (1 <= refresh_hz <= 240):
        raise ConfigError("monitor.refresh_hz must be in range 1..240")
    fft_size = monitor.get("fft_size")
    if not isinstance(fft_size, int) or fft_size < 32 or fft_size & (fft_size - 1):
        raise ConfigError("monitor.fft_size must be a power of two >= 32")

    quality = config.get("thumbnail", {}).get("jpeg_quality")
    if not isinstance(quality, int) or not (1 <= quality <= 100):
        raise ConfigError("thumbnail.jpeg_quality must be an int in range 1..100")

    max_bytes = config.get("upload", {}).get("max_bytes")
    if not isinstance(max_bytes, int) or max_bytes <= 0:
        raise ConfigError("upload.max_bytes must be a positive int")


def load_config(path: str | Path | None = None) -> dict[str, Any]:
    """Load config from JSON and merge into defaults."""
    config_path = Path(path or DEFAULT_SETTINGS_FILE)
    env_values = _load_env_file(config_path.parent / ".env")
    if not config_path.exists():
        return _apply_env_overrides(get_default_config(), env_values)

    loaded = read_json_file(config_path)
    merged = _deep_merge(get_default_config(), loaded)
    merged = _apply_env_overrides(merged, env_values)
    validate_config(merged)
    return merged


def _strip_secrets(config: dict[str, Any]) -> dict[str, Any]:
    """Replace the upload token with the placeholder before writing to disk."""
    config_copy = deepcopy(config)
    upload = config_copy.get("upload", {})
    if upload.get("api_token") and upload["api_token"] != "USE_ENV_FILE":
        upload["api_token"] = "USE_ENV_FILE"
    return config_copy


def save_config(config: dict[str, Any], path: str | Path | None = None) -> Path:
    """Validate and save config as JSON, without the upload token.

    The token belongs in the .env file next to settings.json.
    """
    validate_config(config)
    config_path = Path(path or DEFAULT_SETTINGS_FILE)
    write_json_file(config_path, _strip_secrets(config))
    return config_path


def upload_settings(config: dict[str, Any]) -> dict[str, Any]:
    """Upload section with the token placeholder resolved to an empty string."""
    upload = dict(config.get("upload", {}))
    if upload.get("api_token") == "USE_ENV_FILE":
        upload["api_token"] = ""
    return upload


def build_session(
    config: dict[str, Any] | None = None,
    *,
    provider: Any = None,
    scheduler: Any = None,
    muxer_factory: Any = None,
    destination: Any = None,
):
    """Wire a `RecordingSession` from settings. Collaborators can be injected for tests."""
    from mediacapture.core.session import RecordingSession
    from mediacapture.integrations.upload_client import destination_from_config
    from mediacapture.pipeline.capture import CaptureSourceManager, VideoConstraints
    from mediacapture.pipeline.egress import ArtifactEgress
    from mediacapture.pipeline.level_meter import SignalMonitor
    from mediacapture.pipeline.muxer import WebmMuxer
    from mediacapture.pipeline.recorder import RecorderEngine
    from mediacapture.pipeline.scheduler import ThreadScheduler
    from mediacapture.pipeline.snapshot import SnapshotExtractor

    settings = config if config is not None else get_default_config()
    validate_config(settings)
    capture = settings["capture"]
    recording = settings["recording"]
    frame_rate = float(capture["frame_rate"])

    if provider is None:
        from mediacapture.pipeline.devices import LocalCaptureProvider

        provider = LocalCaptureProvider(
            camera_index=int(capture.get("camera_index", 0)),
            camera_url=str(capture.get("camera_url", "")),
            microphone_index=capture.get("microphone_index"),
            screen_monitor=int(capture.get("screen_monitor", 1)),
            screen_audio_device=capture.get("screen_audio_device"),
            sample_rate=int(capture.get("audio_sample_rate", DEFAULT_AUDIO_SAMPLE_RATE)),
            channels=int(capture.get("audio_channels", DEFAULT_AUDIO_CHANNELS)),
        )
    scheduler = scheduler or ThreadScheduler()

    manager = CaptureSourceManager(
        provider,
        camera_constraints=VideoConstraints.from_resolution(capture["camera_resolution"], frame_rate, facing="user"),
        screen_constraints=VideoConstraints.from_resolution(capture["screen_resolution"], frame_rate),
        timeout=capture.get("acquisition_timeout_seconds"),
    )
    if muxer_factory is None:
        video_codec = str(recording.get("video_codec", "libvpx"))
        audio_codec = str(recording.get("audio_codec", "libopus"))

        def muxer_factory(session):
            return WebmMuxer.for_session(session, frame_rate, video_codec=video_codec, audio_codec=audio_codec)

    engine = RecorderEngine(
        scheduler,
        muxer_factory=muxer_factory,
        chunk_interval=float(recording["chunk_interval_seconds"]),
        frame_rate=frame_rate,
    )
    monitor = SignalMonitor(scheduler, refresh_hz=settings["monitor"]["refresh_hz"], fft_size=settings["monitor"]["fft_size"])
    thumbnail = settings["thumbnail"]
    snapshot = SnapshotExtractor(jpeg_quality=thumbnail["jpeg_quality"], max_width=thumbnail.get("max_width") or None)
    egress = ArtifactEgress(
        destination if destination is not None else destination_from_config(upload_settings(settings)),
        export_dir=settings["export"]["directory"],
    )
    return RecordingSession(
        manager,
        monitor,
        engine,
        snapshot,
        egress,
        mode=capture["mode"],
        max_duration_seconds=recording["max_duration_seconds"],
    )
