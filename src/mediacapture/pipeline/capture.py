# -*- coding: utf-8 -*-
"""Capture source acquisition and release."""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from mediacapture.constants import (
    CAMERA_RESOLUTION,
    COMPANION_CAMERA_RESOLUTION,
    DEFAULT_ACQUISITION_TIMEOUT_SECONDS,
    DEFAULT_FRAME_RATE,
    RESOLUTION_PRESETS,
    SCREEN_RESOLUTION,
)
from mediacapture.errors import AcquisitionTimeout, CaptureError, DeviceUnavailable
from mediacapture.models.states import CaptureMode
from mediacapture.pipeline.tracks import LIVE, AudioTrack, MediaStream, MediaTrack, VideoTrack

logger = logging.getLogger(__name__)

_UNSET = object()


def resolution_size(resolution: str) -> tuple[int, int]:
    """Parse a preset label (`720p`) or a `WxH` string, falling back to 1080p."""
    raw = str(resolution).strip().lower()
    if raw in RESOLUTION_PRESETS:
        return RESOLUTION_PRESETS[raw]
    if "x" in raw:
        left, right = raw.split("x", 1)
        try:
            width = max(1, int(left))
            height = max(1, int(right))
            return (width, height)
        except ValueError:
            pass
    return RESOLUTION_PRESETS["1080p"]


@dataclass(frozen=True)
class VideoConstraints:
    """What a device request asks for. Providers may deliver the nearest supported size."""

    width: int
    height: int
    frame_rate: float = float(DEFAULT_FRAME_RATE)
    facing: str | None = None
    audio: bool = True

    @classmethod
    def from_resolution(
        cls,
        resolution: str,
        frame_rate: float = float(DEFAULT_FRAME_RATE),
        facing: str | None = None,
    ) -> "VideoConstraints":
        width, height = resolution_size(resolution)
        return cls(width=width, height=height, frame_rate=float(frame_rate), facing=facing)


@dataclass
class CaptureSession:
    """Composed live inputs of one recording. Owned by the recording session while active."""

    mode: CaptureMode
    video_tracks: list[VideoTrack]
    audio_tracks: list[AudioTrack]
    streams: list[MediaStream] = field(default_factory=list)
    acquired_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    released: bool = False

    @property
    def video_track(self) -> VideoTrack | None:
        return self.video_tracks[0] if self.video_tracks else None

    @property
    def audio_track(self) -> AudioTrack | None:
        return self.audio_tracks[0] if self.audio_tracks else None

    def composed_tracks(self) -> list[MediaTrack]:
        return [*self.video_tracks, *self.audio_tracks]

    def underlying_tracks(self) -> list[MediaTrack]:
        return [track for stream in self.streams for track in stream.tracks]

    @property
    def active(self) -> bool:
        return not self.released and all(track.ready_state == LIVE for track in self.composed_tracks())


class CaptureSourceProvider(ABC):
    """Platform capture backend. Raise `PermissionDenied` or `DeviceUnavailable` on failure."""

    @abstractmethod
    def open_camera(self, constraints: VideoConstraints) -> MediaStream:
        """Open the local camera with its microphone."""

    @abstractmethod
    def open_screen(self, constraints: VideoConstraints) -> MediaStream:
        """Open a screen/window capture, with audio when the platform has any."""


class CaptureSourceManager:
    """Acquire composed capture sessions off the calling thread and release them."""

    def __init__(
        self,
        provider: CaptureSourceProvider,
        *,
        camera_constraints: VideoConstraints | None = None,
        screen_constraints: VideoConstraints | None = None,
        companion_constraints: VideoConstraints | None = None,
        timeout: float | None = DEFAULT_ACQUISITION_TIMEOUT_SECONDS,
    ) -> None:
        self.provider = provider
        self.camera_constraints = camera_constraints or VideoConstraints.from_resolution(
            CAMERA_RESOLUTION, facing="user"
        )
        self.screen_constraints = screen_constraints or VideoConstraints.from_resolution(SCREEN_RESOLUTION)
        self.companion_constraints = companion_constraints or VideoConstraints.from_resolution(
            COMPANION_CAMERA_RESOLUTION, facing="user"
        )
        self.timeout = timeout
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="mediacapture-acquire")
        self._device_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="mediacapture-device")
        self._lock = threading.Lock()
        self._held: list[CaptureSession] = []

    @property
    def held_count(self) -> int:
        """Number of live device tracks held by sessions that were not released."""
        with self._lock:
            sessions = list(self._held)
        return sum(
            1 for session in sessions for track in session.underlying_tracks() if track.ready_state == LIVE
        )

    def acquire(self, mode: CaptureMode | str, timeout: float | None | object = _UNSET) -> Future:
        """Start acquiring inputs for `mode`; the future resolves to a `CaptureSession`."""
        capture_mode = CaptureMode.parse(mode)
        limit = self.timeout if timeout is _UNSET else timeout
        logger.info("Acquiring capture session mode=%s timeout=%s", capture_mode.value, limit)
        return self._executor.submit(self._acquire_blocking, capture_mode, limit)

    def release(self, session: CaptureSession | None) -> None:
        """Stop every underlying track of `session`. Safe to call more than once."""
        if session is None:
            return
        with self._lock:
            if session.released:
                return
            session.released = True
            if session in self._held:
                self._held.remove(session)
        for stream in session.streams:
            stream.stop()
        logger.info("Released capture session mode=%s", session.mode.value)

    def shutdown(self) -> None:
        with self._lock:
            sessions = list(self._held)
        for session in sessions:
            self.release(session)
        self._executor.shutdown(wait=False)
        self._device_executor.shutdown(wait=False)

    def _acquire_blocking(self, mode: CaptureMode, timeout: float | None) -> CaptureSession:
        deadline = None if timeout is None else time.monotonic() + float(timeout)
        if mode is CaptureMode.CAMERA:
            stream = self._wait(
                self._device_executor.submit(self.provider.open_camera, self.camera_constraints), deadline, "camera"
            )
            session = self._compose(mode, stream, stream, [stream], require_audio=True)
        elif mode is CaptureMode.SCREEN:
            stream = self._wait(
                self._device_executor.submit(self.provider.open_screen, self.screen_constraints), deadline, "screen"
            )
            session = self._compose(mode, stream, stream, [stream], require_audio=False)
        else:
            session = self._acquire_screen_with_camera_audio(deadline)
        with self._lock:
            self._held.append(session)
        logger.info(
            "Capture session ready: mode=%s video=%s audio=%s",
            mode.value,
            [track.label for track in session.video_tracks],
            [track.label for track in session.audio_tracks],
        )
        return session

    def _acquire_screen_with_camera_audio(self, deadline: float | None) -> CaptureSession:
        # Both prompts are issued together; the screen request is awaited first.
        screen_future = self._device_executor.submit(self.provider.open_screen, self.screen_constraints)
        camera_future = self._device_executor.submit(self.provider.open_camera, self.companion_constraints)
        streams: dict[str, MediaStream] = {}
        failure: CaptureError | None = None
        for label, future in (("screen", screen_future), ("camera", camera_future)):
            try:
                streams[label] = self._wait(future, deadline, label)
            except CaptureError as exc:
                if failure is None:
                    failure = exc
        if failure is not None:
            for stream in streams.values():
                stream.stop()
            raise failure

        screen, camera = streams["screen"], streams["camera"]
        # Only the screen picture and the camera microphone are carried downstream.
        for track in [*camera.video_tracks(), *screen.audio_tracks()]:
            track.stop()
        return self._compose(
            CaptureMode.SCREEN_WITH_CAMERA_AUDIO, screen, camera, [screen, camera], require_audio=True
        )

    def _compose(
        self,
        mode: CaptureMode,
        video_source: MediaStream,
        audio_source: MediaStream,
        streams: list[MediaStream],
        *,
        require_audio: bool,
    ) -> CaptureSession:
        video_tracks = [track for track in video_source.video_tracks() if track.ready_state == LIVE]
        audio_tracks = [track for track in audio_source.audio_tracks() if track.ready_state == LIVE]
        missing = None
        if not video_tracks:
            missing = "video"
        elif require_audio and not audio_tracks:
            missing = "audio"
        if missing is not None:
            for stream in streams:
                stream.stop()
            raise DeviceUnavailable(f"No {missing} input available for mode {mode.value}")
        return CaptureSession(mode=mode, video_tracks=video_tracks, audio_tracks=audio_tracks, streams=streams)

    def _wait(self, future: Future, deadline: float | None, label: str) -> MediaStream:
        remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
        try:
            return future.result(timeout=remaining)
        except FutureTimeout:
            future.add_done_callback(_stop_late_stream(label))
            raise AcquisitionTimeout(f"{label.capitalize()} request timed out") from None
        except CaptureError:
            raise
        except Exception as exc:
            logger.exception("Unexpected %s provider failure", label)
            raise DeviceUnavailable(f"{label.capitalize()} request failed: {exc}") from exc


def _stop_late_stream(label: str) -> Callable[[Future], None]:
    def _callback(future: Future) -> None:
        if future.cancelled() or future.exception() is not None:
            return
        logger.warning("Late %s stream arrived after timeout; releasing it", label)
        future.result().stop()

    return _callback
