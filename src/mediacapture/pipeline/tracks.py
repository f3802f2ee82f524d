# -*- coding: utf-8 -*-
"""Live media track handles shared by the capture providers, the monitor and the recorder."""

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from typing import Any, Callable, Iterable

import numpy as np

logger = logging.getLogger(__name__)

LIVE = "live"
ENDED = "ended"

EndedListener = Callable[["MediaTrack"], None]


class MediaTrack:
    """One live input. Device-backed subclasses override `_release`."""

    kind = "unknown"

    def __init__(self, label: str = "") -> None:
        self.id = uuid.uuid4().hex
        self.label = label
        self._enabled = True
        self._ended = False
        self._lock = threading.Lock()
        self._ended_listeners: list[EndedListener] = []

    @property
    def enabled(self) -> bool:
        return self._enabled

    @enabled.setter
    def enabled(self, value: bool) -> None:
        self._enabled = bool(value)

    @property
    def ready_state(self) -> str:
        return ENDED if self._ended else LIVE

    def add_ended_listener(self, listener: EndedListener) -> None:
        with self._lock:
            self._ended_listeners.append(listener)

    def remove_ended_listener(self, listener: EndedListener) -> None:
        with self._lock:
            if listener in self._ended_listeners:
                self._ended_listeners.remove(listener)

    def stop(self) -> None:
        """Release the underlying device. Idempotent; does not notify ended listeners."""
        with self._lock:
            if self._ended:
                return
            self._ended = True
            self._ended_listeners.clear()
        logger.debug("Stopping %s track %s (%s)", self.kind, self.id[:8], self.label)
        self._release()

    def end(self, reason: str = "") -> None:
        """Mark the track as ended by the device side and notify listeners."""
        with self._lock:
            if self._ended:
                return
            self._ended = True
            listeners = list(self._ended_listeners)
            self._ended_listeners.clear()
        logger.warning("%s track %s ended: %s", self.kind.capitalize(), self.label or self.id[:8], reason or "device lost")
        self._release()
        for listener in listeners:
            try:
                listener(self)
            except Exception:
                logger.exception("Ended listener failed for track %s", self.id[:8])

    def _release(self) -> None:
        """Hook for subclasses holding hardware."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.label!r} {self.ready_state}>"


class VideoTrack(MediaTrack):
    """Video input keeping only the most recent frame (BGR uint8 array)."""

    kind = "video"

    def __init__(self, label: str = "", width: int = 0, height: int = 0, frame_rate: float = 0.0) -> None:
        super().__init__(label)
        self.width = int(width)
        self.height = int(height)
        self.frame_rate = float(frame_rate)
        self._latest: Any = None
        self._frame_count = 0

    @property
    def frame_count(self) -> int:
        return self._frame_count

    def push_frame(self, frame: Any) -> None:
        if self._ended or frame is None:
            return
        with self._lock:
            self._latest = frame
            self._frame_count += 1
            shape = getattr(frame, "shape", None)
            if shape is not None and len(shape) >= 2:
                self.height = int(shape[0])
                self.width = int(shape[1])

    def latest_frame(self) -> Any:
        with self._lock:
            frame = self._latest
        if frame is None:
            return None
        return frame.copy() if hasattr(frame, "copy") else frame


class AudioTap:
    """Read-only queue of sample blocks delivered by one audio track."""

    def __init__(self, track: "AudioTrack", max_blocks: int = 512) -> None:
        self._track = track
        self._blocks: deque[np.ndarray] = deque(maxlen=max_blocks)
        self._lock = threading.Lock()
        self.closed = False

    def _put(self, block: np.ndarray) -> None:
        with self._lock:
            self._blocks.append(block)

    def drain(self) -> np.ndarray:
        """Return every pending sample as one `(frames, channels)` float32 array."""
        with self._lock:
            blocks = list(self._blocks)
            self._blocks.clear()
        if not blocks:
            return np.zeros((0, self._track.channels), dtype=np.float32)
        return np.concatenate(blocks, axis=0)

    def close(self) -> None:
        self.closed = True
        self._track._remove_tap(self)


class AudioTrack(MediaTrack):
    """Audio input fanning float32 sample blocks out to taps and a rolling analysis window.

    A disabled (muted) track delivers silence of the same shape instead of the
    captured samples, so every consumer sees the mute at the same time.
    """

    kind = "audio"

    def __init__(
        self,
        label: str = "",
        sample_rate: int = 48000,
        channels: int = 1,
        window_size: int = 4096,
    ) -> None:
        super().__init__(label)
        self.sample_rate = int(sample_rate)
        self.channels = int(channels)
        self._window_size = int(window_size)
        self._window = np.zeros(0, dtype=np.float32)
        self._taps: list[AudioTap] = []
        self._samples_delivered = 0

    @property
    def samples_delivered(self) -> int:
        return self._samples_delivered

    def push_samples(self, block: Any) -> None:
        if self._ended:
            return
        data = np.asarray(block, dtype=np.float32)
        if data.ndim == 1:
            data = data.reshape(-1, 1)
        if not self._enabled:
            data = np.zeros_like(data)
        else:
            data = data.copy()
        mono = data.mean(axis=1) if data.shape[1] > 1 else data[:, 0]
        with self._lock:
            self._window = np.concatenate([self._window, mono])[-self._window_size:]
            self._samples_delivered += data.shape[0]
            taps = list(self._taps)
        for tap in taps:
            tap._put(data)

    def window(self, size: int) -> np.ndarray:
        """Return up to `size` most recent mono samples."""
        with self._lock:
            return self._window[-int(size):].copy()

    def open_tap(self) -> AudioTap:
        tap = AudioTap(self)
        with self._lock:
            self._taps.append(tap)
        return tap

    def _remove_tap(self, tap: AudioTap) -> None:
        with self._lock:
            if tap in self._taps:
                self._taps.remove(tap)


class MediaStream:
    """Tracks returned by a single device request."""

    def __init__(self, tracks: Iterable[MediaTrack] = ()) -> None:
        self.id = uuid.uuid4().hex
        self.tracks: list[MediaTrack] = list(tracks)

    def video_tracks(self) -> list[VideoTrack]:
        return [track for track in self.tracks if isinstance(track, VideoTrack)]

    def audio_tracks(self) -> list[AudioTrack]:
        return [track for track in self.tracks if isinstance(track, AudioTrack)]

    @property
    def active(self) -> bool:
        return any(track.ready_state == LIVE for track in self.tracks)

    def stop(self) -> None:
        for track in self.tracks:
            track.stop()
