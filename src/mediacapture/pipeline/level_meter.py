# -*- coding: utf-8 -*-
"""Live audio level (0..100) sampled from the recording session's audio track."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable

import numpy as np

from mediacapture.constants import (
    LEVEL_FFT_SIZE,
    LEVEL_MAX_DECIBELS,
    LEVEL_MIN_DECIBELS,
    LEVEL_REFRESH_HZ,
)
from mediacapture.pipeline.capture import CaptureSession
from mediacapture.pipeline.scheduler import PeriodicTask, Scheduler
from mediacapture.pipeline.tracks import LIVE, AudioTrack

logger = logging.getLogger(__name__)

LevelCallback = Callable[[float], None]


def compute_level(
    samples: Any,
    fft_size: int = LEVEL_FFT_SIZE,
    min_decibels: float = LEVEL_MIN_DECIBELS,
    max_decibels: float = LEVEL_MAX_DECIBELS,
) -> float:
    """Mean frequency magnitude of the latest `fft_size` samples, scaled to 0..100.

    Each bin is converted to decibels and mapped linearly onto 0..255 between
    `min_decibels` and `max_decibels` before averaging, so silence reads 0 and
    a full-scale signal saturates near 100.
    """
    data = np.asarray(samples, dtype=np.float64).reshape(-1)
    if data.size == 0:
        return 0.0
    window = data[-fft_size:]
    if window.size < fft_size:
        window = np.pad(window, (fft_size - window.size, 0))
    spectrum = np.fft.rfft(window * np.blackman(fft_size))[: fft_size // 2]
    magnitude = np.abs(spectrum) / fft_size
    with np.errstate(divide="ignore"):
        decibels = 20.0 * np.log10(magnitude)
    scaled = (decibels - min_decibels) * (255.0 / (max_decibels - min_decibels))
    byte_values = np.clip(np.nan_to_num(scaled, nan=0.0, neginf=0.0, posinf=255.0), 0.0, 255.0)
    level = float(np.mean(byte_values)) / 255.0 * 100.0
    return max(0.0, min(100.0, level))


class LevelStream:
    """Latest level plus push subscriptions. Reads `None` until the first sample and after detach."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._latest: float | None = None
        self._subscribers: list[LevelCallback] = []
        self.closed = False

    @property
    def latest(self) -> float | None:
        return self._latest

    def subscribe(self, callback: LevelCallback) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def _publish(self, level: float) -> None:
        with self._lock:
            if self.closed:
                return
            self._latest = level
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(level)
            except Exception:
                logger.exception("Level subscriber failed")

    def _close(self) -> None:
        with self._lock:
            self.closed = True
            self._latest = None
            self._subscribers.clear()


class SignalMonitor:
    """Samples one audio track at display refresh rate without consuming its data."""

    def __init__(
        self,
        scheduler: Scheduler,
        refresh_hz: float = LEVEL_REFRESH_HZ,
        fft_size: int = LEVEL_FFT_SIZE,
    ) -> None:
        if refresh_hz <= 0:
            raise ValueError("refresh_hz must be > 0")
        self.scheduler = scheduler
        self.refresh_hz = float(refresh_hz)
        self.fft_size = int(fft_size)
        self._lock = threading.Lock()
        self._task: PeriodicTask | None = None
        self._stream: LevelStream | None = None

    @property
    def attached(self) -> bool:
        return self._stream is not None

    def attach(self, session: CaptureSession) -> LevelStream:
        with self._lock:
            if self._stream is not None:
                self._detach_locked()
            stream = LevelStream()
            self._stream = stream
            track = session.audio_track
            if track is None:
                logger.info("Capture session has no audio track; level stays empty")
                return stream
            self._task = self.scheduler.every(
                1.0 / self.refresh_hz,
                lambda: self._sample(track, stream),
                "mediacapture-level-monitor",
            )
        logger.debug("Signal monitor attached to %s at %.0f Hz", track.label, self.refresh_hz)
        return stream

    def detach(self) -> None:
        with self._lock:
            self._detach_locked()

    def _detach_locked(self) -> None:
        task, self._task = self._task, None
        stream, self._stream = self._stream, None
        if task is not None:
            task.cancel()
        if stream is not None:
            stream._close()
            logger.debug("Signal monitor detached")

    def _sample(self, track: AudioTrack, stream: LevelStream) -> None:
        if track.ready_state != LIVE:
            return
        stream._publish(compute_level(track.window(self.fft_size), self.fft_size))
