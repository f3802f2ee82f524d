# -*- coding: utf-8 -*-
"""Streaming WebM (VP8 + Opus) encoder writing into memory chunk by chunk."""

from __future__ import annotations

import logging
import threading
from fractions import Fraction
from typing import Any, Protocol

import cv2
import numpy as np

from mediacapture.constants import DEFAULT_FRAME_RATE, OPUS_SAMPLE_RATES
from mediacapture.pipeline.capture import CaptureSession

try:
    import av
    HAS_AV = True
except ImportError:  # pragma: no cover - depends on local environment
    HAS_AV = False

logger = logging.getLogger(__name__)


class Muxer(Protocol):
    """What the recorder engine needs from an encoder."""

    media_type: str

    def write_video(self, frame: Any, timestamp: float) -> None: ...

    def write_audio(self, samples: np.ndarray) -> None: ...

    def flush(self) -> bytes: ...

    def close(self) -> bytes: ...


class _ByteSink:
    """Write-only file object. Without `seek` the container is written strictly forward."""

    def __init__(self) -> None:
        self._buffer = bytearray()
        self._lock = threading.Lock()

    def write(self, data: bytes) -> int:
        with self._lock:
            self._buffer.extend(data)
        return len(data)

    def flush(self) -> None:
        return None

    def take(self) -> bytes:
        with self._lock:
            data = bytes(self._buffer)
            self._buffer.clear()
        return data


def _even(value: int) -> int:
    return max(2, int(value) // 2 * 2)


class WebmMuxer:
    """Encode BGR frames and float32 audio into a WebM byte stream.

    `flush()` hands out whatever the container has written since the previous
    call; concatenating every flush plus the bytes from `close()` gives one
    playable file.
    """

    def __init__(
        self,
        width: int,
        height: int,
        frame_rate: float = DEFAULT_FRAME_RATE,
        audio_sample_rate: int | None = None,
        audio_channels: int = 1,
        video_codec: str = "libvpx",
        audio_codec: str = "libopus",
        video_bit_rate: int = 1_500_000,
    ) -> None:
        if not HAS_AV:
            raise RuntimeError("PyAV is required for WebM recording")

        self._resolution = (_even(width), _even(height))
        self._frame_rate = max(1, int(round(frame_rate)))
        self._audio_sample_rate = int(audio_sample_rate) if audio_sample_rate else None
        self._audio_channels = int(audio_channels)
        self._lock = threading.Lock()
        self._sink = _ByteSink()
        self._closed = False
        self._last_pts = -1
        self._audio_samples = 0
        self._encoded_samples = 0
        self._frame_count = 0
        self._resampler = None

        self._container = av.open(self._sink, mode="w", format="webm")
        self._video_stream = self._container.add_stream(video_codec, rate=self._frame_rate)
        self._video_stream.width, self._video_stream.height = self._resolution
        self._video_stream.pix_fmt = "yuv420p"
        self._video_stream.bit_rate = int(video_bit_rate)
        self._video_stream.time_base = Fraction(1, self._frame_rate)
        self._video_stream.options = {"deadline": "realtime", "cpu-used": "8"}

        self._audio_stream = None
        if self._audio_sample_rate:
            layout = "stereo" if self._audio_channels == 2 else "mono"
            encoder_rate = self._audio_sample_rate
            if audio_codec in ("libopus", "opus") and encoder_rate not in OPUS_SAMPLE_RATES:
                encoder_rate = 48000
                self._resampler = av.AudioResampler(format="fltp", layout=layout, rate=encoder_rate)
                logger.info("Resampling %s Hz input to %s Hz for %s", self._audio_sample_rate, encoder_rate, audio_codec)
            self._audio_stream = self._container.add_stream(audio_codec, rate=encoder_rate)
            self._audio_stream.layout = layout
            self._audio_stream.time_base = Fraction(1, encoder_rate)

        codecs = "vp8,opus" if self._audio_stream is not None else "vp8"
        self.media_type = f"video/webm;codecs={codecs}"
        logger.debug(
            "WebM muxer ready: %sx%s@%s audio=%s",
            self._resolution[0],
            self._resolution[1],
            self._frame_rate,
            self._audio_sample_rate,
        )

    @classmethod
    def for_session(
        cls,
        session: CaptureSession,
        frame_rate: float = DEFAULT_FRAME_RATE,
        video_codec: str = "libvpx",
        audio_codec: str = "libopus",
    ) -> "WebmMuxer":
        video = session.video_track
        audio = session.audio_track
        width = video.width if video is not None and video.width else 640
        height = video.height if video is not None and video.height else 480
        return cls(
            width,
            height,
            frame_rate=frame_rate,
            audio_sample_rate=audio.sample_rate if audio is not None else None,
            audio_channels=audio.channels if audio is not None else 1,
            video_codec=video_codec,
            audio_codec=audio_codec,
        )

    @property
    def frame_count(self) -> int:
        return self._frame_count

    @property
    def audio_samples(self) -> int:
        return self._audio_samples

    def write_video(self, frame: Any, timestamp: float) -> None:
        data = np.asarray(frame)
        if data.ndim == 2:
            data = cv2.cvtColor(data, cv2.COLOR_GRAY2BGR)
        elif data.shape[2] == 4:
            data = cv2.cvtColor(data, cv2.COLOR_BGRA2BGR)
        if data.shape[1] != self._resolution[0] or data.shape[0] != self._resolution[1]:
            data = cv2.resize(data, self._resolution, interpolation=cv2.INTER_LINEAR)
        data = np.ascontiguousarray(data, dtype=np.uint8)

        with self._lock:
            if self._closed:
                return
            pts = max(self._last_pts + 1, int(round(float(timestamp) * self._frame_rate)))
            av_frame = av.VideoFrame.from_ndarray(data, format="bgr24")
            av_frame.pts = pts
            for packet in self._video_stream.encode(av_frame):
                self._container.mux(packet)
            self._last_pts = pts
            self._frame_count += 1

    def write_audio(self, samples: np.ndarray) -> None:
        if self._audio_stream is None or samples is None or len(samples) == 0:
            return
        block = np.asarray(samples, dtype=np.float32)
        if block.ndim == 1:
            block = block.reshape(-1, 1)
        planar = np.ascontiguousarray(block.T[: self._audio_channels])

        with self._lock:
            if self._closed:
                return
            av_frame = av.AudioFrame.from_ndarray(planar, format="fltp", layout=self._audio_stream.layout.name)
            av_frame.sample_rate = self._audio_sample_rate
            if self._resampler is None:
                self._encode_audio([av_frame])
            else:
                self._encode_audio(self._resampler.resample(av_frame))
            self._audio_samples += block.shape[0]

    def _encode_audio(self, frames) -> None:
        # pts counts samples at the encoder rate, so resampled blocks stay gapless.
        for av_frame in frames:
            av_frame.pts = self._encoded_samples
            self._encoded_samples += av_frame.samples
            for packet in self._audio_stream.encode(av_frame):
                self._container.mux(packet)

    def flush(self) -> bytes:
        return self._sink.take()

    def close(self) -> bytes:
        """Drain the encoders, finish the container and return the remaining bytes."""
        with self._lock:
            if self._closed:
                return self._sink.take()
            self._closed = True
            try:
                for packet in self._video_stream.encode():
                    self._container.mux(packet)
                if self._audio_stream is not None:
                    if self._resampler is not None:
                        self._encode_audio(self._resampler.resample(None))
                    for packet in self._audio_stream.encode():
                        self._container.mux(packet)
            finally:
                self._container.close()
        logger.debug("WebM muxer closed: frames=%s audio_samples=%s", self._frame_count, self._audio_samples)
        return self._sink.take()
