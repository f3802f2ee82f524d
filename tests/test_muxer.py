# -*- coding: utf-8 -*-
"""Tests for the streaming WebM muxer (needs PyAV with VP8 and Opus encoders)."""

from __future__ import annotations

import io

import numpy as np
import pytest

av = pytest.importorskip("av")

from mediacapture.pipeline.muxer import WebmMuxer  # noqa: E402

if not {"libvpx", "libopus"}.issubset(av.codecs_available):
    pytest.skip("PyAV build lacks libvpx or libopus", allow_module_level=True)


def _frames(count: int, width: int = 64, height: int = 48):
    for index in range(count):
        frame = np.zeros((height, width, 3), dtype=np.uint8)
        frame[:, : (index * 3) % width] = 200
        yield frame


def _decode(data: bytes) -> tuple[int, np.ndarray]:
    with av.open(io.BytesIO(data), mode="r") as container:
        video_frames = 0
        audio_blocks: list[np.ndarray] = []
        for frame in container.decode(*container.streams):
            if isinstance(frame, av.VideoFrame):
                video_frames += 1
            else:
                audio_blocks.append(frame.to_ndarray().reshape(-1))
    audio = np.concatenate(audio_blocks) if audio_blocks else np.zeros(0, dtype=np.float32)
    return video_frames, audio


def test_concatenated_chunks_decode_as_one_file() -> None:
    muxer = WebmMuxer(64, 48, frame_rate=20, audio_sample_rate=48000, audio_channels=1)
    assert muxer.media_type == "video/webm;codecs=vp8,opus"
    t = np.arange(2400) / 48000

    chunks: list[bytes] = []
    for index, frame in enumerate(_frames(40)):
        muxer.write_video(frame, index / 20)
        muxer.write_audio((0.5 * np.sin(2 * np.pi * 440.0 * (t + index * 0.05))).astype(np.float32))
        if index % 20 == 19:
            chunks.append(muxer.flush())
    chunks.append(muxer.close())

    data = b"".join(chunks)
    assert data[:4] == b"\x1aE\xdf\xa3"
    video_frames, audio = _decode(data)
    assert video_frames == 40
    assert audio.size > 48000
    assert np.sqrt(np.mean(audio**2)) > 0.1
    assert muxer.frame_count == 40
    assert muxer.audio_samples == 40 * 2400


def test_video_only_muxer_and_odd_sizes() -> None:
    muxer = WebmMuxer(63, 47, frame_rate=10)
    assert muxer.media_type == "video/webm;codecs=vp8"
    for index, frame in enumerate(_frames(5, 63, 47)):
        muxer.write_video(frame, index / 10)
    muxer.write_audio(np.ones(100, dtype=np.float32))
    data = muxer.flush() + muxer.close()

    video_frames, audio = _decode(data)
    assert video_frames == 5
    assert audio.size == 0


def test_duplicate_timestamps_still_advance() -> None:
    muxer = WebmMuxer(32, 32, frame_rate=20)
    for frame in _frames(3, 32, 32):
        muxer.write_video(frame, 0.0)
    data = muxer.close()
    assert _decode(data)[0] == 3


def test_close_is_idempotent_and_ignores_late_writes() -> None:
    muxer = WebmMuxer(32, 32, frame_rate=20)
    muxer.write_video(np.zeros((32, 32, 3), dtype=np.uint8), 0.0)
    first = muxer.close()
    muxer.write_video(np.zeros((32, 32, 3), dtype=np.uint8), 0.05)
    assert muxer.close() == b""
    assert len(first) > 0
    assert muxer.frame_count == 1


def test_non_opus_input_rate_is_resampled_to_48k() -> None:
    muxer = WebmMuxer(32, 32, frame_rate=20, audio_sample_rate=44100, audio_channels=1)
    t = np.arange(44100) / 44100
    tone = (0.5 * np.sin(2 * np.pi * 440.0 * t)).astype(np.float32)
    for index in range(20):
        muxer.write_video(np.zeros((32, 32, 3), dtype=np.uint8), index / 20)
        muxer.write_audio(tone[index * 2205:(index + 1) * 2205])
    data = muxer.flush() + muxer.close()

    with av.open(io.BytesIO(data), mode="r") as container:
        assert container.streams.audio[0].rate == 48000
    _, audio = _decode(data)
    assert muxer.audio_samples == 44100
    assert audio.size > 40000
    assert np.sqrt(np.mean(audio**2)) > 0.1
