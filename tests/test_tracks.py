# -*- coding: utf-8 -*-
"""Tests for live track handles."""

from __future__ import annotations

import numpy as np

from mediacapture.pipeline.tracks import ENDED, LIVE, AudioTrack, MediaStream, MediaTrack, VideoTrack


class _CountingTrack(MediaTrack):
    def __init__(self) -> None:
        super().__init__("counting")
        self.releases = 0

    def _release(self) -> None:
        self.releases += 1


def test_stop_is_idempotent_and_silent() -> None:
    track = _CountingTrack()
    ended: list[MediaTrack] = []
    track.add_ended_listener(ended.append)

    track.stop()
    track.stop()

    assert track.ready_state == ENDED
    assert track.releases == 1
    assert ended == []


def test_end_notifies_listeners_once() -> None:
    track = _CountingTrack()
    ended: list[MediaTrack] = []
    track.add_ended_listener(ended.append)

    track.end("unplugged")
    track.end("again")

    assert ended == [track]
    assert track.releases == 1


def test_failing_listener_does_not_block_others() -> None:
    track = _CountingTrack()
    calls: list[str] = []

    def _broken(_track) -> None:
        raise RuntimeError("boom")

    track.add_ended_listener(_broken)
    track.add_ended_listener(lambda _track: calls.append("second"))
    track.end()

    assert calls == ["second"]


def test_video_track_keeps_latest_frame_copy_and_size() -> None:
    track = VideoTrack("cam", width=1280, height=720)
    assert track.latest_frame() is None

    frame = np.zeros((48, 64, 3), dtype=np.uint8)
    track.push_frame(frame)
    latest = track.latest_frame()
    latest[:] = 255

    assert track.frame_count == 1
    assert (track.width, track.height) == (64, 48)
    assert int(track.latest_frame().max()) == 0


def test_video_track_ignores_frames_after_stop() -> None:
    track = VideoTrack("cam")
    track.stop()
    track.push_frame(np.zeros((2, 2, 3), dtype=np.uint8))
    assert track.frame_count == 0


def test_audio_taps_receive_blocks_in_order() -> None:
    track = AudioTrack("mic", channels=1)
    tap = track.open_tap()
    track.push_samples(np.ones(10, dtype=np.float32))
    track.push_samples(np.full(5, 2.0, dtype=np.float32))

    drained = tap.drain()
    assert drained.shape == (15, 1)
    assert drained[:10].sum() == 10.0
    assert drained[10:].sum() == 10.0
    assert tap.drain().shape == (0, 1)


def test_disabled_audio_track_delivers_silence_to_taps_and_window() -> None:
    track = AudioTrack("mic")
    tap = track.open_tap()
    track.enabled = False
    track.push_samples(np.full(100, 0.8, dtype=np.float32))

    assert not tap.drain().any()
    assert not track.window(100).any()
    assert track.samples_delivered == 100


def test_closed_tap_stops_receiving() -> None:
    track = AudioTrack("mic")
    tap = track.open_tap()
    tap.close()
    track.push_samples(np.ones(8, dtype=np.float32))
    assert tap.drain().size == 0


def test_audio_window_is_bounded_and_downmixed() -> None:
    track = AudioTrack("mic", channels=2, window_size=16)
    stereo = np.stack([np.ones(40), np.zeros(40)], axis=1).astype(np.float32)
    track.push_samples(stereo)

    window = track.window(64)
    assert window.shape == (16,)
    assert np.allclose(window, 0.5)


def test_media_stream_splits_kinds_and_stops_all() -> None:
    video = VideoTrack("v")
    audio = AudioTrack("a")
    stream = MediaStream([video, audio])

    assert stream.video_tracks() == [video]
    assert stream.audio_tracks() == [audio]
    assert stream.active is True

    stream.stop()
    assert video.ready_state == ENDED
    assert audio.ready_state == ENDED
    assert stream.active is False
    assert LIVE != ENDED
