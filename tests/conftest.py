# -*- coding: utf-8 -*-
"""Shared pytest fixtures and test doubles."""

from __future__ import annotations

import os
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable

import numpy as np
import pytest


SRC_DIR = Path(__file__).resolve().parents[1] / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from mediacapture.pipeline.capture import CaptureSourceManager, CaptureSourceProvider, VideoConstraints  # noqa: E402
from mediacapture.pipeline.tracks import LIVE, AudioTrack, MediaStream, VideoTrack  # noqa: E402


class _ManualTask:
    def __init__(self, scheduler: "ManualScheduler", interval: float, callback: Callable[[], None], name: str, seq: int):
        self.scheduler = scheduler
        self.interval = float(interval)
        self.callback = callback
        self.name = name
        self.seq = seq
        self.start = scheduler.now()
        self.runs = 0
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    @property
    def next_at(self) -> float:
        return round(self.start + (self.runs + 1) * self.interval, 9)

    def cancel(self) -> None:
        self._active = False


class ManualScheduler:
    """Virtual clock; periodic callbacks only run inside `advance()`."""

    def __init__(self) -> None:
        self._now = 0.0
        self._seq = 0
        self._lock = threading.Lock()
        self.tasks: list[_ManualTask] = []

    def now(self) -> float:
        return self._now

    def every(self, interval: float, callback: Callable[[], None], name: str) -> _ManualTask:
        if interval <= 0:
            raise ValueError("interval must be > 0")
        with self._lock:
            self._seq += 1
            task = _ManualTask(self, interval, callback, name, self._seq)
            self.tasks.append(task)
        return task

    def active_tasks(self, name: str | None = None) -> list[_ManualTask]:
        with self._lock:
            tasks = list(self.tasks)
        return [task for task in tasks if task.active and (name is None or task.name == name)]

    def advance(self, seconds: float) -> None:
        target = round(self._now + float(seconds), 9)
        while True:
            due = [task for task in self.active_tasks() if task.next_at <= target]
            if not due:
                break
            task = min(due, key=lambda item: (item.next_at, item.seq))
            self._now = max(self._now, task.next_at)
            task.runs += 1
            task.callback()
        self._now = target


class FakeVideoTrack(VideoTrack):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.release_calls = 0

    def _release(self) -> None:
        self.release_calls += 1


class FakeAudioTrack(AudioTrack):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.release_calls = 0
        self.feeder = None

    def _release(self) -> None:
        self.release_calls += 1
        if self.feeder is not None:
            self.feeder.cancel()


class FakeCaptureProvider(CaptureSourceProvider):
    """Hands out fake tracks and records what is held.

    With a scheduler, every opened audio track gets a 440 Hz tone pushed in
    10 ms blocks on the virtual clock.
    """

    def __init__(
        self,
        scheduler: ManualScheduler | None = None,
        *,
        frame_shape: tuple[int, int, int] = (48, 64, 3),
        screen_audio: bool = True,
        deliver_frames: bool = True,
        amplitude: float = 0.5,
    ) -> None:
        self.scheduler = scheduler
        self.frame_shape = frame_shape
        self.screen_audio = screen_audio
        self.deliver_frames = deliver_frames
        self.amplitude = amplitude
        self.opened: list[str] = []
        self.streams: list[MediaStream] = []
        self.failures: dict[str, Exception] = {}
        self.gates: dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    def fail(self, kind: str, error: Exception) -> None:
        self.failures[kind] = error

    def heal(self, kind: str) -> None:
        self.failures.pop(kind, None)

    def hang(self, kind: str) -> threading.Event:
        gate = threading.Event()
        self.gates[kind] = gate
        return gate

    def open_camera(self, constraints: VideoConstraints) -> MediaStream:
        return self._open("camera", constraints, audio=constraints.audio)

    def open_screen(self, constraints: VideoConstraints) -> MediaStream:
        return self._open("screen", constraints, audio=constraints.audio and self.screen_audio)

    def _open(self, kind: str, constraints: VideoConstraints, *, audio: bool) -> MediaStream:
        gate = self.gates.get(kind)
        if gate is not None:
            gate.wait(5.0)
        error = self.failures.get(kind)
        if error is not None:
            raise error

        video = FakeVideoTrack(
            label=f"fake-{kind}",
            width=constraints.width,
            height=constraints.height,
            frame_rate=constraints.frame_rate,
        )
        if self.deliver_frames:
            video.push_frame(np.full(self.frame_shape, 128, dtype=np.uint8))
        tracks = [video]
        if audio:
            mic = FakeAudioTrack(label=f"fake-{kind}-audio", sample_rate=48000, channels=1)
            if self.scheduler is not None:
                mic.feeder = self.scheduler.every(0.01, self._tone_feeder(mic), f"fake-{kind}-audio-feed")
            tracks.append(mic)
        stream = MediaStream(tracks)
        with self._lock:
            self.opened.append(kind)
            self.streams.append(stream)
        return stream

    def _tone_feeder(self, track: AudioTrack) -> Callable[[], None]:
        block = 480
        position = {"offset": 0}

        def _feed() -> None:
            t = (np.arange(block) + position["offset"]) / track.sample_rate
            position["offset"] += block
            track.push_samples((self.amplitude * np.sin(2 * np.pi * 440.0 * t)).astype(np.float32))

        return _feed

    def all_tracks(self):
        with self._lock:
            return [track for stream in self.streams for track in stream.tracks]

    @property
    def held_count(self) -> int:
        return sum(1 for track in self.all_tracks() if track.ready_state == LIVE)

    @property
    def release_count(self) -> int:
        return sum(track.release_calls for track in self.all_tracks())


class FakeMuxer:
    """Records what the engine writes and emits marker bytes.

    `write_error` and `close_error` make the encoder fail; `close_gate` holds
    `close()` until it is set, with `closing` signalling that close was entered.
    """

    media_type = "video/webm;codecs=vp8,opus"

    def __init__(self, session=None) -> None:
        self.session = session
        self.frame_times: list[float] = []
        self.audio_blocks: list[np.ndarray] = []
        self.flush_calls = 0
        self.close_calls = 0
        self.closed = False
        self.write_error: Exception | None = None
        self.close_error: Exception | None = None
        self.close_gate: threading.Event | None = None
        self.closing = threading.Event()
        self._pending = bytearray(b"HDR")

    def write_video(self, frame, timestamp: float) -> None:
        if self.write_error is not None:
            raise self.write_error
        self.frame_times.append(timestamp)
        self._pending += b"V"

    def write_audio(self, samples) -> None:
        if samples is None or len(samples) == 0:
            return
        self.audio_blocks.append(np.array(samples, copy=True))
        self._pending += b"A"

    def flush(self) -> bytes:
        self.flush_calls += 1
        data = bytes(self._pending)
        self._pending.clear()
        return data

    def close(self) -> bytes:
        self.close_calls += 1
        self.closing.set()
        if self.close_gate is not None:
            self.close_gate.wait(5.0)
        self.closed = True
        if self.close_error is not None:
            raise self.close_error
        return self.flush() + b"END"


class FakeDestination:
    def __init__(self, fail_times: int = 0, error: Exception | None = None) -> None:
        self.fail_times = fail_times
        self.error = error or ConnectionError("network down")
        self.calls: list[tuple[int, str]] = []

    def put(self, data: bytes, media_type: str) -> str:
        self.calls.append((len(data), media_type))
        if self.fail_times > 0:
            self.fail_times -= 1
            raise self.error
        return f"https://storage.test/uploads/{len(self.calls)}.webm"

    def check_connection(self, timeout: float = 3.0) -> tuple[bool, str]:
        return True, "ok"


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def provider(scheduler: ManualScheduler) -> FakeCaptureProvider:
    return FakeCaptureProvider(scheduler)


@pytest.fixture
def manager(provider: FakeCaptureProvider):
    mgr = CaptureSourceManager(provider, timeout=5.0)
    yield mgr
    mgr.shutdown()


@pytest.fixture
def muxers() -> list[FakeMuxer]:
    return []


@pytest.fixture
def muxer_factory(muxers: list[FakeMuxer]):
    def _factory(session) -> FakeMuxer:
        muxer = FakeMuxer(session)
        muxers.append(muxer)
        return muxer

    return _factory


@pytest.fixture
def destination() -> FakeDestination:
    return FakeDestination()


@pytest.fixture
def make_session(scheduler, provider, muxer_factory, destination, tmp_path: Path):
    from mediacapture.core.session import RecordingSession
    from mediacapture.pipeline.egress import ArtifactEgress
    from mediacapture.pipeline.level_meter import SignalMonitor
    from mediacapture.pipeline.recorder import RecorderEngine
    from mediacapture.pipeline.snapshot import SnapshotExtractor

    created: list[RecordingSession] = []

    def _make(max_duration_seconds: float = 5, mode: str = "camera", timeout: float | None = 5.0):
        session = RecordingSession(
            CaptureSourceManager(provider, timeout=timeout),
            SignalMonitor(scheduler),
            RecorderEngine(scheduler, muxer_factory=muxer_factory, chunk_interval=1.0, frame_rate=20),
            SnapshotExtractor(),
            ArtifactEgress(destination, export_dir=tmp_path / "recordings"),
            mode=mode,
            max_duration_seconds=max_duration_seconds,
            upload_executor=ThreadPoolExecutor(max_workers=1),
        )
        created.append(session)
        return session

    yield _make
    for session in created:
        session.close()


@pytest.fixture
def default_config() -> dict:
    from mediacapture.config import get_default_config

    return get_default_config()


@pytest.fixture(scope="session")
def qt_app():
    pytest.importorskip("PyQt6")
    os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")
    from PyQt6.QtWidgets import QApplication

    app = QApplication.instance() or QApplication([])
    yield app
