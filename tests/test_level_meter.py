# -*- coding: utf-8 -*-
"""Tests for the audio level computation and the signal monitor."""

from __future__ import annotations

import numpy as np

from conftest import FakeCaptureProvider
from mediacapture.models.states import CaptureMode
from mediacapture.pipeline.capture import CaptureSourceManager
from mediacapture.pipeline.level_meter import SignalMonitor, compute_level


def _tone(amplitude: float, samples: int = 1024, freq: float = 1000.0, rate: int = 48000) -> np.ndarray:
    t = np.arange(samples) / rate
    return (amplitude * np.sin(2 * np.pi * freq * t)).astype(np.float32)


def test_silence_reads_zero() -> None:
    assert compute_level(np.zeros(512, dtype=np.float32)) == 0.0
    assert compute_level([]) == 0.0


def test_level_is_monotonic_in_amplitude() -> None:
    levels = [compute_level(_tone(amplitude)) for amplitude in (0.001, 0.01, 0.1, 0.5)]
    assert levels == sorted(levels)
    assert levels[0] < levels[-1]
    assert levels[1] < levels[2]


def test_level_is_bounded() -> None:
    rng = np.random.default_rng(7)
    noise = rng.uniform(-1.0, 1.0, 4096).astype(np.float32)
    for samples in (noise, noise * 1000.0, _tone(1.0)):
        value = compute_level(samples)
        assert 0.0 <= value <= 100.0


def test_short_windows_are_zero_padded() -> None:
    value = compute_level(_tone(0.5, samples=64))
    assert 0.0 < value <= 100.0


def test_monitor_publishes_on_scheduler_and_detach_stops_sampling(scheduler, provider, manager) -> None:
    session = manager.acquire(CaptureMode.CAMERA).result(timeout=5)
    monitor = SignalMonitor(scheduler, refresh_hz=60)
    stream = monitor.attach(session)
    received: list[float] = []
    stream.subscribe(received.append)

    assert stream.latest is None
    scheduler.advance(0.5)
    assert stream.latest is not None and stream.latest > 0
    assert 25 <= len(received) <= 31

    monitor.detach()
    assert scheduler.active_tasks("mediacapture-level-monitor") == []
    count = len(received)
    scheduler.advance(0.5)
    assert len(received) == count
    assert stream.closed is True
    assert stream.latest is None
    manager.release(session)


def test_monitor_does_not_consume_audio_meant_for_the_recorder(scheduler, provider, manager) -> None:
    session = manager.acquire(CaptureMode.CAMERA).result(timeout=5)
    tap = session.audio_track.open_tap()
    monitor = SignalMonitor(scheduler)
    monitor.attach(session)

    scheduler.advance(0.1)

    assert tap.drain().shape[0] == 4800
    monitor.detach()
    manager.release(session)


def test_muted_track_reads_zero(scheduler, provider, manager) -> None:
    session = manager.acquire(CaptureMode.CAMERA).result(timeout=5)
    monitor = SignalMonitor(scheduler)
    stream = monitor.attach(session)
    scheduler.advance(0.2)
    assert stream.latest > 0

    session.audio_track.enabled = False
    scheduler.advance(0.2)
    assert stream.latest == 0.0
    monitor.detach()
    manager.release(session)


def test_attach_twice_replaces_previous_stream(scheduler, provider, manager) -> None:
    session = manager.acquire(CaptureMode.CAMERA).result(timeout=5)
    monitor = SignalMonitor(scheduler)
    first = monitor.attach(session)
    second = monitor.attach(session)

    assert first.closed is True
    assert second.closed is False
    assert len(scheduler.active_tasks("mediacapture-level-monitor")) == 1
    monitor.detach()
    manager.release(session)


def test_session_without_audio_never_publishes(scheduler) -> None:
    provider = FakeCaptureProvider(scheduler, screen_audio=False)
    mgr = CaptureSourceManager(provider)
    try:
        session = mgr.acquire(CaptureMode.SCREEN).result(timeout=5)
        monitor = SignalMonitor(scheduler)
        stream = monitor.attach(session)
        scheduler.advance(0.5)
        assert stream.latest is None
        assert scheduler.active_tasks("mediacapture-level-monitor") == []
        monitor.detach()
        mgr.release(session)
    finally:
        mgr.shutdown()
