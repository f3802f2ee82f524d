# -*- coding: utf-8 -*-
"""Tests for the thread-backed scheduler."""

from __future__ import annotations

import threading
import time

import pytest

from mediacapture.pipeline.scheduler import ThreadScheduler


def test_task_runs_repeatedly_until_cancelled() -> None:
    scheduler = ThreadScheduler()
    calls: list[float] = []
    task = scheduler.every(0.01, lambda: calls.append(scheduler.now()), "test-task")

    deadline = time.monotonic() + 2.0
    while len(calls) < 5 and time.monotonic() < deadline:
        time.sleep(0.01)
    task.cancel()
    count = len(calls)
    time.sleep(0.05)

    assert count >= 5
    assert len(calls) == count
    assert task.active is False
    assert calls == sorted(calls)


def test_failing_callback_keeps_task_alive() -> None:
    scheduler = ThreadScheduler()
    calls: list[int] = []

    def _flaky() -> None:
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("first tick fails")

    task = scheduler.every(0.01, _flaky, "flaky")
    deadline = time.monotonic() + 2.0
    while len(calls) < 3 and time.monotonic() < deadline:
        time.sleep(0.01)
    task.cancel()
    assert len(calls) >= 3


def test_task_can_cancel_itself() -> None:
    scheduler = ThreadScheduler()
    done = threading.Event()
    holder = {}

    def _once() -> None:
        holder["task"].cancel()
        done.set()

    holder["task"] = scheduler.every(0.01, _once, "self-cancel")
    assert done.wait(2.0)
    assert holder["task"].active is False


def test_interval_must_be_positive() -> None:
    with pytest.raises(ValueError):
        ThreadScheduler().every(0, lambda: None, "bad")
