# -*- coding: utf-8 -*-
"""Periodic background activities used by the monitor, the recorder and the timers."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Protocol

logger = logging.getLogger(__name__)


class PeriodicTask(Protocol):
    name: str

    @property
    def active(self) -> bool: ...

    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Runs callbacks at a fixed interval and exposes the clock they run against."""

    def every(self, interval: float, callback: Callable[[], None], name: str) -> PeriodicTask: ...

    def now(self) -> float: ...


class _ThreadTask:
    """One daemon thread calling `callback` every `interval` seconds until cancelled."""

    def __init__(self, interval: float, callback: Callable[[], None], name: str) -> None:
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self.name = name
        self._interval = float(interval)
        self._callback = callback
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._loop, name=name, daemon=True)

    @property
    def active(self) -> bool:
        return not self._stop_event.is_set()

    def start(self) -> None:
        self._thread.start()

    def cancel(self) -> None:
        self._stop_event.set()
        thread = self._thread
        # A task may cancel itself from inside its own callback.
        if thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=2.0)
            if thread.is_alive():
                logger.warning("Periodic task %s did not exit in time", self.name)

    def _loop(self) -> None:
        next_at = time.monotonic() + self._interval
        while not self._stop_event.wait(max(0.0, next_at - time.monotonic())):
            try:
                self._callback()
            except Exception:
                logger.exception("Periodic task %s failed", self.name)
            next_at += self._interval
            now = time.monotonic()
            if next_at < now - self._interval:
                # Fell behind (slow callback); skip the missed ticks.
                next_at = now + self._interval


class ThreadScheduler:
    """Scheduler backed by one thread per periodic task and the monotonic clock."""

    def every(self, interval: float, callback: Callable[[], None], name: str) -> PeriodicTask:
        task = _ThreadTask(interval, callback, name)
        task.start()
        logger.debug("Started periodic task %s every %.3fs", name, interval)
        return task

    def now(self) -> float:
        return time.monotonic()
