# -*- coding: utf-8 -*-
"""Recorder engine: encodes a live capture session into timed chunks and finalizes an artifact."""

from __future__ import annotations

import logging
import threading
import uuid
from typing import Callable

from mediacapture.constants import DEFAULT_CHUNK_INTERVAL_SECONDS, DEFAULT_FRAME_RATE
from mediacapture.errors import AlreadyStopped, CaptureError, DeviceLost, RecordingFailed
from mediacapture.models.artifact import Artifact
from mediacapture.pipeline.capture import CaptureSession
from mediacapture.pipeline.muxer import Muxer, WebmMuxer
from mediacapture.pipeline.scheduler import PeriodicTask, Scheduler
from mediacapture.pipeline.tracks import ENDED, AudioTap, MediaTrack

logger = logging.getLogger(__name__)

RECORDING = "recording"
STOPPED = "stopped"
ABORTED = "aborted"

MuxerFactory = Callable[[CaptureSession], Muxer]


class ChunkBuffer:
    """Ordered, append-only list of encoded fragments."""

    def __init__(self) -> None:
        self._chunks: list[bytes] = []
        self._lock = threading.Lock()

    def append(self, chunk: bytes) -> None:
        if not chunk:
            return
        with self._lock:
            self._chunks.append(bytes(chunk))

    def __len__(self) -> int:
        with self._lock:
            return len(self._chunks)

    @property
    def size(self) -> int:
        with self._lock:
            return sum(len(chunk) for chunk in self._chunks)

    def concatenate(self) -> bytes:
        with self._lock:
            return b"".join(self._chunks)

    def clear(self) -> None:
        with self._lock:
            self._chunks.clear()


class RecordingHandle:
    """State of one running recording. Created by `RecorderEngine.start`."""

    def __init__(
        self,
        session: CaptureSession,
        muxer: Muxer,
        max_duration_seconds: float,
        started_at: float,
        on_limit_reached: Callable[[Artifact], None] | None,
        on_failure: Callable[[CaptureError], None] | None,
        on_tick: Callable[[int], None] | None = None,
    ) -> None:
        self.id = uuid.uuid4().hex
        self.session = session
        self.muxer = muxer
        self.max_duration_seconds = float(max_duration_seconds)
        self.started_at = started_at
        self.buffer = ChunkBuffer()
        self.elapsed = 0
        self.status = RECORDING
        self.on_limit_reached = on_limit_reached
        self.on_failure = on_failure
        self.on_tick = on_tick
        self.tap: AudioTap | None = None
        self.tasks: list[PeriodicTask] = []
        self.listeners: list[tuple[MediaTrack, Callable[[MediaTrack], None]]] = []
        self.lock = threading.RLock()
        # Set once the handle leaves RECORDING for good: finalized, failed or aborted.
        self.finished = threading.Event()
        self.artifact: Artifact | None = None
        self.error: CaptureError | None = None

    @property
    def active(self) -> bool:
        return self.status == RECORDING

    @property
    def chunk_count(self) -> int:
        return len(self.buffer)

    def __repr__(self) -> str:
        return f"<RecordingHandle {self.id[:8]} {self.status} elapsed={self.elapsed}>"


class RecorderEngine:
    """Runs frame capture, chunk collection and the duration timer for one recording."""

    def __init__(
        self,
        scheduler: Scheduler,
        muxer_factory: MuxerFactory | None = None,
        chunk_interval: float = DEFAULT_CHUNK_INTERVAL_SECONDS,
        frame_rate: float = DEFAULT_FRAME_RATE,
    ) -> None:
        if chunk_interval <= 0:
            raise ValueError("chunk_interval must be > 0")
        if frame_rate <= 0:
            raise ValueError("frame_rate must be > 0")
        self.scheduler = scheduler
        self.chunk_interval = float(chunk_interval)
        self.frame_rate = float(frame_rate)
        self._muxer_factory = muxer_factory or self._default_muxer

    def _default_muxer(self, session: CaptureSession) -> Muxer:
        return WebmMuxer.for_session(session, frame_rate=self.frame_rate)

    def start(
        self,
        session: CaptureSession,
        max_duration_seconds: float,
        on_limit_reached: Callable[[Artifact], None] | None = None,
        on_failure: Callable[[CaptureError], None] | None = None,
        on_tick: Callable[[int], None] | None = None,
    ) -> RecordingHandle:
        if max_duration_seconds <= 0:
            raise ValueError("max_duration_seconds must be > 0")
        if not session.active:
            raise DeviceLost("Capture session is no longer live")

        muxer = self._muxer_factory(session)
        handle = RecordingHandle(
            session,
            muxer,
            max_duration_seconds,
            self.scheduler.now(),
            on_limit_reached,
            on_failure,
            on_tick,
        )
        audio = session.audio_track
        if audio is not None:
            handle.tap = audio.open_tap()
        for track in session.composed_tracks():
            listener = self._make_ended_listener(handle)
            track.add_ended_listener(listener)
            handle.listeners.append((track, listener))

        handle.tasks = [
            self.scheduler.every(1.0 / self.frame_rate, lambda: self._capture_frame(handle), "mediacapture-frames"),
            self.scheduler.every(self.chunk_interval, lambda: self._collect_chunk(handle), "mediacapture-chunks"),
            self.scheduler.every(1.0, lambda: self._tick(handle), "mediacapture-duration-timer"),
        ]
        logger.info(
            "Recording started: mode=%s max=%ss chunk_interval=%ss media_type=%s",
            session.mode.value,
            handle.max_duration_seconds,
            self.chunk_interval,
            muxer.media_type,
        )
        return handle

    def stop(self, handle: RecordingHandle) -> Artifact:
        """Finalize `handle` into an artifact.

        Raises `AlreadyStopped` when the handle has left RECORDING (second call,
        duration limit, abort) and `RecordingFailed` when the encoder cannot
        finish the file.
        """
        with handle.lock:
            if handle.status != RECORDING:
                raise AlreadyStopped(f"Recording {handle.id[:8]} is already {handle.status}")
            handle.status = STOPPED
        return self._finalize(handle)

    def result(self, handle: RecordingHandle, timeout: float | None = None) -> Artifact:
        """Outcome of a handle that already left RECORDING, waiting for a finalize in progress."""
        if not handle.finished.wait(timeout):
            raise AlreadyStopped(f"Recording {handle.id[:8]} is still finalizing")
        if handle.error is not None:
            raise handle.error
        if handle.artifact is None:
            raise AlreadyStopped(f"Recording {handle.id[:8]} was {handle.status} without an artifact")
        return handle.artifact

    def abort(self, handle: RecordingHandle, error: CaptureError | None = None) -> bool:
        """Stop without producing an artifact; collected chunks are dropped."""
        with handle.lock:
            if handle.status != RECORDING:
                return False
            handle.status = ABORTED
            handle.error = error
        try:
            self._halt(handle)
            try:
                handle.muxer.close()
            except Exception:
                logger.exception("Muxer close failed during abort")
            handle.buffer.clear()
        finally:
            handle.finished.set()
        logger.info("Recording %s aborted after %ss", handle.id[:8], handle.elapsed)
        return True

    def _halt(self, handle: RecordingHandle) -> None:
        # Status already left RECORDING, so callbacks racing with this are no-ops.
        for task in handle.tasks:
            task.cancel()
        for track, listener in handle.listeners:
            track.remove_ended_listener(listener)
        handle.listeners.clear()
        if handle.tap is not None:
            handle.tap.close()

    def _finalize(self, handle: RecordingHandle) -> Artifact:
        try:
            self._halt(handle)
            muxer = handle.muxer
            with handle.lock:
                try:
                    if handle.tap is not None:
                        muxer.write_audio(handle.tap.drain())
                    handle.buffer.append(muxer.flush())
                    handle.buffer.append(muxer.close())
                except Exception as exc:
                    logger.exception("Encoder failed while finalizing recording %s", handle.id[:8])
                    handle.buffer.clear()
                    handle.error = RecordingFailed(f"Could not finish the recording: {exc}")
                    raise handle.error from exc
                data = handle.buffer.concatenate()
                chunk_count = len(handle.buffer)
                handle.buffer.clear()
            duration = min(handle.max_duration_seconds, max(0.0, self.scheduler.now() - handle.started_at))
            artifact = Artifact(
                data=data,
                media_type=muxer.media_type,
                duration=duration,
                mode=handle.session.mode,
            )
            handle.artifact = artifact
        finally:
            handle.finished.set()
        logger.info(
            "Recording finalized: duration=%.2fs bytes=%s chunks=%s",
            artifact.duration,
            artifact.size,
            chunk_count,
        )
        return artifact

    def _capture_frame(self, handle: RecordingHandle) -> None:
        lost: MediaTrack | None = None
        failure: RecordingFailed | None = None
        with handle.lock:
            if handle.status != RECORDING:
                return
            for track in handle.session.composed_tracks():
                if track.ready_state == ENDED:
                    lost = track
                    break
            if lost is None:
                video = handle.session.video_track
                frame = video.latest_frame() if video is not None else None
                try:
                    if frame is not None:
                        handle.muxer.write_video(frame, self.scheduler.now() - handle.started_at)
                    if handle.tap is not None:
                        handle.muxer.write_audio(handle.tap.drain())
                except Exception as exc:
                    logger.exception("Encoder rejected captured media")
                    failure = RecordingFailed(f"Encoder rejected captured media: {exc}")
        if lost is not None:
            self._device_lost(handle, lost)
        elif failure is not None:
            self._fail(handle, failure)

    def _collect_chunk(self, handle: RecordingHandle) -> None:
        failure: RecordingFailed | None = None
        with handle.lock:
            if handle.status != RECORDING:
                return
            try:
                chunk = handle.muxer.flush()
            except Exception as exc:
                logger.exception("Encoder failed to hand out a chunk")
                failure = RecordingFailed(f"Encoder failed to hand out a chunk: {exc}")
            else:
                handle.buffer.append(chunk)
        if failure is not None:
            self._fail(handle, failure)
            return
        logger.debug("Collected chunk of %s bytes (%s total)", len(chunk), handle.chunk_count)

    def _tick(self, handle: RecordingHandle) -> None:
        with handle.lock:
            if handle.status != RECORDING:
                return
            handle.elapsed += 1
            elapsed = handle.elapsed
        # Listeners may stop the recording from the tick at the limit; that stop wins.
        if handle.on_tick is not None:
            handle.on_tick(elapsed)
        if elapsed < handle.max_duration_seconds:
            return
        with handle.lock:
            if handle.status != RECORDING:
                return
            handle.status = STOPPED
        logger.info("Maximum duration of %ss reached; stopping", handle.max_duration_seconds)
        try:
            artifact = self._finalize(handle)
        except RecordingFailed as exc:
            if handle.on_failure is not None:
                handle.on_failure(exc)
            return
        if handle.on_limit_reached is not None:
            handle.on_limit_reached(artifact)

    def _make_ended_listener(self, handle: RecordingHandle) -> Callable[[MediaTrack], None]:
        def _on_ended(track: MediaTrack) -> None:
            self._device_lost(handle, track)

        return _on_ended

    def _device_lost(self, handle: RecordingHandle, track: MediaTrack) -> None:
        name = track.label or track.id[:8]
        self._fail(handle, DeviceLost(f"{track.kind.capitalize()} input {name} ended during recording"))

    def _fail(self, handle: RecordingHandle, error: CaptureError) -> None:
        if not self.abort(handle, error):
            return
        logger.error("%s", error)
        if handle.on_failure is not None:
            handle.on_failure(error)
