# -*- coding: utf-8 -*-
"""Recording session state machine.

The session is the only owner of `SessionState`. Every public operation is
valid in a fixed set of states and raises `InvalidState` elsewhere without
touching the state. Device acquisition and upload run in the background and
are reported through futures and `SessionEvent`s, so a presentation layer
never needs to poll.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable

from mediacapture.constants import DEFAULT_MAX_DURATION_SECONDS, FINALIZE_WAIT_SECONDS
from mediacapture.errors import (
    AlreadyStopped,
    CaptureError,
    DeviceUnavailable,
    InvalidState,
    NoFrameAvailable,
    UploadFailed,
)
from mediacapture.models.artifact import Artifact, Thumbnail
from mediacapture.models.session_event import (
    ARTIFACT_READY,
    ERROR,
    STATE_CHANGED,
    TICK,
    UPLOAD_COMPLETE,
    SessionEvent,
)
from mediacapture.models.states import CaptureMode, SessionState
from mediacapture.pipeline.capture import CaptureSession, CaptureSourceManager
from mediacapture.pipeline.egress import ArtifactEgress
from mediacapture.pipeline.level_meter import LevelStream, SignalMonitor
from mediacapture.pipeline.recorder import RecorderEngine, RecordingHandle
from mediacapture.pipeline.snapshot import SnapshotExtractor

logger = logging.getLogger(__name__)

SessionListener = Callable[[SessionEvent], None]
ArtifactReadyHook = Callable[[Artifact, "Thumbnail | None"], None]
UploadCompleteHook = Callable[[str, "Thumbnail | None"], None]


class RecordingSession:
    """Drive one capture → record → preview → upload cycle at a time."""

    def __init__(
        self,
        capture: CaptureSourceManager,
        monitor: SignalMonitor,
        engine: RecorderEngine,
        snapshot: SnapshotExtractor,
        egress: ArtifactEgress,
        *,
        mode: CaptureMode | str = CaptureMode.CAMERA,
        max_duration_seconds: float = DEFAULT_MAX_DURATION_SECONDS,
        upload_executor: ThreadPoolExecutor | None = None,
    ) -> None:
        if max_duration_seconds <= 0:
            raise ValueError("max_duration_seconds must be > 0")
        self.capture = capture
        self.monitor = monitor
        self.engine = engine
        self.snapshot = snapshot
        self.egress = egress
        self._max_duration_seconds = float(max_duration_seconds)
        self._mode = CaptureMode.parse(mode)

        self._lock = threading.RLock()
        self._listeners_lock = threading.Lock()
        self._listeners: list[SessionListener] = []
        self._upload_executor = upload_executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="mediacapture-upload"
        )

        self._state = SessionState.IDLE
        self._generation = 0
        self._capture_session: CaptureSession | None = None
        self._handle: RecordingHandle | None = None
        self._level_stream: LevelStream | None = None
        self._artifact: Artifact | None = None
        self._locator: str | None = None
        self._last_error: CaptureError | None = None
        self._muted = False
        self._elapsed = 0
        self._artifact_notified = False
        self._upload_notified = False

        self.on_artifact_ready: ArtifactReadyHook | None = None
        self.on_upload_complete: UploadCompleteHook | None = None

    # ------------------------------------------------------------------
    # Read-only view
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def mode(self) -> CaptureMode:
        return self._mode

    @property
    def muted(self) -> bool:
        return self._muted

    @property
    def elapsed(self) -> int:
        handle = self._handle
        return handle.elapsed if handle is not None else self._elapsed

    @property
    def audio_level(self) -> float | None:
        stream = self._level_stream
        if self._state is not SessionState.RECORDING or stream is None:
            return None
        return stream.latest

    @property
    def artifact(self) -> Artifact | None:
        return self._artifact

    @property
    def locator(self) -> str | None:
        return self._locator

    @property
    def last_error(self) -> CaptureError | None:
        return self._last_error

    @property
    def max_duration_seconds(self) -> float:
        return self._max_duration_seconds

    def preview_frame(self) -> Any:
        """Latest live video frame while a capture session is held, else None."""
        session = self._capture_session
        track = session.video_track if session is not None else None
        return track.latest_frame() if track is not None else None

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def add_listener(self, listener: SessionListener) -> None:
        with self._listeners_lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: SessionListener) -> None:
        with self._listeners_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _emit(self, kind: str, payload: dict[str, Any] | None = None, previous: SessionState | None = None) -> None:
        event = SessionEvent(kind=kind, state=self._state, previous=previous, payload=payload or {})
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Session listener failed for %s event", kind)

    def _transition(self, target: SessionState) -> None:
        previous = self._state
        self._state = target
        logger.info("Session state %s -> %s", previous.value, target.value)
        self._emit(STATE_CHANGED, previous=previous)

    def _require(self, operation: str, *allowed: SessionState) -> None:
        if self._state not in allowed:
            names = ", ".join(state.value for state in allowed)
            raise InvalidState(f"{operation}() is not allowed in state {self._state.value} (allowed: {names})")

    # ------------------------------------------------------------------
    # Inbound operations
    # ------------------------------------------------------------------

    def select_mode(self, mode: CaptureMode | str) -> CaptureMode:
        with self._lock:
            self._require("select_mode", SessionState.IDLE, SessionState.ERROR)
            self._mode = CaptureMode.parse(mode)
            logger.info("Capture mode set to %s", self._mode.value)
            return self._mode

    def start_recording(self) -> Future:
        """Request devices for the selected mode. Resolves to RECORDING or ERROR."""
        with self._lock:
            self._require("start_recording", SessionState.IDLE)
            return self._begin_acquisition()

    def retry(self) -> Future:
        with self._lock:
            self._require("retry", SessionState.ERROR)
            return self._begin_acquisition()

    def toggle_mute(self) -> bool:
        with self._lock:
            self._require("toggle_mute", SessionState.RECORDING)
            self._muted = not self._muted
            if self._capture_session is not None:
                for track in self._capture_session.audio_tracks:
                    track.enabled = not self._muted
            logger.info("Microphone %s", "muted" if self._muted else "unmuted")
            return self._muted

    def stop_recording(self) -> Artifact:
        """Finalize the recording and move to PREVIEW.

        If the duration limit fired first, the artifact it produced is returned.
        Encoder failures move the session to ERROR and are raised as `RecordingFailed`.
        """
        with self._lock:
            self._require("stop_recording", SessionState.RECORDING)
            handle = self._handle
            try:
                try:
                    artifact = self.engine.stop(handle)
                except AlreadyStopped:
                    logger.info("Recording already stopping; waiting for its artifact")
                    artifact = self.engine.result(handle, timeout=FINALIZE_WAIT_SECONDS)
            except InvalidState:
                raise
            except CaptureError as exc:
                self._stop_live(abort=False)
                self._fail(exc)
                raise
            return self._complete_recording(artifact)

    def discard(self) -> None:
        with self._lock:
            self._require("discard", SessionState.PREVIEW)
            self.egress.discard(self._artifact)
            self._artifact = None
            self._transition(SessionState.DISCARDED)
            self._transition(SessionState.IDLE)

    def export(self, target: str | Path | None = None) -> Path:
        with self._lock:
            self._require("export", SessionState.PREVIEW)
            return self.egress.export(self._artifact, target)

    def preview_path(self) -> Path:
        with self._lock:
            self._require("preview_path", SessionState.PREVIEW)
            return self.egress.preview_path(self._artifact)

    def upload(self) -> Future:
        """Send the artifact to the destination. Resolves to the locator or raises `UploadFailed`."""
        with self._lock:
            self._require("upload", SessionState.PREVIEW)
            artifact = self._artifact
            generation = self._generation
            self._last_error = None
            self._transition(SessionState.UPLOADING)
            return self._upload_executor.submit(self._run_upload, artifact, generation)

    def new_session(self) -> None:
        with self._lock:
            self._require("new_session", SessionState.DONE)
            self.egress.discard(self._artifact)
            self._artifact = None
            self._locator = None
            self._transition(SessionState.IDLE)

    def teardown(self) -> None:
        """Stop every activity, release devices and artifact, and return to IDLE."""
        with self._lock:
            self._generation += 1
            self._stop_live(abort=True)
            self.egress.discard(self._artifact)
            self._artifact = None
            self._locator = None
            self._muted = False
            if self._state is not SessionState.IDLE:
                self._transition(SessionState.IDLE)
            logger.info("Session torn down")

    def close(self) -> None:
        """Teardown plus shutdown of the background executors."""
        self.teardown()
        self._upload_executor.shutdown(wait=False)
        self.capture.shutdown()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _begin_acquisition(self) -> Future:
        self._generation += 1
        generation = self._generation
        self._last_error = None
        self._elapsed = 0
        self._muted = False
        self._artifact_notified = False
        self._upload_notified = False
        self._transition(SessionState.ACQUIRING)
        result: Future = Future()
        try:
            acquisition = self.capture.acquire(self._mode)
        except Exception as exc:
            logger.exception("Could not request capture devices")
            self._fail(DeviceUnavailable(str(exc) or type(exc).__name__))
            result.set_result(self._state)
            return result
        acquisition.add_done_callback(lambda done: self._on_acquired(done, generation, result))
        return result

    def _on_acquired(self, done: Future, generation: int, result: Future) -> None:
        capture_session: CaptureSession | None = None
        error: CaptureError | None = None
        try:
            capture_session = done.result()
        except CaptureError as exc:
            error = exc
        except Exception as exc:
            logger.exception("Acquisition failed unexpectedly")
            error = DeviceUnavailable(str(exc) or type(exc).__name__)

        with self._lock:
            if generation != self._generation or self._state is not SessionState.ACQUIRING:
                # Torn down while the device request was pending.
                if capture_session is not None:
                    self.capture.release(capture_session)
                outcome = self._state
            elif error is not None:
                self._fail(error)
                outcome = self._state
            else:
                outcome = self._start_live(capture_session, generation)
        result.set_result(outcome)

    def _start_live(self, capture_session: CaptureSession, generation: int) -> SessionState:
        self._capture_session = capture_session
        try:
            self._level_stream = self.monitor.attach(capture_session)
            self._handle = self.engine.start(
                capture_session,
                self._max_duration_seconds,
                on_limit_reached=lambda artifact: self._on_limit_reached(artifact, generation),
                on_failure=lambda error: self._on_recording_failed(error, generation),
                on_tick=lambda elapsed: self._on_tick(elapsed, generation),
            )
        except Exception as exc:
            logger.exception("Recorder failed to start")
            self._stop_live(abort=True)
            self._fail(exc if isinstance(exc, CaptureError) else DeviceUnavailable(f"Recorder failed to start: {exc}"))
            return self._state
        self._transition(SessionState.RECORDING)
        return self._state

    def _stop_live(self, *, abort: bool) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            self._elapsed = handle.elapsed
            if abort:
                self.engine.abort(handle)
        self.monitor.detach()
        self._level_stream = None
        capture_session, self._capture_session = self._capture_session, None
        self.capture.release(capture_session)

    def _complete_recording(self, artifact: Artifact) -> Artifact:
        thumbnail: Thumbnail | None = None
        if self._capture_session is not None:
            try:
                thumbnail = self.snapshot.capture(self._capture_session)
            except NoFrameAvailable as exc:
                logger.warning("Recording has no thumbnail: %s", exc)
            except Exception:
                logger.exception("Thumbnail extraction failed")
        artifact = replace(artifact, thumbnail=thumbnail)
        self._stop_live(abort=False)
        self._artifact = artifact
        self._transition(SessionState.PREVIEW)
        self._emit(ARTIFACT_READY, {"artifact": artifact, "thumbnail": thumbnail})
        if self.on_artifact_ready is not None and not self._artifact_notified:
            self._artifact_notified = True
            try:
                self.on_artifact_ready(artifact, thumbnail)
            except Exception:
                logger.exception("on_artifact_ready hook failed")
        return artifact

    def _fail(self, error: CaptureError) -> None:
        self._last_error = error
        logger.error("Session error (%s): %s", error.kind, error)
        self._transition(SessionState.ERROR)
        self._emit(ERROR, {"error": error, "kind": error.kind})

    def _on_tick(self, elapsed: int, generation: int) -> None:
        # Runs on the timer thread without the session lock so stop() can join it.
        if generation != self._generation:
            return
        self._emit(TICK, {"elapsed": elapsed, "remaining": max(0.0, self._max_duration_seconds - elapsed)})

    def _on_limit_reached(self, artifact: Artifact, generation: int) -> None:
        with self._lock:
            if generation != self._generation or self._state is not SessionState.RECORDING:
                return
            logger.info("Maximum duration reached after %ss", artifact.duration)
            self._complete_recording(artifact)

    def _on_recording_failed(self, error: CaptureError, generation: int) -> None:
        with self._lock:
            if generation != self._generation or self._state is not SessionState.RECORDING:
                return
            self._stop_live(abort=False)
            self._fail(error)

    def _run_upload(self, artifact: Artifact, generation: int) -> str:
        try:
            locator = self.egress.upload(artifact)
        except UploadFailed as exc:
            with self._lock:
                if generation == self._generation and self._state is SessionState.UPLOADING:
                    self._last_error = exc
                    self._transition(SessionState.PREVIEW)
                    self._emit(ERROR, {"error": exc, "kind": exc.kind})
            raise

        with self._lock:
            if generation != self._generation or self._state is not SessionState.UPLOADING:
                return locator
            self._locator = locator
            self._transition(SessionState.DONE)
            thumbnail = artifact.thumbnail
            self._emit(UPLOAD_COMPLETE, {"locator": locator, "thumbnail": thumbnail})
            if self.on_upload_complete is not None and not self._upload_notified:
                self._upload_notified = True
                try:
                    self.on_upload_complete(locator, thumbnail)
                except Exception:
                    logger.exception("on_upload_complete hook failed")
        return locator
