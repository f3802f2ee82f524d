# -*- coding: utf-8 -*-
"""Desktop capture provider: OpenCV camera, mss screen grabs and sounddevice microphones."""

from __future__ import annotations

import errno
import logging
import os
import sys
import threading
import time
from typing import Any

import numpy as np

from mediacapture.constants import DEFAULT_AUDIO_CHANNELS, DEFAULT_AUDIO_SAMPLE_RATE
from mediacapture.errors import DeviceUnavailable, PermissionDenied
from mediacapture.pipeline.capture import CaptureSourceProvider, VideoConstraints
from mediacapture.pipeline.level_meter import compute_level
from mediacapture.pipeline.tracks import AudioTrack, MediaStream, VideoTrack

try:  # Optional runtime dependency for webcam capture
    import cv2  # type: ignore[import-not-found]
except Exception:  # pragma: no cover - depends on local environment
    cv2 = None  # type: ignore[assignment]

try:  # Optional runtime dependency for screen capture
    import mss  # type: ignore[import-not-found]
except Exception:  # pragma: no cover - depends on local environment
    mss = None  # type: ignore[assignment]

try:  # Optional runtime dependency for microphone capture (needs PortAudio)
    import sounddevice as sd  # type: ignore[import-not-found]
except Exception:  # pragma: no cover - depends on local environment
    sd = None  # type: ignore[assignment]

logger = logging.getLogger(__name__)

_CAMERA_INIT_LOCK = threading.RLock()
_PERMISSION_ERRNOS = {errno.EACCES, errno.EPERM}


def capture_capabilities() -> dict[str, bool]:
    """Return capability flags for diagnostics and UI messaging."""
    return {
        "opencv_available": cv2 is not None,
        "mss_available": mss is not None,
        "sounddevice_available": sd is not None,
        "camera_supported": cv2 is not None,
        "screen_supported": mss is not None,
        "microphone_supported": sd is not None,
    }


def _classify_os_error(exc: BaseException, what: str) -> Exception:
    if isinstance(exc, PermissionError) or getattr(exc, "errno", None) in _PERMISSION_ERRNOS:
        return PermissionDenied(f"Access to {what} was denied: {exc}")
    return DeviceUnavailable(f"{what.capitalize()} unavailable: {exc}")


def _check_video_node_permission(camera_index: int) -> None:
    """On Linux an existing but unreadable /dev/videoN means the OS refused access."""
    if not sys.platform.startswith("linux"):
        return
    node = f"/dev/video{camera_index}"
    if os.path.exists(node) and not os.access(node, os.R_OK | os.W_OK):
        raise PermissionDenied(f"No permission to open {node}")


def _open_camera(camera_source: int | str) -> Any:
    """Open an OpenCV VideoCapture, using DShow on Windows for local indices, under a global lock."""
    if isinstance(camera_source, str) and (camera_source.startswith("udp://") or camera_source.startswith("http")):
        logger.debug("Opening network camera stream: %s", camera_source)
        cap = cv2.VideoCapture(camera_source, cv2.CAP_FFMPEG)
        if cap is not None and cap.isOpened():
            return cap
        return cv2.VideoCapture(camera_source)

    acquired = _CAMERA_INIT_LOCK.acquire(timeout=5.0)
    if not acquired:
        logger.error("Timeout waiting for the camera init lock (source %s)", camera_source)
        return None
    try:
        source_idx = int(camera_source)
        if sys.platform == "win32":
            return cv2.VideoCapture(source_idx, cv2.CAP_DSHOW)
        return cv2.VideoCapture(source_idx)
    finally:
        _CAMERA_INIT_LOCK.release()


def _release_capture(capture: Any) -> None:
    try:
        capture.release()
    except Exception as exc:
        logger.error("Error releasing camera capture: %s", exc)


def _fit_within(frame: Any, width: int, height: int) -> Any:
    """Downscale `frame` to fit `width`x`height` (even dimensions), keeping the aspect ratio."""
    frame_h, frame_w = frame.shape[:2]
    scale = min(width / frame_w, height / frame_h, 1.0)
    if scale >= 1.0 and frame_w % 2 == 0 and frame_h % 2 == 0:
        return frame
    target_w = max(2, int(frame_w * scale) // 2 * 2)
    target_h = max(2, int(frame_h * scale) // 2 * 2)
    return cv2.resize(frame, (target_w, target_h), interpolation=cv2.INTER_AREA)


class CameraVideoTrack(VideoTrack):
    """Camera frames read by a background thread; ends itself when the camera goes silent."""

    _MAX_FAILURES = 60  # ~2s without frames

    def __init__(self, capture: Any, source: int | str, constraints: VideoConstraints) -> None:
        super().__init__(
            label=f"camera:{source}",
            width=constraints.width,
            height=constraints.height,
            frame_rate=constraints.frame_rate,
        )
        self._capture = capture
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._loop, name="mediacapture-camera-reader", daemon=True)
        self._thread.start()

    def _loop(self) -> None:
        consecutive_failures = 0
        while not self._stop_event.is_set():
            capture = self._capture
            if capture is None:
                break
            try:
                ok, frame = capture.read()
            except Exception:  # pragma: no cover - hardware/runtime path
                logger.exception("Camera read failed")
                self.end("camera read failed")
                return
            if self._stop_event.is_set():
                break
            if not ok or frame is None:
                consecutive_failures += 1
                if consecutive_failures >= self._MAX_FAILURES:
                    self.end("camera stopped delivering frames")
                    return
                time.sleep(0.03)
                continue
            consecutive_failures = 0
            self.push_frame(frame)
            time.sleep(0.005)
        logger.debug("Camera reader for %s exiting", self.label)

    def _release(self) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=2.0)
        capture, self._capture = self._capture, None
        if capture is not None:
            _release_capture(capture)


class ScreenVideoTrack(VideoTrack):
    """Periodic grabs of one monitor via mss. Each mss handle lives on the grabbing thread."""

    def __init__(self, monitor_index: int, constraints: VideoConstraints) -> None:
        super().__init__(
            label=f"screen:{monitor_index}",
            width=constraints.width,
            height=constraints.height,
            frame_rate=constraints.frame_rate,
        )
        self._monitor_index = int(monitor_index)
        self._max_size = (constraints.width, constraints.height)
        self._interval = 1.0 / max(1.0, constraints.frame_rate)
        self._stop_event = threading.Event()
        self.first_frame = threading.Event()
        self._thread = threading.Thread(target=self._loop, name="mediacapture-screen-grabber", daemon=True)
        self._thread.start()

    def _loop(self) -> None:
        try:
            with mss.mss() as sct:
                monitor = sct.monitors[self._monitor_index]
                while not self._stop_event.is_set():
                    shot = sct.grab(monitor)
                    frame = np.ascontiguousarray(np.asarray(shot)[:, :, :3])
                    self.push_frame(_fit_within(frame, *self._max_size))
                    self.first_frame.set()
                    self._stop_event.wait(self._interval)
        except Exception as exc:  # pragma: no cover - hardware/runtime path
            logger.exception("Screen grab failed")
            self.first_frame.set()
            self.end(f"screen capture failed: {exc}")

    def _release(self) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=2.0)


class MicrophoneAudioTrack(AudioTrack):
    """sounddevice input stream feeding float32 blocks into the track."""

    def __init__(self, device: int | None, sample_rate: int, channels: int, label: str = "") -> None:
        super().__init__(
            label=label or f"microphone:{'default' if device is None else device}",
            sample_rate=sample_rate,
            channels=channels,
        )
        self._closing = False
        self._stream = sd.InputStream(
            samplerate=sample_rate,
            channels=channels,
            dtype="float32",
            device=device,
            callback=self._callback,
            finished_callback=self._finished,
        )
        self._stream.start()

    def _callback(self, indata, frames, time_info, status) -> None:  # pragma: no cover - callback
        del frames, time_info
        if status:
            logger.warning("Audio input status for %s: %s", self.label, status)
        self.push_samples(indata)

    def _finished(self) -> None:  # pragma: no cover - callback
        if self._closing:
            return
        # Closing the stream from its own callback thread is not allowed.
        threading.Thread(target=self.end, args=("audio stream finished",), daemon=True).start()

    def _release(self) -> None:
        self._closing = True
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
        except Exception as exc:
            logger.error("Error stopping audio stream: %s", exc)
        try:
            stream.close()
        except Exception as exc:
            logger.error("Error closing audio stream: %s", exc)


class LocalCaptureProvider(CaptureSourceProvider):
    """Capture provider for desktop machines."""

    def __init__(
        self,
        *,
        camera_index: int = 0,
        camera_url: str = "",
        microphone_index: int | None = None,
        screen_monitor: int = 1,
        screen_audio_device: int | None = None,
        sample_rate: int = DEFAULT_AUDIO_SAMPLE_RATE,
        channels: int = DEFAULT_AUDIO_CHANNELS,
        warmup_seconds: float = 2.0,
    ) -> None:
        self.camera_index = int(camera_index)
        self.camera_url = str(camera_url or "").strip()
        self.microphone_index = microphone_index
        self.screen_monitor = int(screen_monitor)
        self.screen_audio_device = screen_audio_device
        self.sample_rate = int(sample_rate)
        self.channels = int(channels)
        self.warmup_seconds = float(warmup_seconds)

    def open_camera(self, constraints: VideoConstraints) -> MediaStream:
        video = self._open_camera_track(constraints)
        if not constraints.audio:
            return MediaStream([video])
        try:
            audio = self._open_microphone(self.microphone_index, "microphone")
        except Exception:
            video.stop()
            raise
        return MediaStream([video, audio])

    def open_screen(self, constraints: VideoConstraints) -> MediaStream:
        video = self._open_screen_track(constraints)
        tracks: list[Any] = [video]
        if constraints.audio:
            try:
                tracks.append(self._open_microphone(self.screen_audio_device, "screen-audio"))
            except (DeviceUnavailable, PermissionDenied) as exc:
                # Screen audio is optional, like a share prompt without "share audio".
                logger.warning("Screen capture continues without audio: %s", exc)
        return MediaStream(tracks)

    def _open_camera_track(self, constraints: VideoConstraints) -> CameraVideoTrack:
        if cv2 is None:
            raise DeviceUnavailable("OpenCV is not installed (camera capture unavailable).")
        source: int | str = self.camera_url if self.camera_url else self.camera_index
        if isinstance(source, int):
            _check_video_node_permission(source)
        try:
            capture = _open_camera(source)
        except OSError as exc:
            raise _classify_os_error(exc, "camera") from exc
        if capture is None or not capture.isOpened():
            if capture is not None:
                _release_capture(capture)
            raise DeviceUnavailable(f"Camera source {source} could not be opened.")

        try:
            capture.set(cv2.CAP_PROP_FRAME_WIDTH, constraints.width)
            capture.set(cv2.CAP_PROP_FRAME_HEIGHT, constraints.height)
            capture.set(cv2.CAP_PROP_FPS, constraints.frame_rate)
        except Exception as exc:
            logger.warning("Failed to set camera properties: %s", exc)

        # Cameras often need a moment after opening before the first frame arrives.
        first = None
        deadline = time.monotonic() + self.warmup_seconds
        while time.monotonic() < deadline:
            ok, frame = capture.read()
            if ok and frame is not None:
                first = frame
                break
            time.sleep(0.05)
        if first is None:
            _release_capture(capture)
            raise DeviceUnavailable(f"Camera source {source} delivered no frames.")

        track = CameraVideoTrack(capture, source, constraints)
        track.push_frame(first)
        logger.info(
            "Camera opened: requested=%sx%s actual=%sx%s",
            constraints.width,
            constraints.height,
            track.width,
            track.height,
        )
        return track

    def _open_screen_track(self, constraints: VideoConstraints) -> ScreenVideoTrack:
        if mss is None:
            raise DeviceUnavailable("mss is not installed (screen capture unavailable).")
        try:
            with mss.mss() as sct:
                monitor_count = len(sct.monitors) - 1
        except Exception as exc:
            raise DeviceUnavailable(f"Screen capture unavailable: {exc}") from exc
        if not 0 <= self.screen_monitor <= monitor_count:
            raise DeviceUnavailable(f"Monitor {self.screen_monitor} not found ({monitor_count} available).")

        track = ScreenVideoTrack(self.screen_monitor, constraints)
        track.first_frame.wait(timeout=self.warmup_seconds)
        if track.ready_state != "live" or track.frame_count == 0:
            track.stop()
            raise DeviceUnavailable(f"Screen {self.screen_monitor} delivered no frames.")
        logger.info("Screen capture opened: monitor=%s size=%sx%s", self.screen_monitor, track.width, track.height)
        return track

    def _open_microphone(self, device: int | None, label: str) -> MicrophoneAudioTrack:
        if sd is None:
            raise DeviceUnavailable("sounddevice is not installed (microphone capture unavailable).")
        try:
            track = MicrophoneAudioTrack(device, self.sample_rate, self.channels, label=f"{label}:{device}")
        except PermissionError as exc:
            raise PermissionDenied(f"Access to the microphone was denied: {exc}") from exc
        except (sd.PortAudioError, ValueError) as exc:
            raise DeviceUnavailable(f"Microphone {device} could not be opened: {exc}") from exc
        except OSError as exc:
            raise _classify_os_error(exc, "microphone") from exc
        logger.info("Microphone opened: device=%s rate=%s channels=%s", device, self.sample_rate, self.channels)
        return track


def list_audio_inputs() -> list[dict[str, Any]]:
    """Return input-capable audio devices as `{"index", "name", "channels", "default_samplerate"}`."""
    if sd is None:
        return []
    devices = []
    for index, info in enumerate(sd.query_devices()):
        if int(info.get("max_input_channels", 0)) <= 0:
            continue
        devices.append(
            {
                "index": index,
                "name": str(info.get("name", "")),
                "channels": int(info.get("max_input_channels", 0)),
                "default_samplerate": float(info.get("default_samplerate", 0.0)),
            }
        )
    return devices


def probe_camera(camera_index: int, timeout_seconds: float = 1.0) -> dict[str, Any]:
    """Open a camera, read one frame and close it again."""
    if cv2 is None:
        return {"ok": False, "message": "OpenCV is not installed.", "width": 0, "height": 0}
    capture = None
    try:
        capture = _open_camera(int(camera_index))
        if capture is None or not capture.isOpened():
            return {"ok": False, "message": f"Camera {camera_index} could not be opened.", "width": 0, "height": 0}
        started = time.monotonic()
        while time.monotonic() - started < max(0.2, float(timeout_seconds)):
            ok, frame = capture.read()
            if ok and frame is not None:
                height, width = int(frame.shape[0]), int(frame.shape[1])
                return {"ok": True, "message": f"Camera {camera_index}: {width}x{height}", "width": width, "height": height}
            time.sleep(0.03)
        return {"ok": False, "message": f"Camera {camera_index} delivered no frames.", "width": 0, "height": 0}
    except Exception as exc:  # pragma: no cover - hardware/runtime path
        logger.exception("Camera probe failed for index=%s", camera_index)
        return {"ok": False, "message": str(exc), "width": 0, "height": 0}
    finally:
        if capture is not None:
            _release_capture(capture)


def probe_screen(monitor_index: int = 1) -> dict[str, Any]:
    """Grab one screenshot of `monitor_index`."""
    if mss is None:
        return {"ok": False, "message": "mss is not installed."}
    try:
        with mss.mss() as sct:
            monitor = sct.monitors[int(monitor_index)]
            shot = sct.grab(monitor)
            return {"ok": True, "message": f"Monitor {monitor_index}: {shot.width}x{shot.height}"}
    except Exception as exc:  # pragma: no cover - hardware/runtime path
        return {"ok": False, "message": f"Screen capture unavailable: {exc}"}


def sample_audio_input_level(
    mic_index: int | None,
    duration_seconds: float = 0.35,
    sample_rate: int = DEFAULT_AUDIO_SAMPLE_RATE,
) -> dict[str, Any]:
    """Record a short microphone sample and return its level (0..100) and peak."""
    if sd is None:
        return {"ok": False, "message": "sounddevice is not installed.", "level": 0.0, "peak": 0.0}
    try:
        frames = max(1, int(float(duration_seconds) * int(sample_rate)))
        data = sd.rec(frames, samplerate=int(sample_rate), channels=1, dtype="float32", device=mic_index)
        sd.wait()
        if data is None or len(data) == 0:
            return {"ok": False, "message": "No audio sample captured.", "level": 0.0, "peak": 0.0}
        level = compute_level(data[:, 0])
        peak = float(np.max(np.abs(data)))
        return {"ok": True, "message": f"Audio level {level:.1f} (peak={peak:.4f})", "level": level, "peak": peak}
    except Exception as exc:  # pragma: no cover - hardware/runtime path
        logger.exception("Audio probe failed for mic index=%s", mic_index)
        return {"ok": False, "message": str(exc), "level": 0.0, "peak": 0.0}
