# -*- coding: utf-8 -*-
"""Pre-recording environment validation."""

from __future__ import annotations

import importlib.util
import shutil
from pathlib import Path
from typing import Any, Callable

from mediacapture.config import upload_settings
from mediacapture.models.states import CaptureMode
from mediacapture.pipeline import devices

CheckResult = dict[str, Any]

REQUIRED_MODULES = {
    "numpy": "numpy",
    "cv2": "opencv-python",
    "av": "av",
    "sounddevice": "sounddevice",
    "mss": "mss",
}
MIN_FREE_BYTES = 1_000_000_000


def _modules_available() -> dict[str, bool]:
    return {name: importlib.util.find_spec(name) is not None for name in REQUIRED_MODULES}


def _default_connection_check(upload: dict[str, Any]) -> tuple[bool, str]:
    from mediacapture.integrations.upload_client import destination_from_config

    try:
        destination = destination_from_config(upload)
    except ValueError as exc:
        return False, str(exc)
    return destination.check_connection()


def format_precheck_report(results: list[CheckResult]) -> str:
    """Render check results as a readable text block."""
    if not results:
        return "No checks were run."
    failed = [item for item in results if not item.get("passed")]
    lines = [f"Pre-check: {len(results) - len(failed)}/{len(results)} passed", ""]
    for item in results:
        marker = "OK  " if item.get("passed") else "FAIL"
        lines.append(f"[{marker}] {item.get('check')}: {item.get('message')}")
    return "\n".join(lines)


class Precheck:
    """Run device, dependency and destination checks before a recording."""

    def __init__(
        self,
        *,
        camera_check: Callable[[int], bool] | None = None,
        mic_check: Callable[[int | None], bool] | None = None,
        screen_check: Callable[[int], bool] | None = None,
        mic_level_probe: Callable[[int | None], float] | None = None,
        connection_check: Callable[[dict[str, Any]], tuple[bool, str]] | None = None,
        dependency_check: Callable[[], dict[str, bool]] | None = None,
        disk_usage_provider: Callable[[str], tuple[int, int, int]] | None = None,
    ) -> None:
        self.camera_check = camera_check or (lambda index: bool(devices.probe_camera(index)["ok"]))
        self.mic_check = mic_check or (lambda index: self._mic_present(index))
        self.screen_check = screen_check or (lambda monitor: bool(devices.probe_screen(monitor)["ok"]))
        self.mic_level_probe = mic_level_probe or (
            lambda index: float(devices.sample_audio_input_level(index)["level"])
        )
        self.connection_check = connection_check or _default_connection_check
        self.dependency_check = dependency_check or _modules_available
        self.disk_usage_provider = disk_usage_provider or shutil.disk_usage

    def run(self, settings: dict[str, Any], mode: CaptureMode | str | None = None) -> list[CheckResult]:
        capture = settings.get("capture", {})
        capture_mode = CaptureMode.parse(mode or capture.get("mode", CaptureMode.CAMERA.value))
        camera_index = int(capture.get("camera_index", 0))
        mic_index = capture.get("microphone_index")
        monitor = int(capture.get("screen_monitor", 1))
        uses_camera = capture_mode in {CaptureMode.CAMERA, CaptureMode.SCREEN_WITH_CAMERA_AUDIO}
        uses_screen = capture_mode in {CaptureMode.SCREEN, CaptureMode.SCREEN_WITH_CAMERA_AUDIO}

        results: list[CheckResult] = []

        modules = self.dependency_check()
        missing = [REQUIRED_MODULES.get(name, name) for name, ok in modules.items() if not ok]
        results.append(
            self._result(
                "dependencies",
                not missing,
                "All capture libraries installed" if not missing else f"Missing: {', '.join(missing)}",
            )
        )

        if uses_camera:
            results.append(self._result("camera", self.camera_check(camera_index), f"Camera {camera_index} reachable"))
        else:
            results.append(self._result("camera", True, f"Not needed for mode {capture_mode.value}"))

        mic_ok = bool(self.mic_check(mic_index))
        mic_label = "default" if mic_index is None else mic_index
        results.append(self._result("microphone", mic_ok, f"Microphone {mic_label} reachable"))

        if uses_screen:
            results.append(self._result("screen", self.screen_check(monitor), f"Monitor {monitor} capturable"))
        else:
            results.append(self._result("screen", True, f"Not needed for mode {capture_mode.value}"))

        connected, detail = self.connection_check(upload_settings(settings))
        results.append(self._result("connection", connected, detail))

        export_dir = Path(settings.get("export", {}).get("directory", "recordings"))
        probe_dir = export_dir if export_dir.exists() else Path.cwd()
        _total, _used, free = self.disk_usage_provider(str(probe_dir))
        results.append(
            self._result(
                "disk_space",
                free >= MIN_FREE_BYTES,
                f"Free space: {free} bytes (required >= {MIN_FREE_BYTES})",
            )
        )

        level = float(self.mic_level_probe(mic_index)) if mic_ok else 0.0
        results.append(
            {
                "check": "microphone_level",
                "passed": level > 0.0,
                "message": f"Microphone level {level:.1f}/100" if level > 0 else "Microphone delivers only silence",
                "level": level,
            }
        )
        return results

    def _result(self, check: str, passed: bool, message: str) -> CheckResult:
        return {"check": check, "passed": bool(passed), "message": message}

    @staticmethod
    def _mic_present(index: int | None) -> bool:
        inputs = devices.list_audio_inputs()
        if index is None:
            return bool(inputs)
        return any(item["index"] == int(index) for item in inputs)
