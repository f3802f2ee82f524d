# -*- coding: utf-8 -*-
"""Tests for precheck validation."""

from __future__ import annotations

import pytest

from mediacapture.core.precheck import MIN_FREE_BYTES, Precheck, format_precheck_report


def _result_map(results: list[dict]) -> dict[str, dict]:
    return {item["check"]: item for item in results}


def _healthy(**overrides) -> Precheck:
    probes = {
        "camera_check": lambda idx: True,
        "mic_check": lambda idx: True,
        "screen_check": lambda monitor: True,
        "mic_level_probe": lambda idx: 42.0,
        "connection_check": lambda upload: (True, "reachable"),
        "dependency_check": lambda: {"numpy": True, "cv2": True, "av": True},
        "disk_usage_provider": lambda path: (10, 1, 2_000_000_000),
    }
    probes.update(overrides)
    return Precheck(**probes)


def test_all_checks_pass_with_working_devices(default_config: dict) -> None:
    results = _result_map(_healthy().run(default_config))
    assert set(results) == {
        "dependencies",
        "camera",
        "microphone",
        "screen",
        "connection",
        "disk_space",
        "microphone_level",
    }
    assert all(item["passed"] for item in results.values())
    assert results["microphone_level"]["level"] == 42.0


def test_camera_check_fails_without_camera(default_config: dict) -> None:
    results = _result_map(_healthy(camera_check=lambda idx: False).run(default_config))
    assert results["camera"]["passed"] is False


def test_camera_not_required_for_screen_mode(default_config: dict) -> None:
    calls: list[int] = []
    precheck = _healthy(camera_check=lambda idx: calls.append(idx) or False)
    results = _result_map(precheck.run(default_config, mode="screen"))
    assert results["camera"]["passed"] is True
    assert "Not needed" in results["camera"]["message"]
    assert calls == []


@pytest.mark.parametrize("mode", ["screen", "screen_with_camera_audio"])
def test_screen_check_runs_for_screen_modes(default_config: dict, mode: str) -> None:
    results = _result_map(_healthy(screen_check=lambda monitor: False).run(default_config, mode=mode))
    assert results["screen"]["passed"] is False


def test_missing_microphone_skips_level_probe(default_config: dict) -> None:
    def _probe(idx):
        raise AssertionError("level probe must not run without a microphone")

    results = _result_map(_healthy(mic_check=lambda idx: False, mic_level_probe=_probe).run(default_config))
    assert results["microphone"]["passed"] is False
    assert results["microphone_level"]["passed"] is False


def test_silent_microphone_is_reported(default_config: dict) -> None:
    results = _result_map(_healthy(mic_level_probe=lambda idx: 0.0).run(default_config))
    assert results["microphone_level"]["passed"] is False
    assert "silence" in results["microphone_level"]["message"]


def test_missing_dependency_names_the_package(default_config: dict) -> None:
    precheck = _healthy(dependency_check=lambda: {"cv2": False, "av": True})
    results = _result_map(precheck.run(default_config))
    assert results["dependencies"]["passed"] is False
    assert "opencv-python" in results["dependencies"]["message"]


def test_connection_check_receives_resolved_upload_settings(default_config: dict) -> None:
    seen: list[dict] = []

    def _connection(upload):
        seen.append(upload)
        return False, "offline"

    results = _result_map(_healthy(connection_check=_connection).run(default_config))
    assert results["connection"] == {"check": "connection", "passed": False, "message": "offline"}
    assert seen[0]["api_token"] == ""


def test_low_disk_space_fails(default_config: dict) -> None:
    precheck = _healthy(disk_usage_provider=lambda path: (10, 9, MIN_FREE_BYTES - 1))
    results = _result_map(precheck.run(default_config))
    assert results["disk_space"]["passed"] is False


def test_format_precheck_report_lists_every_check(default_config: dict) -> None:
    results = _healthy(camera_check=lambda idx: False).run(default_config)
    report = format_precheck_report(results)
    assert report.startswith("Pre-check: 6/7 passed")
    assert "[FAIL] camera" in report
    assert "[OK  ] microphone" in report
    assert format_precheck_report([]) == "No checks were run."
