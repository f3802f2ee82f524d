# -*- coding: utf-8 -*-
"""Tests for thumbnail extraction."""

from __future__ import annotations

import cv2
import numpy as np
import pytest

from mediacapture.errors import NoFrameAvailable
from mediacapture.models.states import CaptureMode
from mediacapture.pipeline.capture import CaptureSourceManager
from mediacapture.pipeline.snapshot import SnapshotExtractor

from conftest import FakeCaptureProvider


def test_capture_encodes_latest_frame_as_jpeg(manager) -> None:
    session = manager.acquire(CaptureMode.CAMERA).result(timeout=5)
    thumbnail = SnapshotExtractor().capture(session)
    manager.release(session)

    assert thumbnail.media_type == "image/jpeg"
    assert (thumbnail.width, thumbnail.height) == (64, 48)
    decoded = cv2.imdecode(np.frombuffer(thumbnail.data, dtype=np.uint8), cv2.IMREAD_COLOR)
    assert decoded.shape == (48, 64, 3)
    assert abs(int(decoded.mean()) - 128) <= 3
    assert thumbnail.to_data_url().startswith("data:image/jpeg;base64,/9j/")


def test_no_frame_yet_raises() -> None:
    provider = FakeCaptureProvider(deliver_frames=False)
    mgr = CaptureSourceManager(provider)
    try:
        session = mgr.acquire(CaptureMode.SCREEN).result(timeout=5)
        with pytest.raises(NoFrameAvailable):
            SnapshotExtractor().capture(session)
        mgr.release(session)
    finally:
        mgr.shutdown()


def test_max_width_scales_down_keeping_aspect() -> None:
    frame = np.zeros((720, 1280, 3), dtype=np.uint8)
    thumbnail = SnapshotExtractor(max_width=320).encode(frame)
    assert (thumbnail.width, thumbnail.height) == (320, 180)


def test_empty_frame_and_bad_quality_are_rejected() -> None:
    with pytest.raises(NoFrameAvailable):
        SnapshotExtractor().encode(np.zeros((0, 0, 3), dtype=np.uint8))
    with pytest.raises(ValueError):
        SnapshotExtractor(jpeg_quality=0)
