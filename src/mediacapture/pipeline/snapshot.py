# -*- coding: utf-8 -*-
"""Thumbnail extraction from the live video track."""

from __future__ import annotations

import logging

import cv2
import numpy as np

from mediacapture.constants import THUMBNAIL_JPEG_QUALITY
from mediacapture.errors import NoFrameAvailable
from mediacapture.models.artifact import Thumbnail
from mediacapture.pipeline.capture import CaptureSession

logger = logging.getLogger(__name__)


class SnapshotExtractor:
    """Encode the most recent frame of a session as a JPEG thumbnail."""

    def __init__(self, jpeg_quality: int = THUMBNAIL_JPEG_QUALITY, max_width: int | None = None) -> None:
        if not 1 <= int(jpeg_quality) <= 100:
            raise ValueError("jpeg_quality must be between 1 and 100")
        self.jpeg_quality = int(jpeg_quality)
        self.max_width = int(max_width) if max_width else None

    def capture(self, session: CaptureSession) -> Thumbnail:
        track = session.video_track
        if track is None:
            raise NoFrameAvailable("Capture session has no video track")
        frame = track.latest_frame()
        if frame is None:
            raise NoFrameAvailable(f"No frame delivered yet by {track.label or 'video track'}")
        return self.encode(frame)

    def encode(self, frame: np.ndarray) -> Thumbnail:
        image = np.asarray(frame)
        if image.size == 0:
            raise NoFrameAvailable("Frame is empty")
        height, width = image.shape[:2]
        if self.max_width and width > self.max_width:
            scale = self.max_width / float(width)
            width, height = self.max_width, max(1, int(round(height * scale)))
            image = cv2.resize(image, (width, height), interpolation=cv2.INTER_AREA)
        ok, encoded = cv2.imencode(".jpg", image, [int(cv2.IMWRITE_JPEG_QUALITY), self.jpeg_quality])
        if not ok:
            raise NoFrameAvailable("JPEG encoding failed")
        logger.debug("Thumbnail encoded: %sx%s (%s bytes)", width, height, len(encoded))
        return Thumbnail(data=encoded.tobytes(), width=int(width), height=int(height))
