# -*- coding: utf-8 -*-
"""Finalized recording data model."""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from datetime import datetime, timezone

from mediacapture.constants import MEDIA_EXTENSIONS
from mediacapture.models.states import CaptureMode


def extension_for(media_type: str) -> str:
    """Return the file extension for a media type such as `video/webm;codecs=vp8`."""
    base = media_type.split(";", 1)[0].strip().lower()
    return MEDIA_EXTENSIONS.get(base, "bin")


@dataclass(frozen=True)
class Thumbnail:
    """Single still image taken from the live video at finalize time."""

    data: bytes
    width: int
    height: int
    media_type: str = "image/jpeg"

    def to_data_url(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.media_type};base64,{encoded}"


@dataclass(frozen=True)
class Artifact:
    """Immutable recording blob with its media type and duration."""

    data: bytes = field(repr=False)
    media_type: str
    duration: float
    thumbnail: Thumbnail | None = field(default=None, repr=False)
    mode: CaptureMode | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def extension(self) -> str:
        return extension_for(self.media_type)
