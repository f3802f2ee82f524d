# -*- coding: utf-8 -*-
"""Artifact egress: discard, export to disk, preview file and upload."""

from __future__ import annotations

import logging
import tempfile
import threading
import time
from pathlib import Path

from mediacapture.constants import EXPORT_FILENAME_TEMPLATE
from mediacapture.errors import UploadFailed
from mediacapture.integrations.upload_client import UploadDestination
from mediacapture.models.artifact import Artifact
from mediacapture.utils.file_utils import write_bytes_atomic

logger = logging.getLogger(__name__)


class ArtifactEgress:
    """Moves finished artifacts out of memory."""

    def __init__(
        self,
        destination: UploadDestination | None = None,
        export_dir: str | Path = "recordings",
        filename_template: str = EXPORT_FILENAME_TEMPLATE,
    ) -> None:
        self.destination = destination
        self.export_dir = Path(export_dir)
        self.filename_template = filename_template
        self._previews: dict[int, Path] = {}
        self._lock = threading.Lock()

    def export_filename(self, artifact: Artifact) -> str:
        return self.filename_template.format(
            timestamp_ms=int(time.time() * 1000),
            extension=artifact.extension,
            mode=artifact.mode.value if artifact.mode is not None else "recording",
        )

    def export(self, artifact: Artifact, target: str | Path | None = None) -> Path:
        """Write the artifact bytes and return the file path. `target` may be a file or a directory."""
        if target is None:
            path = self.export_dir / self.export_filename(artifact)
        else:
            path = Path(target)
            if path.is_dir() or (not path.suffix and not path.exists()):
                path = path / self.export_filename(artifact)
        write_bytes_atomic(path, artifact.data)
        logger.info("Exported recording (%s bytes) to %s", artifact.size, path)
        return path

    def preview_path(self, artifact: Artifact) -> Path:
        """Temp file holding the artifact for playback; created once per artifact."""
        with self._lock:
            existing = self._previews.get(id(artifact))
            if existing is not None and existing.exists():
                return existing
            handle = tempfile.NamedTemporaryFile(
                prefix="mediacapture-preview-",
                suffix=f".{artifact.extension}",
                delete=False,
            )
            with handle:
                handle.write(artifact.data)
            path = Path(handle.name)
            self._previews[id(artifact)] = path
        logger.debug("Preview file written: %s", path)
        return path

    def discard(self, artifact: Artifact | None) -> None:
        """Drop any preview file of `artifact`. Never raises."""
        if artifact is None:
            return
        with self._lock:
            path = self._previews.pop(id(artifact), None)
        if path is None:
            return
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Could not remove preview file %s: %s", path, exc)

    def upload(self, artifact: Artifact) -> str:
        if self.destination is None:
            raise UploadFailed("No upload destination configured")
        try:
            locator = self.destination.put(artifact.data, artifact.media_type)
        except Exception as exc:
            logger.error("Upload failed: %s", exc)
            raise UploadFailed(str(exc) or type(exc).__name__) from exc
        if not locator:
            raise UploadFailed("Upload destination returned an empty locator")
        logger.info("Upload complete: %s", locator)
        return str(locator)
