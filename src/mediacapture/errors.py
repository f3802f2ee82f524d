# -*- coding: utf-8 -*-
"""Typed error conditions raised by the capture pipeline."""

from __future__ import annotations


class CaptureError(Exception):
    """Base class for every pipeline error. `kind` is stable for host-side messaging."""

    kind = "capture_error"


class PermissionDenied(CaptureError):
    """The user or the OS refused access to a capture device."""

    kind = "permission_denied"


class DeviceUnavailable(CaptureError):
    """No matching input device, or the share request was cancelled."""

    kind = "device_unavailable"


class AcquisitionTimeout(DeviceUnavailable):
    """A device request did not complete within the configured timeout."""

    kind = "acquisition_timeout"


class DeviceLost(CaptureError):
    """An active device disappeared while recording."""

    kind = "device_lost"


class InvalidState(CaptureError):
    """Operation invoked from a state where it is not allowed."""

    kind = "invalid_state"


class AlreadyStopped(InvalidState):
    kind = "already_stopped"


class UploadFailed(CaptureError):
    """Transient network or storage failure while uploading an artifact."""

    kind = "upload_failed"


class NoFrameAvailable(CaptureError):
    """The video track has not delivered a frame yet."""

    kind = "no_frame_available"


class RecordingFailed(CaptureError):
    """The encoder rejected the captured media. Chunks collected so far are dropped."""

    kind = "recording_failed"
