# -*- coding: utf-8 -*-
"""Events emitted by the recording session to its observers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from mediacapture.models.states import SessionState

STATE_CHANGED = "state_changed"
TICK = "tick"
ARTIFACT_READY = "artifact_ready"
UPLOAD_COMPLETE = "upload_complete"
ERROR = "error"


@dataclass(frozen=True)
class SessionEvent:
    """One observable change of the recording session."""

    kind: str
    state: SessionState
    previous: SessionState | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
