from __future__ import annotations

from .session import Session, SessionController, SessionState, wrap_extraction_payload
from .surface import (
    COMPLETION_CHANNEL,
    PlaywrightSurfaceHost,
    SurfaceHandle,
    SurfaceHost,
    SurfaceListener,
    SurfaceOutcome,
)

__all__ = [
    "COMPLETION_CHANNEL",
    "PlaywrightSurfaceHost",
    "Session",
    "SessionController",
    "SessionState",
    "SurfaceHandle",
    "SurfaceHost",
    "SurfaceListener",
    "SurfaceOutcome",
    "wrap_extraction_payload",
]
