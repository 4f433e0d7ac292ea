"""
CONTRACT: inline (source: src/stageview/core/errors.md)
ROLE: Error taxonomy for capture, display and scheduling.

FAILURE MODES:
  - DeviceBusy / DeviceNotFound / CaptureError: per camera, recoverable,
    counted toward quarantine
  - DisplayUpdateError: cosmetic, logged only
  - TimerFault: fatal to the scheduler session
"""

from __future__ import annotations

from typing import Optional


class StageViewError(Exception):
    """Base class for stageview errors."""


class ConfigError(StageViewError, ValueError):
    """Raised when a config file fails validation."""


class CameraError(StageViewError):
    """A recoverable failure tied to one camera."""

    reason = "camera_error"

    def __init__(self, camera_id: str, message: Optional[str] = None) -> None:
        self.camera_id = camera_id
        detail = message or self.reason
        super().__init__(f"{camera_id}: {detail}")
        self.detail = detail


class DeviceBusy(CameraError):
    reason = "device_busy"


class DeviceNotFound(CameraError):
    reason = "device_not_found"


class CaptureError(CameraError):
    reason = "capture_failed"


class CaptureTimeout(CaptureError):
    reason = "capture_timeout"


class DisplayUpdateError(StageViewError):
    """Rendering a frame or status onto a surface failed."""

    def __init__(self, camera_id: str, message: str) -> None:
        self.camera_id = camera_id
        super().__init__(f"{camera_id}: {message}")


class TimerFault(StageViewError):
    """The periodic trigger can no longer be trusted to tick."""
