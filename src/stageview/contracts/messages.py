"""
CONTRACT: contracts/messages.md
ROLE: Message types shared between the backend, scheduler and displays.

INPUTS:
  - Topic: n/a  Type: n/a
OUTPUTS:
  - Topic: capture.frames.<camera_id>  Type: VideoFrame (as dict)

CONFIG KEYS:
  - n/a

PERF / TIMING:
  - frames carry the image buffer by reference; no copies

FAILURE MODES:
  - n/a

LOG EVENTS:
  - n/a

TESTS:
  - tests/test_config_and_backend.py
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass
class VideoFrame:
    """One captured image plus its dimensions.

    ``data`` is treated as an opaque buffer (a numpy array in practice); no
    compression or color-space assumptions are made beyond ``pixel_format``.
    """

    camera_id: str
    seq: int
    t_ns: int
    width: int
    height: int
    data: Any
    pixel_format: str = "bgr24"
    wall_s: Optional[float] = None

    def as_message(self) -> Dict[str, Any]:
        return {
            "t_ns": self.t_ns,
            "seq": self.seq,
            "width": int(self.width),
            "height": int(self.height),
            "pixel_format": self.pixel_format,
            "data": self.data,
            "camera_id": self.camera_id,
        }
