"""stageview.core.health

CONTRACT: inline (source: src/stageview/core/health.md)
ROLE: Per-camera consecutive-failure counters and quarantine decision.

INPUTS:
  - capture outcomes reported by the scheduler (success / failure)

OUTPUTS:
  - snapshot() for the capture.status topic

CONFIG KEYS:
  - capture.quarantine_threshold: consecutive failures before quarantine

PERF / TIMING:
  - O(1) per event; no background thread
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass
class _CameraHealth:
    consecutive_failures: int = 0
    total_failures: int = 0
    total_successes: int = 0
    last_error: Optional[str] = None
    last_ok_wall_s: float = 0.0


class HealthTracker:
    """Decide from success/failure events when a camera leaves rotation.

    Only the scheduler writes to the tracker, always under its own lock, so
    the tracker itself carries no locking.
    """

    def __init__(self, threshold: int = 5) -> None:
        if int(threshold) < 1:
            raise ValueError("quarantine threshold must be >= 1")
        self._threshold = int(threshold)
        self._state: Dict[str, _CameraHealth] = {}

    @property
    def threshold(self) -> int:
        return self._threshold

    def record_success(self, camera_id: str) -> None:
        state = self._state.setdefault(camera_id, _CameraHealth())
        state.consecutive_failures = 0
        state.total_successes += 1
        state.last_ok_wall_s = time.time()

    def record_failure(self, camera_id: str, error: Optional[str] = None) -> int:
        """Count a failure and return the new consecutive-failure count."""
        state = self._state.setdefault(camera_id, _CameraHealth())
        state.consecutive_failures += 1
        state.total_failures += 1
        state.last_error = error
        return state.consecutive_failures

    def should_quarantine(self, count: int) -> bool:
        return count >= self._threshold

    def failures(self, camera_id: str) -> int:
        state = self._state.get(camera_id)
        return state.consecutive_failures if state is not None else 0

    def forget(self, camera_id: str) -> None:
        self._state.pop(camera_id, None)

    def reset(self) -> None:
        self._state.clear()

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {
            camera_id: {
                "consecutive_failures": st.consecutive_failures,
                "total_failures": st.total_failures,
                "total_successes": st.total_successes,
                "last_error": st.last_error,
            }
            for camera_id, st in self._state.items()
        }
