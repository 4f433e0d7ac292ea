"""
CONTRACT: inline (source: src/stageview/core/clock.md)
ROLE: Monotonic timestamps.

INPUTS:
  - Topic: n/a  Type: n/a
OUTPUTS:
  - Topic: n/a  Type: n/a

CONFIG KEYS:
  - n/a

PERF / TIMING:
  - monotonic now_ns() for all modules

FAILURE MODES:
  - n/a

LOG EVENTS:
  - n/a

TESTS:
  - tests/test_health_and_trigger.py covers timestamp monotonicity

CONTRACT DETAILS (inline from src/stageview/core/clock.md):
# Clock and timestamps

- t_ns is monotonic per process.
- Wall time is used only for on-screen captions.
"""

from __future__ import annotations

import time


def now_ns() -> int:
    """Monotonic timestamp in nanoseconds."""
    return time.monotonic_ns()


def wall_label(wall_s: float) -> str:
    """Format a wall-clock time for frame captions (HH:MM:SS.mmm)."""
    millis = int((wall_s - int(wall_s)) * 1000)
    return time.strftime("%H:%M:%S", time.localtime(wall_s)) + f".{millis:03d}"
