"""
CONTRACT: inline (source: src/stageview/core/logging.md)
ROLE: Structured logging to JSONL + console.

INPUTS:
  - n/a
OUTPUTS:
  - Topic: log.events  Type: LogEvent

CONFIG KEYS:
  - logging.level: minimum level printed to stdout

PERF / TIMING:
  - emit never blocks on the bus (drop-oldest)

FAILURE MODES:
  - n/a

LOG EVENTS:
  - n/a

TESTS:
  - tests/test_log_sink.py

CONTRACT DETAILS (inline from src/stageview/core/logging.md):
# Logging contract

- Structured LogEvent with module, severity, and context.
- Every event is published on log.events regardless of level.
- Only events at or above logging.level reach stdout.
"""

from __future__ import annotations

import json
import sys
import threading
from typing import Any, Dict, Optional, TextIO

from stageview.core.clock import now_ns


LEVELS = {"debug": 10, "info": 20, "warning": 30, "error": 40}


class LogEmitter:
    """Emit structured LogEvents to the bus and a text stream.

    Payloads that name a ``camera_id`` have it lifted to the top of the
    record so per-camera filtering does not need to dig into ``context``.
    """

    def __init__(
        self,
        bus: Optional[Any],
        min_level: str = "info",
        run_id: str = "",
        stream: Optional[TextIO] = None,
    ) -> None:
        if min_level not in LEVELS:
            raise ValueError(f"unknown log level '{min_level}', expected one of {sorted(LEVELS)}")
        self._bus = bus
        self._threshold = LEVELS[min_level]
        self._run_id = run_id
        self._stream = stream
        self._write_lock = threading.Lock()

    def enabled_for(self, level: str) -> bool:
        return LEVELS.get(level, 0) >= self._threshold

    def emit(self, level: str, module: str, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        details = dict(payload or {})
        record: Dict[str, Any] = {
            "t_ns": now_ns(),
            "level": level,
            "message": f"{module}:{event}",
            "context": {"module": module, "event": event, "details": details},
        }
        if "camera_id" in details:
            record["camera_id"] = details["camera_id"]
        if self._run_id:
            record["run_id"] = self._run_id
        if self._bus is not None:
            self._bus.publish("log.events", record)
        if not self.enabled_for(level):
            return
        line = json.dumps(record, sort_keys=True, default=str)
        # Trigger, preview and UI threads all log; keep lines whole.
        with self._write_lock:
            stream = self._stream or sys.stdout
            stream.write(line + "\n")
            stream.flush()
