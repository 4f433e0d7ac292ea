"""stageview.core.log_sink

CONTRACT: inline (source: src/stageview/core/logging.md)
ROLE: Persist structured LogEvent messages to disk as JSONL.

INPUTS:
  - Topic: log.events  Type: LogEvent
OUTPUTS:
  - logging.file.path (JSONL), rotated to <stem>.NNN<suffix>

CONFIG KEYS:
  - logging.file.enabled: enable file logging
  - logging.file.path: output file
  - logging.file.min_level: lowest level written (default debug)
  - logging.file.flush_interval_ms: flush interval
  - logging.file.rotate_mb: optional rotation size (0 disables)

FAILURE MODES:
  - write error -> sink stops -> log_write_failed

LOG EVENTS:
  - module=core.log_sink, event=log_write_failed, payload keys=path, error
"""

from __future__ import annotations

import json
import queue
import threading
import time
from pathlib import Path
from typing import Any, Dict, Optional, TextIO

from stageview.core.config import get_path
from stageview.core.logging import LEVELS


TOPIC = "log.events"


class JsonlLogSink:
    """Drain ``log.events`` into a size-rotated JSONL file until ``stop_event``."""

    def __init__(
        self,
        bus: Any,
        path: Path,
        logger: Any,
        stop_event: threading.Event,
        min_level: str = "debug",
        flush_interval_s: float = 0.2,
        rotate_bytes: int = 0,
    ) -> None:
        self.path = path
        self.written = 0
        self._bus = bus
        self._logger = logger
        self._stop_event = stop_event
        self._threshold = LEVELS.get(min_level, 0)
        self._flush_interval_s = max(0.0, flush_interval_s)
        self._rotate_bytes = max(0, int(rotate_bytes))
        self._inbox = bus.subscribe(TOPIC)
        self._fh: Optional[TextIO] = None

    def run(self) -> None:
        next_flush = time.monotonic() + self._flush_interval_s
        try:
            self._fh = self._open()
            while not self._stop_event.is_set():
                try:
                    self._write(self._inbox.get(timeout=0.1))
                except queue.Empty:
                    pass
                if time.monotonic() >= next_flush:
                    self._fh.flush()
                    next_flush = time.monotonic() + self._flush_interval_s
                    self._maybe_rotate()
            # Events emitted during shutdown are still in the inbox.
            while True:
                try:
                    self._write(self._inbox.get_nowait())
                except queue.Empty:
                    break
        except OSError as exc:
            self._logger.emit("warning", "core.log_sink", "log_write_failed", {"path": str(self.path), "error": str(exc)})
        finally:
            self._bus.unsubscribe(TOPIC, self._inbox)
            self._close()

    def _write(self, event: Dict[str, Any]) -> None:
        if LEVELS.get(str(event.get("level", "")), 0) < self._threshold:
            return
        self._fh.write(json.dumps(event, sort_keys=True, default=str) + "\n")
        self.written += 1

    def _open(self) -> TextIO:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        return open(self.path, "a", encoding="utf-8")

    def _maybe_rotate(self) -> None:
        if not self._rotate_bytes or self._fh.tell() < self._rotate_bytes:
            return
        self._fh.close()
        self.path.rename(self._next_rotated_path())
        self._fh = self._open()

    def _next_rotated_path(self) -> Path:
        index = 1
        while True:
            candidate = self.path.with_name(f"{self.path.stem}.{index:03d}{self.path.suffix}")
            if not candidate.exists():
                return candidate
            index += 1

    def _close(self) -> None:
        if self._fh is None or self._fh.closed:
            return
        try:
            self._fh.close()
        except OSError as exc:
            self._logger.emit("warning", "core.log_sink", "log_write_failed", {"path": str(self.path), "error": str(exc)})


def start_log_sink(
    bus: Any,
    config: Dict[str, Any],
    logger: Any,
    stop_event: threading.Event,
) -> Optional[threading.Thread]:
    file_cfg = get_path(config, "logging.file", {})
    if not isinstance(file_cfg, dict) or not bool(file_cfg.get("enabled", False)):
        return None

    sink = JsonlLogSink(
        bus,
        Path(str(file_cfg.get("path", "logs/stageview.jsonl"))),
        logger,
        stop_event,
        min_level=str(file_cfg.get("min_level", "debug")),
        flush_interval_s=float(file_cfg.get("flush_interval_ms", 200.0)) / 1000.0,
        rotate_bytes=int(float(file_cfg.get("rotate_mb", 0.0)) * 1024 * 1024),
    )
    thread = threading.Thread(target=sink.run, name="log-sink", daemon=True)
    thread.start()
    return thread
