"""
CONTRACT: inline (source: src/stageview/capture/trigger.md)
ROLE: Non-reentrant periodic trigger driving scheduler ticks.

INPUTS:
  - n/a
OUTPUTS:
  - callback() once per period on the trigger thread

CONFIG KEYS:
  - capture.interval_s (through the scheduler)

PERF / TIMING:
  - first fire one period after start()
  - at most one callback in flight; an overrun pushes the next deadline
    one period past completion instead of firing back-to-back

FAILURE MODES:
  - callback raises -> TimerFault -> trigger stops -> on_fault(fault)

LOG EVENTS:
  - module=capture.trigger, event=tick_failed, payload keys=error, type

TESTS:
  - tests/test_health_and_trigger.py
"""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Optional

from stageview.core.errors import TimerFault


FaultHandler = Callable[[TimerFault], None]


class PeriodicTrigger:
    """Call ``callback`` every ``period_s`` seconds on a dedicated thread."""

    def __init__(
        self,
        period_s: float,
        callback: Callable[[], Any],
        on_fault: Optional[FaultHandler] = None,
        logger: Optional[Any] = None,
        name: str = "capture-trigger",
    ) -> None:
        if period_s <= 0:
            raise ValueError("trigger period must be > 0")
        self.period_s = float(period_s)
        self._callback = callback
        self._on_fault = on_fault
        self._logger = logger
        self._name = name
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def active(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set()

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("trigger already started")
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()

    def cancel(self, wait: bool = False, timeout: float = 1.0) -> None:
        """Stop firing. Safe to call from inside the callback."""
        self._stop_event.set()
        thread = self._thread
        if wait and thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def _run(self) -> None:
        next_fire = time.monotonic() + self.period_s
        while not self._stop_event.wait(max(0.0, next_fire - time.monotonic())):
            try:
                self._callback()
            except Exception as exc:  # noqa: BLE001
                self._fault(exc)
                return
            next_fire += self.period_s
            now = time.monotonic()
            if next_fire <= now:
                next_fire = now + self.period_s

    def _fault(self, exc: Exception) -> None:
        self._stop_event.set()
        fault = TimerFault(f"{self._name}: tick callback failed: {exc}")
        fault.__cause__ = exc
        if self._logger is not None:
            self._logger.emit(
                "error",
                "capture.trigger",
                "tick_failed",
                {"error": str(exc), "type": type(exc).__name__},
            )
        if self._on_fault is not None:
            self._on_fault(fault)
