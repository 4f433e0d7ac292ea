"""
CONTRACT: inline (source: src/stageview/capture/scheduler.md)
ROLE: Round-robin periodic capture over exclusively-opened cameras.

INPUTS:
  - start(camera_ids, interval_s) / stop() / set_interval() / remove_camera()
    from the control surface and from display close callbacks
OUTPUTS:
  - Topic: capture.frames.<camera_id>  Type: VideoFrame (as dict)
  - Topic: capture.status  Type: dict

CONFIG KEYS:
  - capture.interval_s: default tick period
  - capture.quarantine_threshold: consecutive failures before quarantine
  - capture.capture_timeout_s: bound on one open/capture/close (0 disables)

PERF / TIMING:
  - exactly one camera touched per tick
  - a camera handle never outlives the tick that opened it

FAILURE MODES:
  - DeviceBusy / DeviceNotFound / CaptureError -> mark error, count failure
  - failures >= threshold -> quarantine (surface disabled, not destroyed)
  - DisplayUpdateError -> log display_update_failed, health unaffected
  - TimerFault -> stop()
  - a live preview still holding its camera after preview_stop_timeout_s
    -> log preview_stop_timeout -> start() raises DeviceBusy, nothing changes

LOG EVENTS:
  - module=capture.scheduler, event=started, payload keys=cameras, interval_s
  - module=capture.scheduler, event=stopped, payload keys=reason
  - module=capture.scheduler, event=capture_failed, payload keys=camera_id, error, count
  - module=capture.scheduler, event=camera_quarantined, payload keys=camera_id, failures
  - module=capture.scheduler, event=camera_removed, payload keys=camera_id, remaining
  - module=capture.scheduler, event=interval_changed, payload keys=interval_s
  - module=capture.scheduler, event=tick_overlap, payload keys=n/a
  - module=capture.scheduler, event=preview_stopped, payload keys=camera_id
  - module=capture.scheduler, event=preview_stop_timeout, payload keys=camera_id, timeout_s

TESTS:
  - tests/test_capture_scheduler.py

CONTRACT DETAILS (inline from src/stageview/capture/scheduler.md):
# Capture scheduler

- Working set order is rotation order; it only ever shrinks.
- The cursor names the next camera due; removing a camera never changes
  which remaining camera is due next.
- Only a trigger fault stops the whole session; camera faults never do.
"""

from __future__ import annotations

import threading
from typing import Any, Callable, Dict, Iterable, List, Optional

from stageview.adapters.video_backend import CameraBackend, camera_session
from stageview.contracts.messages import VideoFrame
from stageview.core.clock import now_ns
from stageview.core.errors import CameraError, CaptureTimeout, DeviceBusy, DisplayUpdateError, TimerFault
from stageview.core.health import HealthTracker
from stageview.capture.trigger import PeriodicTrigger

MODULE = "capture.scheduler"

TriggerFactory = Callable[..., Any]

ACTIVE = "active"
QUARANTINED = "quarantined"
CLOSED = "closed"


class CaptureScheduler:
    """Time-slice exclusive camera access, one camera per tick.

    All state changes happen under ``self._lock``; the trigger thread, the
    UI thread (user closes) and the control surface all go through it. Each
    trigger is bound to a generation number so fires from a cancelled
    trigger are discarded instead of producing an extra tick.
    """

    def __init__(
        self,
        backend: CameraBackend,
        display: Any,
        logger: Any,
        bus: Optional[Any] = None,
        quarantine_threshold: int = 5,
        capture_timeout_s: float = 0.0,
        trigger_factory: TriggerFactory = PeriodicTrigger,
        preview_stop_timeout_s: float = 2.0,
    ) -> None:
        self._backend = backend
        self._display = display
        self._logger = logger
        self._bus = bus
        self._health = HealthTracker(quarantine_threshold)
        self._capture_timeout_s = float(capture_timeout_s)
        self._trigger_factory = trigger_factory
        self._preview_stop_timeout_s = float(preview_stop_timeout_s)

        self._lock = threading.RLock()
        self._working_set: List[str] = []
        self._cursor = 0
        self._states: Dict[str, str] = {}
        self._interval_s: Optional[float] = None
        self._trigger: Optional[Any] = None
        self._generation = 0
        self._in_tick = False
        self._ticks = 0
        self._previews: List[Any] = []
        self._stalled: Dict[str, threading.Thread] = {}

    # -- control surface -------------------------------------------------

    @property
    def running(self) -> bool:
        with self._lock:
            return self._trigger is not None

    @property
    def health(self) -> HealthTracker:
        return self._health

    def register_preview(self, session: Any) -> None:
        """Track an ad-hoc preview that must release its camera before start()."""
        with self._lock:
            if session not in self._previews:
                self._previews.append(session)

    def start(self, camera_ids: Iterable[str], interval_s: float) -> None:
        ids = _dedupe(camera_ids)
        if not ids:
            raise ValueError("start() needs at least one camera")
        if interval_s is None or float(interval_s) <= 0:
            raise ValueError("interval must be > 0")

        self._stop_previews()
        self.stop(reason="restart")

        with self._lock:
            self._working_set = list(ids)
            self._cursor = 0
            self._states = {camera_id: ACTIVE for camera_id in ids}
            self._health.reset()
            self._interval_s = float(interval_s)
            self._ticks = 0
            for camera_id in ids:
                self._display.materialize(camera_id)
            self._start_trigger_locked()
        self._logger.emit("info", MODULE, "started", {"cameras": ids, "interval_s": float(interval_s)})
        self._publish_status()

    def stop(self, reason: str = "requested") -> None:
        """Idempotent. Leaves no trigger, no surfaces, no per-camera states and an empty working set."""
        with self._lock:
            trigger = self._trigger
            had_session = trigger is not None or bool(self._working_set) or bool(self._display.camera_ids())
            self._trigger = None
            self._generation += 1
            for camera_id in self._display.camera_ids():
                self._display.destroy(camera_id)
            self._working_set = []
            self._cursor = 0
            self._states = {}
            self._health.reset()
        if trigger is not None:
            trigger.cancel()
        if had_session:
            self._logger.emit("info", MODULE, "stopped", {"reason": reason})
            self._publish_status()

    def set_interval(self, interval_s: float) -> bool:
        if interval_s is None or float(interval_s) <= 0:
            raise ValueError("interval must be > 0")
        with self._lock:
            if self._trigger is None:
                self._logger.emit("debug", MODULE, "interval_ignored", {"interval_s": float(interval_s)})
                return False
            old = self._trigger
            self._interval_s = float(interval_s)
            self._generation += 1
            self._start_trigger_locked()
        old.cancel()
        self._logger.emit("info", MODULE, "interval_changed", {"interval_s": float(interval_s)})
        return True

    def remove_camera(self, camera_id: str) -> bool:
        """User-initiated removal (e.g. the camera's window was closed)."""
        with self._lock:
            if camera_id not in self._working_set:
                self._display.destroy(camera_id)
                return False
            self._drop_locked(camera_id)
            self._states[camera_id] = CLOSED
            self._health.forget(camera_id)
            self._display.destroy(camera_id)
            remaining = len(self._working_set)
            self._logger.emit("info", MODULE, "camera_removed", {"camera_id": camera_id, "remaining": remaining})
            if not self._working_set:
                self.stop(reason="no_camera_active")
            else:
                self._publish_status()
        return True

    # -- ticking ---------------------------------------------------------

    def tick(self) -> Optional[str]:
        """Capture one frame from the camera at the cursor.

        Returns the camera id visited, or None when nothing was captured.
        """
        with self._lock:
            if self._in_tick:
                self._logger.emit("warning", MODULE, "tick_overlap", {})
                return None
            if not self._working_set:
                self.stop(reason="no_camera_active")
                return None
            camera_id = self._working_set[self._cursor]
            self._in_tick = True
            self._ticks += 1
            try:
                try:
                    frame = self._capture_once(camera_id)
                except CameraError as exc:
                    self._on_failure(camera_id, exc)
                else:
                    self._on_success(camera_id, frame)
            finally:
                self._in_tick = False
            if not self._working_set:
                self.stop(reason="no_camera_active")
            else:
                self._publish_status()
            return camera_id

    def _on_trigger(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self.tick()

    def _on_fault(self, generation: int, fault: TimerFault) -> None:
        with self._lock:
            if generation != self._generation:
                return
        self._logger.emit("error", MODULE, "timer_fault", {"error": str(fault)})
        self.stop(reason="timer_fault")

    def _start_trigger_locked(self) -> None:
        generation = self._generation
        trigger = self._trigger_factory(
            self._interval_s,
            lambda: self._on_trigger(generation),
            on_fault=lambda fault: self._on_fault(generation, fault),
            logger=self._logger,
        )
        self._trigger = trigger
        trigger.start()

    def _capture_once(self, camera_id: str) -> VideoFrame:
        if self._capture_timeout_s <= 0:
            return self._capture_direct(camera_id)
        return self._capture_bounded(camera_id)

    def _capture_direct(self, camera_id: str) -> VideoFrame:
        with camera_session(self._backend, camera_id) as handle:
            return self._backend.capture_frame(handle)

    def _capture_bounded(self, camera_id: str) -> VideoFrame:
        stalled = self._stalled.get(camera_id)
        if stalled is not None:
            if stalled.is_alive():
                raise DeviceBusy(camera_id, "previous capture still in flight")
            del self._stalled[camera_id]

        result: Dict[str, Any] = {}

        def _work() -> None:
            try:
                result["frame"] = self._capture_direct(camera_id)
            except BaseException as exc:  # noqa: BLE001
                result["error"] = exc

        worker = threading.Thread(target=_work, name=f"capture-{camera_id}", daemon=True)
        worker.start()
        worker.join(self._capture_timeout_s)
        if worker.is_alive():
            # The worker still owns the handle and closes it when the call returns.
            self._stalled[camera_id] = worker
            raise CaptureTimeout(camera_id, f"no frame within {self._capture_timeout_s:.3f}s")
        if "error" in result:
            raise result["error"]
        return result["frame"]

    def _on_success(self, camera_id: str, frame: VideoFrame) -> None:
        self._health.record_success(camera_id)
        try:
            self._display.update(camera_id, frame)
        except DisplayUpdateError as exc:
            self._logger.emit("warning", MODULE, "display_update_failed", {"camera_id": camera_id, "error": str(exc)})
        if self._bus is not None:
            self._bus.publish(f"capture.frames.{camera_id}", frame.as_message())
        self._cursor = (self._cursor + 1) % len(self._working_set)

    def _on_failure(self, camera_id: str, exc: CameraError) -> None:
        count = self._health.record_failure(camera_id, exc.reason)
        try:
            self._display.mark_error(camera_id, exc.detail)
        except DisplayUpdateError as display_exc:
            self._logger.emit(
                "warning", MODULE, "display_update_failed", {"camera_id": camera_id, "error": str(display_exc)}
            )
        self._logger.emit(
            "warning",
            MODULE,
            "capture_failed",
            {"camera_id": camera_id, "error": str(exc), "reason": exc.reason, "count": count},
        )
        if not self._health.should_quarantine(count):
            self._cursor = (self._cursor + 1) % len(self._working_set)
            return
        # No advance after a quarantine: once this camera is dropped the cursor's
        # index already names the camera that was due after it, and advancing
        # here as well would skip that camera for a whole rotation.
        self._drop_locked(camera_id)
        self._states[camera_id] = QUARANTINED
        self._health.forget(camera_id)
        try:
            self._display.mark_disabled(camera_id)
        except DisplayUpdateError as display_exc:
            self._logger.emit(
                "warning", MODULE, "display_update_failed", {"camera_id": camera_id, "error": str(display_exc)}
            )
        self._logger.emit("warning", MODULE, "camera_quarantined", {"camera_id": camera_id, "failures": count})

    def _drop_locked(self, camera_id: str) -> None:
        index = self._working_set.index(camera_id)
        del self._working_set[index]
        if index < self._cursor:
            self._cursor -= 1
        if self._cursor >= len(self._working_set):
            self._cursor = 0

    def _stop_previews(self) -> None:
        with self._lock:
            previews = list(self._previews)
        for session in previews:
            if not session.running:
                continue
            if not session.stop(timeout=self._preview_stop_timeout_s):
                self._logger.emit(
                    "error",
                    MODULE,
                    "preview_stop_timeout",
                    {"camera_id": session.camera_id, "timeout_s": self._preview_stop_timeout_s},
                )
                raise DeviceBusy(session.camera_id, "live preview did not release the camera")
            self._logger.emit("info", MODULE, "preview_stopped", {"camera_id": session.camera_id})

    # -- status ----------------------------------------------------------

    def status(self) -> Dict[str, Any]:
        with self._lock:
            working = list(self._working_set)
            return {
                "t_ns": now_ns(),
                "running": self._trigger is not None,
                "interval_s": self._interval_s if self._trigger is not None else None,
                "working_set": working,
                "cursor": self._cursor if working else None,
                "next_camera": working[self._cursor] if working else None,
                "cameras": dict(self._states),
                "active": len(working),
                "total": len(self._states),
                "ticks": self._ticks,
                "health": self._health.snapshot(),
            }

    def status_text(self) -> str:
        return format_status(self.status())

    def _publish_status(self) -> None:
        if self._bus is not None:
            self._bus.publish("capture.status", self.status())


def format_status(status: Dict[str, Any]) -> str:
    if not status.get("working_set"):
        return "No camera active"
    return f"{status['active']}/{status['total']} active (Next: {status['next_camera']})"


def _dedupe(camera_ids: Iterable[str]) -> List[str]:
    out: List[str] = []
    for camera_id in camera_ids or []:
        camera_id = str(camera_id)
        if camera_id not in out:
            out.append(camera_id)
    return out
