"""
CONTRACT: inline (source: src/stageview/vision/preview.md)
ROLE: Continuous single-camera live preview.

INPUTS:
  - n/a
OUTPUTS:
  - frames pushed to the display registry under the preview's camera id
  - Topic: capture.frames.<camera_id>  Type: VideoFrame (when a bus is given)

CONFIG KEYS:
  - preview.fps: preview frame rate

PERF / TIMING:
  - holds its camera open for the whole session

FAILURE MODES:
  - open fails -> log preview_failed -> session ends
  - read fails -> log frame_drop -> keep reading
  - stop() times out mid-capture -> returns False, still running until the read returns

LOG EVENTS:
  - module=vision.preview, event=started, payload keys=camera_id
  - module=vision.preview, event=stopped, payload keys=camera_id, frames
  - module=vision.preview, event=preview_failed, payload keys=camera_id, error
  - module=vision.preview, event=frame_drop, payload keys=camera_id

TESTS:
  - tests/test_capture_scheduler.py (preview is released before periodic capture)
"""

from __future__ import annotations

import threading
import time
from typing import Any, Optional

from stageview.adapters.video_backend import CameraBackend, camera_session
from stageview.core.errors import CameraError, DisplayUpdateError


class LivePreview:
    """Hold one camera open and stream it to its display surface.

    Only one exclusive session may hold a camera, so the capture scheduler
    stops every registered preview (and waits for its thread) before it
    begins time-slicing.
    """

    module = "vision.preview"

    def __init__(
        self,
        backend: CameraBackend,
        camera_id: str,
        display: Any,
        logger: Any,
        fps: float = 15.0,
        bus: Optional[Any] = None,
    ) -> None:
        self.camera_id = camera_id
        self._backend = backend
        self._display = display
        self._logger = logger
        self._bus = bus
        self._period_s = 1.0 / fps if fps > 0 else 1.0 / 15.0
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.frames = 0
        self.error: Optional[str] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self.error = None
        self._display.materialize(self.camera_id)
        self._thread = threading.Thread(target=self._loop, name=f"preview-{self.camera_id}", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> bool:
        """Ask the loop to finish; True once the camera handle is released."""
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        released = thread is None or not thread.is_alive()
        if released:
            self._thread = None
        self._display.destroy(self.camera_id)
        return released

    def _loop(self) -> None:
        try:
            with camera_session(self._backend, self.camera_id) as handle:
                self._logger.emit("info", self.module, "started", {"camera_id": self.camera_id})
                while not self._stop_event.is_set():
                    started = time.monotonic()
                    try:
                        frame = self._backend.capture_frame(handle)
                    except CameraError:
                        self._logger.emit("warning", self.module, "frame_drop", {"camera_id": self.camera_id})
                        self._display.mark_error(self.camera_id)
                    else:
                        self.frames += 1
                        try:
                            self._display.update(self.camera_id, frame)
                        except DisplayUpdateError as exc:
                            self._logger.emit(
                                "warning", self.module, "display_update_failed", {"camera_id": self.camera_id, "error": str(exc)}
                            )
                        if self._bus is not None:
                            self._bus.publish(f"capture.frames.{self.camera_id}", frame.as_message())
                    self._stop_event.wait(max(0.0, self._period_s - (time.monotonic() - started)))
        except CameraError as exc:
            self.error = str(exc)
            self._logger.emit("error", self.module, "preview_failed", {"camera_id": self.camera_id, "error": str(exc)})
            self._display.mark_error(self.camera_id, exc.detail)
            return
        self._logger.emit("info", self.module, "stopped", {"camera_id": self.camera_id, "frames": self.frames})
