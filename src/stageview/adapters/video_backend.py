"""
CONTRACT: inline (source: src/stageview/adapters/video_backend.md)
ROLE: Camera backend abstraction with exclusive open semantics.

INPUTS:
  - Topic: n/a  Type: n/a
OUTPUTS:
  - VideoFrame returned synchronously from capture_frame()

CONFIG KEYS:
  - cameras.backend: opencv | sim
  - cameras.source_mode: auto | by-path | by-id | index
  - cameras.probe_indices: numeric indices to probe when no /dev nodes exist
  - cameras.width / cameras.height / cameras.fourcc: capture settings
  - sim.cameras / sim.width / sim.height / sim.fail_rate / sim.seed

PERF / TIMING:
  - open/capture/close are blocking; one camera at a time

FAILURE MODES:
  - camera already held -> DeviceBusy
  - device node absent -> DeviceNotFound
  - read failure -> CaptureError
  - release failure -> log close_failed (never raised)

LOG EVENTS:
  - module=adapters.video_backend, event=close_failed, payload keys=camera_id, error
  - module=adapters.video_backend, event=device_busy, payload keys=camera_id
  - module=adapters.video_backend, event=device_missing, payload keys=camera_id

TESTS:
  - tests/test_config_and_backend.py

CONTRACT DETAILS (inline from src/stageview/adapters/video_backend.md):
# Video backend abstraction

- A camera can be held by exactly one session at a time.
- Every open is paired with a close on every exit path (camera_session).
- Support OpenCV capture and a simulated backend for bench runs.
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

import cv2
import numpy as np

from stageview.contracts.messages import VideoFrame
from stageview.core.clock import now_ns
from stageview.core.config import get_path
from stageview.core.errors import CaptureError, DeviceBusy, DeviceNotFound
from stageview.platform.hardware_probe import (
    candidate_sources,
    collect_camera_sources,
    source_exists,
    source_to_open_target,
)


@dataclass
class CameraHandle:
    camera_id: str
    device: Any = None
    opened_ns: int = field(default_factory=now_ns)
    frames: int = 0


class CameraBackend:
    """Exclusive-open camera access.

    Subclasses implement ``_open_device``, ``_read`` and ``_release``; this
    class owns the table of held cameras so a second open of the same id is
    refused with DeviceBusy whichever backend is in use.
    """

    module = "adapters.video_backend"

    def __init__(self, logger: Optional[Any] = None) -> None:
        self._logger = logger
        self._held_lock = threading.Lock()
        self._held: Dict[str, Optional[CameraHandle]] = {}
        self._seq = 0

    def list_cameras(self) -> List[str]:
        raise NotImplementedError

    def held_cameras(self) -> List[str]:
        with self._held_lock:
            return list(self._held.keys())

    def open(self, camera_id: str) -> CameraHandle:
        with self._held_lock:
            if camera_id in self._held:
                self._emit("debug", "device_busy", {"camera_id": camera_id})
                raise DeviceBusy(camera_id, "already open in this process")
            # Reserve before the slow open so concurrent opens see the camera as held.
            self._held[camera_id] = None
        try:
            device = self._open_device(camera_id)
        except BaseException:
            with self._held_lock:
                self._held.pop(camera_id, None)
            raise
        handle = CameraHandle(camera_id=camera_id, device=device)
        with self._held_lock:
            self._held[camera_id] = handle
        return handle

    def capture_frame(self, handle: CameraHandle) -> VideoFrame:
        image = self._read(handle)
        if image is None or getattr(image, "size", 0) == 0:
            raise CaptureError(handle.camera_id, "empty frame")
        handle.frames += 1
        self._seq += 1
        height, width = image.shape[:2]
        return VideoFrame(
            camera_id=handle.camera_id,
            seq=self._seq,
            t_ns=now_ns(),
            width=int(width),
            height=int(height),
            data=image,
            pixel_format="gray8" if image.ndim == 2 else "bgr24",
            wall_s=time.time(),
        )

    def close(self, handle: CameraHandle) -> None:
        try:
            self._release(handle)
        except Exception as exc:  # noqa: BLE001
            self._emit("warning", "close_failed", {"camera_id": handle.camera_id, "error": str(exc)})
        finally:
            with self._held_lock:
                if self._held.get(handle.camera_id) is handle:
                    del self._held[handle.camera_id]

    def _open_device(self, camera_id: str) -> Any:
        raise NotImplementedError

    def _read(self, handle: CameraHandle) -> Any:
        raise NotImplementedError

    def _release(self, handle: CameraHandle) -> None:
        raise NotImplementedError

    def _emit(self, level: str, event: str, payload: Dict[str, Any]) -> None:
        if self._logger is not None:
            self._logger.emit(level, self.module, event, payload)


@contextmanager
def camera_session(backend: CameraBackend, camera_id: str) -> Iterator[CameraHandle]:
    """Hold ``camera_id`` exclusively for the duration of the block."""
    handle = backend.open(camera_id)
    try:
        yield handle
    finally:
        backend.close(handle)


class OpenCVCameraBackend(CameraBackend):
    """cv2.VideoCapture backend for V4L2/USB cameras."""

    _BACKENDS = (("CAP_V4L2", cv2.CAP_V4L2), ("CAP_ANY", cv2.CAP_ANY))

    def __init__(
        self,
        logger: Optional[Any] = None,
        source_mode: str = "auto",
        probe_indices: int = 0,
        width: int = 640,
        height: int = 480,
        fourcc: str = "MJPG",
    ) -> None:
        super().__init__(logger)
        self._source_mode = source_mode
        self._probe_indices = int(probe_indices)
        self._width = int(width)
        self._height = int(height)
        self._fourcc = fourcc

    def list_cameras(self) -> List[str]:
        sources = collect_camera_sources(self._source_mode)
        if sources or self._probe_indices <= 0:
            return sources
        found: List[str] = []
        for index in range(self._probe_indices):
            cap = cv2.VideoCapture(index, cv2.CAP_ANY)
            try:
                if cap.isOpened():
                    found.append(str(index))
            finally:
                cap.release()
        return found

    def _open_device(self, camera_id: str) -> cv2.VideoCapture:
        for candidate in candidate_sources(camera_id):
            target = source_to_open_target(candidate)
            for _name, api in self._BACKENDS:
                cap = cv2.VideoCapture(target, api)
                if cap.isOpened():
                    self._configure(cap)
                    return cap
                cap.release()
        if not source_exists(camera_id):
            self._emit("warning", "device_missing", {"camera_id": camera_id})
            raise DeviceNotFound(camera_id)
        # The node exists but refused to open: another process holds it.
        self._emit("debug", "device_busy", {"camera_id": camera_id})
        raise DeviceBusy(camera_id, "open refused by driver")

    def _configure(self, cap: cv2.VideoCapture) -> None:
        if self._fourcc:
            try:
                cap.set(cv2.CAP_PROP_FOURCC, cv2.VideoWriter_fourcc(*self._fourcc[:4]))
            except cv2.error:
                pass
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, self._width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self._height)

    def _read(self, handle: CameraHandle) -> Any:
        try:
            ok, frame = handle.device.read()
        except cv2.error as exc:
            raise CaptureError(handle.camera_id, str(exc)) from exc
        if not ok:
            raise CaptureError(handle.camera_id, "read returned no frame")
        return frame

    def _release(self, handle: CameraHandle) -> None:
        if handle.device is not None:
            handle.device.release()


class SimulatedCameraBackend(CameraBackend):
    """Synthetic cameras with scripted or random failures.

    Frames are small BGR gradients with a bar that moves one step per
    capture, so consecutive frames differ visibly on screen.
    """

    module = "adapters.sim_backend"

    def __init__(
        self,
        camera_ids: List[str],
        logger: Optional[Any] = None,
        width: int = 320,
        height: int = 240,
        fail_rate: float = 0.0,
        seed: int = 0,
        capture_delay_s: float = 0.0,
    ) -> None:
        super().__init__(logger)
        self._camera_ids = list(camera_ids)
        self._width = int(width)
        self._height = int(height)
        self._fail_rate = float(fail_rate)
        self._rng = np.random.default_rng(seed)
        self.capture_delay_s = float(capture_delay_s)
        self._script_lock = threading.Lock()
        self._scripted: Dict[str, List[type]] = {}
        self._missing: set[str] = set()
        self._external_holders: set[str] = set()
        self.events: List[Tuple[str, str]] = []

    def list_cameras(self) -> List[str]:
        return [cid for cid in self._camera_ids if cid not in self._missing]

    def fail_next(self, camera_id: str, count: int = 1, error: type = CaptureError) -> None:
        """Make the next ``count`` captures of ``camera_id`` raise ``error``."""
        with self._script_lock:
            self._scripted.setdefault(camera_id, []).extend([error] * count)

    def set_missing(self, camera_id: str, missing: bool = True) -> None:
        with self._script_lock:
            if missing:
                self._missing.add(camera_id)
            else:
                self._missing.discard(camera_id)

    def hold_externally(self, camera_id: str, held: bool = True) -> None:
        """Simulate another process holding the device."""
        with self._script_lock:
            if held:
                self._external_holders.add(camera_id)
            else:
                self._external_holders.discard(camera_id)

    def _open_device(self, camera_id: str) -> Dict[str, Any]:
        self.events.append(("open", camera_id))
        with self._script_lock:
            if camera_id in self._missing or camera_id not in self._camera_ids:
                raise DeviceNotFound(camera_id)
            if camera_id in self._external_holders:
                raise DeviceBusy(camera_id, "held by another process")
        return {"phase": len(self.events)}

    def _read(self, handle: CameraHandle) -> Any:
        camera_id = handle.camera_id
        self.events.append(("capture", camera_id))
        if self.capture_delay_s > 0:
            time.sleep(self.capture_delay_s)
        with self._script_lock:
            scripted = self._scripted.get(camera_id)
            error = scripted.pop(0) if scripted else None
        if error is not None:
            raise error(camera_id, "scripted failure")
        if self._fail_rate > 0 and float(self._rng.random()) < self._fail_rate:
            raise CaptureError(camera_id, "simulated read failure")
        return self._render(camera_id, handle.device["phase"] + handle.frames)

    def _release(self, handle: CameraHandle) -> None:
        self.events.append(("close", handle.camera_id))

    def _render(self, camera_id: str, step: int) -> np.ndarray:
        base = sum(camera_id.encode("utf-8")) % 180
        ramp = np.linspace(0, 255, self._width, dtype=np.float32)
        image = np.empty((self._height, self._width, 3), dtype=np.uint8)
        image[:, :, 0] = ramp.astype(np.uint8)
        image[:, :, 1] = (base + ramp / 4).astype(np.uint8)
        image[:, :, 2] = np.uint8(255 - base)
        bar = (step * 8) % max(self._width - 8, 1)
        image[:, bar : bar + 8] = 255
        return image


def create_backend(config: Dict[str, Any], logger: Optional[Any] = None) -> CameraBackend:
    kind = str(get_path(config, "cameras.backend", "opencv")).lower()
    if kind == "sim":
        return SimulatedCameraBackend(
            list(get_path(config, "sim.cameras", [])),
            logger=logger,
            width=int(get_path(config, "sim.width", 320)),
            height=int(get_path(config, "sim.height", 240)),
            fail_rate=float(get_path(config, "sim.fail_rate", 0.0)),
            seed=int(get_path(config, "sim.seed", 0)),
        )
    if kind != "opencv":
        raise ValueError(f"Unsupported camera backend: {kind}")
    return OpenCVCameraBackend(
        logger=logger,
        source_mode=str(get_path(config, "cameras.source_mode", "auto")),
        probe_indices=int(get_path(config, "cameras.probe_indices", 0)),
        width=int(get_path(config, "cameras.width", 640)),
        height=int(get_path(config, "cameras.height", 480)),
        fourcc=str(get_path(config, "cameras.fourcc", "MJPG") or ""),
    )
