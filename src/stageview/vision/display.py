"""
CONTRACT: inline (source: src/stageview/vision/display.md)
ROLE: One display surface per camera; sink for frames and status.

INPUTS:
  - materialize / update / mark_error / mark_disabled / destroy from the
    scheduler (any thread)
  - pump() from the UI thread
OUTPUTS:
  - on_user_close(camera_id) when a user closes a surface

CONFIG KEYS:
  - display.enabled: HighGUI windows (true) or headless surfaces (false)
  - display.tile_width / display.tile_height: tile size including caption
  - display.columns / display.gap_px / display.origin: grid placement

PERF / TIMING:
  - rendering (resize + caption) runs on the caller's thread; HighGUI calls
    run only inside pump()

FAILURE MODES:
  - frame cannot be rendered -> DisplayUpdateError (cosmetic)

LOG EVENTS:
  - module=vision.display, event=surface_closed, payload keys=camera_id
  - module=vision.display, event=surface_materialized, payload keys=camera_id, slot

TESTS:
  - tests/test_display_registry.py

CONTRACT DETAILS (inline from src/stageview/vision/display.md):
# Display registry

- No scheduling logic lives here.
- Aspect ratio is preserved; the tile is letterboxed.
- An error or disabled surface stays visible with its last frame.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from stageview.core.clock import wall_label
from stageview.core.config import get_path
from stageview.core.errors import DisplayUpdateError


CAPTION_PX = 28

IDLE = "idle"
LIVE = "live"
ERROR = "error"
DISABLED = "disabled"

# BGR
_CAPTION_COLORS = {
    IDLE: (90, 90, 90),
    LIVE: (60, 150, 60),
    ERROR: (40, 40, 200),
    DISABLED: (110, 110, 110),
}
_ERROR_BORDER = (0, 0, 230)

CloseHandler = Callable[[str], None]
SurfaceFactory = Callable[[str, Tuple[int, int], Tuple[int, int]], Any]


def grid_position(
    slot: int,
    columns: int,
    tile_size: Tuple[int, int],
    gap_px: int = 24,
    origin: Sequence[int] = (40, 40),
) -> Tuple[int, int]:
    """Top-left screen position of a grid slot; slots never overlap."""
    columns = max(1, int(columns))
    width, height = tile_size
    row, col = divmod(int(slot), columns)
    return int(origin[0]) + col * (width + gap_px), int(origin[1]) + row * (height + gap_px)


def letterbox(image: Any, width: int, height: int) -> np.ndarray:
    """Fit ``image`` into width x height without distortion, padding with black."""
    if not isinstance(image, np.ndarray) or image.size == 0:
        raise ValueError("frame data is not a non-empty image array")
    if image.ndim == 2:
        image = cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
    elif image.ndim == 3 and image.shape[2] == 4:
        image = cv2.cvtColor(image, cv2.COLOR_BGRA2BGR)
    elif image.ndim != 3 or image.shape[2] != 3:
        raise ValueError(f"unsupported frame shape {image.shape}")
    if image.dtype != np.uint8:
        image = cv2.normalize(image, None, 0, 255, cv2.NORM_MINMAX).astype(np.uint8)

    src_h, src_w = image.shape[:2]
    scale = min(width / src_w, height / src_h)
    out_w = max(1, int(round(src_w * scale)))
    out_h = max(1, int(round(src_h * scale)))
    interp = cv2.INTER_AREA if scale < 1.0 else cv2.INTER_LINEAR
    resized = cv2.resize(image, (out_w, out_h), interpolation=interp)

    canvas = np.zeros((height, width, 3), dtype=np.uint8)
    top = (height - out_h) // 2
    left = (width - out_w) // 2
    canvas[top : top + out_h, left : left + out_w] = resized
    return canvas


def compose_tile(body: Optional[np.ndarray], caption: str, state: str, tile_size: Tuple[int, int]) -> np.ndarray:
    width, height = tile_size
    body_h = height - CAPTION_PX
    tile = np.zeros((height, width, 3), dtype=np.uint8)
    if body is not None:
        view = body
        if state == DISABLED:
            view = (body.astype(np.uint16) // 3).astype(np.uint8)
        tile[:body_h] = view
    tile[body_h:] = _CAPTION_COLORS.get(state, _CAPTION_COLORS[IDLE])
    cv2.putText(
        tile,
        caption,
        (8, height - 9),
        cv2.FONT_HERSHEY_SIMPLEX,
        0.5,
        (255, 255, 255),
        1,
        cv2.LINE_AA,
    )
    if state == ERROR:
        cv2.rectangle(tile, (0, 0), (width - 1, height - 1), _ERROR_BORDER, 4)
    elif state == DISABLED:
        cv2.putText(
            tile,
            "DISABLED",
            (max(8, width // 2 - 60), max(20, body_h // 2)),
            cv2.FONT_HERSHEY_SIMPLEX,
            0.9,
            (200, 200, 200),
            2,
            cv2.LINE_AA,
        )
    return tile


class HeadlessSurface:
    """In-memory surface: keeps the last tile, never opens a window."""

    def __init__(self, camera_id: str, position: Tuple[int, int], size: Tuple[int, int]) -> None:
        self.camera_id = camera_id
        self.position = position
        self.size = size
        self.last_tile: Optional[np.ndarray] = None
        self.shows = 0
        self.closed = False
        self._lock = threading.Lock()
        self._user_closed = False

    def show(self, tile: np.ndarray) -> None:
        with self._lock:
            self.last_tile = tile
            self.shows += 1

    def close(self) -> None:
        with self._lock:
            self.closed = True

    def request_close(self) -> None:
        """Act as if the user closed the window."""
        with self._lock:
            self._user_closed = True

    def poll(self) -> bool:
        with self._lock:
            if self.closed or not self._user_closed:
                return False
            self._user_closed = False
            self.closed = True
            return True


class OpenCVWindowSurface:
    """A HighGUI window. Only poll() touches HighGUI, from the UI thread."""

    def __init__(self, camera_id: str, position: Tuple[int, int], size: Tuple[int, int]) -> None:
        self.camera_id = camera_id
        self.name = f"stageview - {camera_id}"
        self.position = position
        self.size = size
        self._lock = threading.Lock()
        self._pending: Optional[np.ndarray] = None
        self._close_requested = False
        self._created = False
        self._shown = False

    def show(self, tile: np.ndarray) -> None:
        with self._lock:
            self._pending = tile

    def close(self) -> None:
        with self._lock:
            self._close_requested = True

    def poll(self) -> bool:
        with self._lock:
            pending, self._pending = self._pending, None
            close_requested = self._close_requested
        if close_requested:
            if self._created:
                try:
                    cv2.destroyWindow(self.name)
                except cv2.error:
                    pass
                self._created = False
            return False
        if not self._created:
            cv2.namedWindow(self.name, cv2.WINDOW_AUTOSIZE)
            cv2.moveWindow(self.name, int(self.position[0]), int(self.position[1]))
            self._created = True
        if pending is not None:
            cv2.imshow(self.name, pending)
            self._shown = True
        if self._shown and cv2.getWindowProperty(self.name, cv2.WND_PROP_VISIBLE) < 1:
            self._created = False
            with self._lock:
                self._close_requested = True
            return True
        return False


def highgui_pump() -> None:
    cv2.waitKey(1)


@dataclass
class DisplayRecord:
    camera_id: str
    surface: Any
    slot: int
    state: str = IDLE
    last_frame_wall_s: Optional[float] = None
    last_error: Optional[str] = None
    body: Optional[np.ndarray] = None


class DisplayRegistry:
    """Map camera ids to independent display surfaces.

    Rendering happens on the calling thread under the registry lock; the
    surfaces only store the finished tile until ``pump()`` runs on the UI
    thread. User-close callbacks are invoked from ``pump()`` after the lock
    is released, so they may call back into the scheduler.
    """

    module = "vision.display"

    def __init__(
        self,
        surface_factory: SurfaceFactory = HeadlessSurface,
        logger: Optional[Any] = None,
        tile_size: Tuple[int, int] = (480, 360),
        columns: int = 3,
        gap_px: int = 24,
        origin: Sequence[int] = (40, 40),
        on_user_close: Optional[CloseHandler] = None,
        event_pump: Optional[Callable[[], None]] = None,
    ) -> None:
        if tile_size[1] <= CAPTION_PX:
            raise ValueError(f"tile height must exceed the {CAPTION_PX}px caption band")
        self._surface_factory = surface_factory
        self._logger = logger
        self._tile_size = (int(tile_size[0]), int(tile_size[1]))
        self._columns = int(columns)
        self._gap_px = int(gap_px)
        self._origin = tuple(origin)
        self._on_user_close = on_user_close
        self._event_pump = event_pump
        self._lock = threading.Lock()
        self._records: Dict[str, DisplayRecord] = {}
        self._retired: List[Any] = []

    def set_close_handler(self, handler: Optional[CloseHandler]) -> None:
        self._on_user_close = handler

    def camera_ids(self) -> List[str]:
        with self._lock:
            return list(self._records.keys())

    def record(self, camera_id: str) -> Optional[DisplayRecord]:
        with self._lock:
            return self._records.get(camera_id)

    def states(self) -> Dict[str, str]:
        with self._lock:
            return {camera_id: rec.state for camera_id, rec in self._records.items()}

    def materialize(self, camera_id: str) -> DisplayRecord:
        with self._lock:
            existing = self._records.get(camera_id)
            if existing is not None:
                return existing
            used = {rec.slot for rec in self._records.values()}
            slot = next(i for i in range(len(used) + 1) if i not in used)
            position = grid_position(slot, self._columns, self._tile_size, self._gap_px, self._origin)
            surface = self._surface_factory(camera_id, position, self._tile_size)
            rec = DisplayRecord(camera_id=camera_id, surface=surface, slot=slot)
            self._records[camera_id] = rec
            rec.surface.show(compose_tile(None, f"{camera_id}  waiting", IDLE, self._tile_size))
        self._emit("debug", "surface_materialized", {"camera_id": camera_id, "slot": slot})
        return rec

    def update(self, camera_id: str, frame: Any) -> bool:
        with self._lock:
            rec = self._records.get(camera_id)
            if rec is None:
                return False
            width, height = self._tile_size
            try:
                rec.body = letterbox(frame.data, width, height - CAPTION_PX)
            except (cv2.error, ValueError, TypeError, AttributeError) as exc:
                raise DisplayUpdateError(camera_id, f"cannot render frame: {exc}") from exc
            rec.last_frame_wall_s = getattr(frame, "wall_s", None) or time.time()
            rec.state = LIVE
            rec.last_error = None
            rec.surface.show(self._compose(rec))
            return True

    def mark_error(self, camera_id: str, detail: Optional[str] = None) -> bool:
        with self._lock:
            rec = self._records.get(camera_id)
            if rec is None:
                return False
            rec.state = ERROR
            rec.last_error = detail
            rec.surface.show(self._compose(rec))
            return True

    def mark_disabled(self, camera_id: str) -> bool:
        with self._lock:
            rec = self._records.get(camera_id)
            if rec is None:
                return False
            rec.state = DISABLED
            rec.surface.show(self._compose(rec))
            return True

    def destroy(self, camera_id: str) -> bool:
        with self._lock:
            rec = self._records.pop(camera_id, None)
            if rec is None:
                return False
            rec.surface.close()
            self._retired.append(rec.surface)
            return True

    def pump(self) -> List[str]:
        """Drive surfaces on the UI thread; return ids the user closed."""
        if self._event_pump is not None:
            self._event_pump()
        with self._lock:
            retired, self._retired = self._retired, []
            live = list(self._records.values())
        for surface in retired:
            surface.poll()

        closed: List[str] = []
        for rec in live:
            if not rec.surface.poll():
                continue
            with self._lock:
                if self._records.get(rec.camera_id) is rec:
                    del self._records[rec.camera_id]
                    closed.append(rec.camera_id)
        for camera_id in closed:
            self._emit("info", "surface_closed", {"camera_id": camera_id})
            if self._on_user_close is not None:
                self._on_user_close(camera_id)
        return closed

    def _compose(self, rec: DisplayRecord) -> np.ndarray:
        stamp = wall_label(rec.last_frame_wall_s) if rec.last_frame_wall_s else "--"
        if rec.state == ERROR:
            caption = f"{rec.camera_id}  ERROR  last {stamp}"
        elif rec.state == DISABLED:
            caption = f"{rec.camera_id}  quarantined  last {stamp}"
        else:
            caption = f"{rec.camera_id}  {stamp}"
        return compose_tile(rec.body, caption, rec.state, self._tile_size)

    def _emit(self, level: str, event: str, payload: Dict[str, Any]) -> None:
        if self._logger is not None:
            self._logger.emit(level, self.module, event, payload)


def create_display_registry(config: Dict[str, Any], logger: Optional[Any] = None, headless: bool = False) -> DisplayRegistry:
    windows = bool(get_path(config, "display.enabled", True)) and not headless
    return DisplayRegistry(
        surface_factory=OpenCVWindowSurface if windows else HeadlessSurface,
        logger=logger,
        tile_size=(int(get_path(config, "display.tile_width", 480)), int(get_path(config, "display.tile_height", 360))),
        columns=int(get_path(config, "display.columns", 3)),
        gap_px=int(get_path(config, "display.gap_px", 24)),
        origin=get_path(config, "display.origin", [40, 40]),
        event_pump=highgui_pump if windows else None,
    )
