"""
CONTRACT: docs/contract_index.md
ROLE: Command-line control surface for periodic stage-view capture.

INPUTS:
  - CLI arguments and optional YAML config
OUTPUTS:
  - Topic: log.events  Type: LogEvent

CONFIG KEYS:
  - capture.interval_s / capture.min_interval_s / capture.max_interval_s
  - cameras.selected: default camera selection
  - display.pump_hz: UI loop rate

PERF / TIMING:
  - display pumping and status reporting run on the main thread

FAILURE MODES:
  - no cameras -> log no_cameras -> exit 1
  - interval outside allowed range -> argparse error

LOG EVENTS:
  - module=main.run, event=status, payload keys=text
  - module=main.run, event=shutdown, payload keys=reason
  - module=main.run, event=no_cameras, payload keys=backend

TESTS:
  - tests/test_capture_scheduler.py drives the same wiring with the sim backend
"""

from __future__ import annotations

import argparse
import json
import sys
import threading
import time
from typing import Any, Dict, List, Optional

from stageview.adapters.video_backend import CameraBackend, create_backend
from stageview.capture.scheduler import CaptureScheduler
from stageview.core.bus import Bus
from stageview.core.clock import now_ns
from stageview.core.config import get_path, load_config
from stageview.core.log_sink import start_log_sink
from stageview.core.logging import LogEmitter
from stageview.vision.display import DisplayRegistry, create_display_registry
from stageview.vision.preview import LivePreview


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Periodic multi-camera stage view")
    parser.add_argument("--config", default=None, help="Path to YAML config")
    parser.add_argument("--backend", choices=["opencv", "sim"], default=None, help="Camera backend override")
    parser.add_argument("--list", action="store_true", help="List available cameras and exit")
    parser.add_argument("--cameras", nargs="+", default=None, help="Camera ids to capture, in rotation order")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between ticks")
    parser.add_argument("--duration", type=float, default=0.0, help="Stop after N seconds (0 = run until stopped)")
    parser.add_argument("--headless", action="store_true", help="Do not open windows")
    parser.add_argument("--preview", default=None, metavar="ID", help="Live preview of one camera instead")
    return parser


def _select_cameras(args: argparse.Namespace, config: Dict[str, Any], backend: CameraBackend) -> List[str]:
    if args.cameras:
        return list(args.cameras)
    selected = get_path(config, "cameras.selected", []) or []
    if selected:
        return [str(cam) for cam in selected]
    return backend.list_cameras()


def _loop(
    display: DisplayRegistry,
    logger: LogEmitter,
    keep_going,
    pump_hz: float,
    duration_s: float,
    status_text=None,
) -> str:
    period = 1.0 / pump_hz if pump_hz > 0 else 1.0 / 30.0
    deadline = time.monotonic() + duration_s if duration_s > 0 else None
    last_text: Optional[str] = None
    while True:
        display.pump()
        if status_text is not None:
            text = status_text()
            if text != last_text:
                logger.emit("info", "main.run", "status", {"text": text})
                last_text = text
        if not keep_going():
            return "no_camera_active"
        if deadline is not None and time.monotonic() >= deadline:
            return "duration_elapsed"
        time.sleep(period)


def _run_preview(
    args: argparse.Namespace,
    config: Dict[str, Any],
    backend: CameraBackend,
    display: DisplayRegistry,
    logger: LogEmitter,
    bus: Bus,
) -> int:
    preview = LivePreview(backend, args.preview, display, logger, fps=float(get_path(config, "preview.fps", 15)), bus=bus)
    closed = threading.Event()
    display.set_close_handler(lambda _camera_id: closed.set())
    preview.start()
    try:
        reason = _loop(
            display,
            logger,
            lambda: preview.running and not closed.is_set(),
            float(get_path(config, "display.pump_hz", 30)),
            args.duration,
        )
    except KeyboardInterrupt:
        reason = "interrupted"
    preview.stop()
    display.pump()
    logger.emit("info", "main.run", "shutdown", {"reason": reason})
    return 1 if preview.error else 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    overrides: Dict[str, Any] = {}
    config = load_config(args.config)
    if args.backend:
        config["cameras"]["backend"] = args.backend
        overrides["backend"] = args.backend

    bus = Bus(max_queue_depth=int(get_path(config, "bus.max_queue_depth", 8)))
    logger = LogEmitter(
        bus,
        min_level=str(get_path(config, "logging.level", "info")),
        run_id=str(get_path(config, "runtime.run_id", "") or ""),
    )
    stop_event = threading.Event()
    drop_throttle: Dict[str, float] = {}

    def _on_drop(topic: str, depth: int) -> None:
        now_s = time.time()
        if now_s - drop_throttle.get(topic, 0.0) < 0.25:
            return
        drop_throttle[topic] = now_s
        if topic == "log.events":
            print(json.dumps({"t_ns": now_ns(), "level": "warning", "module": "core.bus", "event": "queue_full", "topic": topic, "depth": depth}), file=sys.stderr)
            return
        logger.emit("debug", "core.bus", "queue_full", {"topic": topic, "depth": depth})

    bus.set_drop_handler(_on_drop)
    sink_thread = start_log_sink(bus, config, logger, stop_event)

    try:
        backend = create_backend(config, logger)
        if args.list:
            for camera_id in backend.list_cameras():
                print(camera_id)
            return 0

        display = create_display_registry(config, logger, headless=args.headless)
        if args.preview:
            return _run_preview(args, config, backend, display, logger, bus)

        min_interval = float(get_path(config, "capture.min_interval_s", 0.5))
        max_interval = float(get_path(config, "capture.max_interval_s", 10.0))
        interval = args.interval if args.interval is not None else float(get_path(config, "capture.interval_s", 1.0))
        if not (min_interval <= interval <= max_interval):
            parser.error(f"--interval must be within [{min_interval}, {max_interval}]")

        cameras = _select_cameras(args, config, backend)
        if not cameras:
            logger.emit("error", "main.run", "no_cameras", {"backend": get_path(config, "cameras.backend")})
            return 1

        scheduler = CaptureScheduler(
            backend,
            display,
            logger,
            bus=bus,
            quarantine_threshold=int(get_path(config, "capture.quarantine_threshold", 5)),
            capture_timeout_s=float(get_path(config, "capture.capture_timeout_s", 0.0)),
        )
        display.set_close_handler(scheduler.remove_camera)
        logger.emit("info", "main.run", "starting", {"cameras": cameras, "interval_s": interval, **overrides})
        scheduler.start(cameras, interval)
        try:
            reason = _loop(
                display,
                logger,
                lambda: scheduler.running,
                float(get_path(config, "display.pump_hz", 30)),
                args.duration,
                status_text=scheduler.status_text,
            )
        except KeyboardInterrupt:
            reason = "interrupted"
        scheduler.stop(reason=reason)
        display.pump()
        logger.emit("info", "main.run", "shutdown", {"reason": reason})
        return 0
    finally:
        stop_event.set()
        if sink_thread is not None:
            sink_thread.join(1.0)


if __name__ == "__main__":
    raise SystemExit(main())
