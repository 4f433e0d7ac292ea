#!/usr/bin/env python3
"""List cameras and validate a single exclusive capture from each.

Prints every camera id the configured backend reports, then opens each one,
grabs one frame and releases it, the same open/capture/close sequence the
periodic scheduler performs on every tick.

Run:
  python3 scripts/list_cameras.py [--config configs/stageview.yaml] [--backend sim]
"""

from __future__ import annotations

import argparse

from stageview.adapters.video_backend import camera_session, create_backend
from stageview.core.config import load_config
from stageview.core.errors import CameraError
from stageview.platform.hardware_probe import device_label


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--config", default=None)
    parser.add_argument("--backend", choices=["opencv", "sim"], default=None)
    args = parser.parse_args()

    config = load_config(args.config)
    if args.backend:
        config["cameras"]["backend"] = args.backend
    backend = create_backend(config)

    cameras = backend.list_cameras()
    if not cameras:
        print("No cameras detected")
        return 1

    print(f"{len(cameras)} camera(s) detected")
    failures = 0
    for camera_id in cameras:
        try:
            with camera_session(backend, camera_id) as handle:
                frame = backend.capture_frame(handle)
        except CameraError as exc:
            failures += 1
            print(f"  FAIL {camera_id}: {exc.reason} ({exc.detail})")
            continue
        label = device_label(camera_id) if config["cameras"]["backend"] == "opencv" else camera_id
        print(f"  OK   {camera_id} [{label}]: {frame.width}x{frame.height} {frame.pixel_format}")
    return 1 if failures == len(cameras) else 0


if __name__ == "__main__":
    raise SystemExit(main())
