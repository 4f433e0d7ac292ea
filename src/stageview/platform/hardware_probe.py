"""V4L2 discovery for stage cameras.

Camera ids are device paths. ``/dev/v4l/by-path`` names survive re-plugging
into the same USB port, which keeps a rig's camera order stable between
sessions, so ``auto`` lists those first and falls back to ``by-id`` and raw
``/dev/videoN`` nodes. Paths resolving to the same node are listed once.
"""

from __future__ import annotations

import glob
import os
import re
from pathlib import Path
from typing import Dict, List, Optional, Tuple

SYSFS_V4L = "/sys/class/video4linux"

# V4L2_CAP_VIDEO_CAPTURE, V4L2_CAP_VIDEO_CAPTURE_MPLANE
_CAPTURE_CAPS = 0x00000001 | 0x00001000

_MODE_PATTERNS: Dict[str, Tuple[str, ...]] = {
    "by-path": ("/dev/v4l/by-path/*",),
    "by-id": ("/dev/v4l/by-id/*",),
    "index": ("/dev/video*",),
    "auto": ("/dev/v4l/by-path/*", "/dev/v4l/by-id/*", "/dev/video*"),
}

_NODE_RE = re.compile(r"^/dev/video(\d+)$")


def video_index_for_source(path: str) -> Optional[int]:
    match = re.search(r"/dev/video(\d+)$", path)
    return int(match.group(1)) if match else None


def _sysfs_attr(index: int, name: str) -> Optional[str]:
    attr = Path(SYSFS_V4L) / f"video{index}" / name
    try:
        return attr.read_text(encoding="utf-8", errors="ignore").strip()
    except OSError:
        return None


def is_capture_node(path: str) -> Optional[bool]:
    """True/False from sysfs capabilities, None when it cannot be determined."""
    index = video_index_for_source(path)
    if index is None:
        return None
    raw = _sysfs_attr(index, "capabilities")
    if raw is None:
        return None
    try:
        return bool(int(raw, 0) & _CAPTURE_CAPS)
    except ValueError:
        return None


def device_label(source: str) -> str:
    """Human-readable camera name from sysfs, falling back to the id itself."""
    index = int(source) if source.isdigit() else video_index_for_source(os.path.realpath(source))
    if index is None:
        return source
    return _sysfs_attr(index, "name") or source


def collect_camera_sources(source_mode: str = "auto") -> List[str]:
    mode = str(source_mode or "auto").strip().lower()
    patterns = _MODE_PATTERNS.get(mode)
    if patterns is None:
        raise ValueError(f"Unsupported camera source mode: {source_mode}")

    found: List[str] = []
    seen = set()
    for pattern in patterns:
        for path in sorted(glob.glob(pattern)):
            if pattern == "/dev/video*" and not _NODE_RE.match(path):
                continue
            node = os.path.realpath(path) or path
            if node in seen:
                continue
            # UVC exposes a metadata node next to each capture node.
            if is_capture_node(node) is False:
                continue
            seen.add(node)
            found.append(path)
    return found


def candidate_sources(source: str) -> List[object]:
    """Open targets to try for one camera id, most specific first."""
    if source.isdigit():
        return [int(source)]
    resolved = os.path.realpath(source)
    ordered: List[object] = []
    if resolved != source and resolved.startswith("/dev/video"):
        ordered.append(resolved)
    ordered.append(source)
    index = video_index_for_source(resolved)
    if index is not None:
        ordered.append(index)
    return list(dict.fromkeys(ordered))


def source_to_open_target(source: object) -> object:
    if not isinstance(source, str):
        return source
    index = video_index_for_source(source)
    return source if index is None else index


def source_exists(source: str) -> bool:
    """Whether the device behind a camera id is present at all."""
    if source.isdigit():
        # Without sysfs (non-Linux) numeric ids cannot be checked.
        if not os.path.isdir(SYSFS_V4L):
            return True
        return os.path.exists(f"/dev/video{int(source)}")
    return os.path.exists(source)
