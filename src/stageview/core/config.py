"""
CONTRACT: inline (source: src/stageview/core/config.md)
ROLE: Load YAML config, validate, and expose dotted-path accessors.

INPUTS:
  - Topic: n/a  Type: n/a
OUTPUTS:
  - Topic: n/a  Type: n/a

CONFIG KEYS:
  - config_path: path to YAML file (optional; defaults apply without one)
  - runtime.enable_validation: enable validation (bool)

PERF / TIMING:
  - load once at startup

FAILURE MODES:
  - invalid value -> raise ConfigError -> log validation_failed

LOG EVENTS:
  - module=core.config, event=validation_failed, payload keys=path, errors

TESTS:
  - tests/test_config_and_backend.py

CONTRACT DETAILS (inline from src/stageview/core/config.md):
# Config contract

- Camera selection and interval are transient: they come from the CLI or
  the YAML file at start and are never written back.
- Validation must reject intervals outside the allowed range and
  non-positive thresholds.
"""

from __future__ import annotations

import copy
from typing import Any, Dict, List, Optional

import yaml

from stageview.core.errors import ConfigError
from stageview.core.logging import LEVELS


BACKENDS = {"opencv", "sim"}
SOURCE_MODES = {"auto", "by-path", "by-id", "index"}


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Load YAML config and apply defaults."""
    data: Dict[str, Any] = {}
    if path:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
        if not isinstance(data, dict):
            raise ConfigError(f"Config root must be a mapping: {path}")
    merged = _merge_dicts(_default_config(), data)
    if bool(get_path(merged, "runtime.enable_validation", True)):
        errors = validate_config(merged)
        if errors:
            joined = "\n".join(f"- {e}" for e in errors)
            raise ConfigError(f"Config validation failed for {path or '<defaults>'}:\n{joined}")
    return merged


def get_path(config: Dict[str, Any], dotted_path: str, default: Any = None) -> Any:
    """Get a nested config value by dotted path."""
    node: Any = config
    for key in dotted_path.split("."):
        if not isinstance(node, dict) or key not in node:
            return default
        node = node[key]
    return node


def _default_config() -> Dict[str, Any]:
    return {
        "runtime": {
            "run_id": "",
            "enable_validation": True,
        },
        "capture": {
            "interval_s": 1.0,
            "min_interval_s": 0.5,
            "max_interval_s": 10.0,
            "quarantine_threshold": 5,
            # 0 disables the bounded timeout around open/capture/close.
            "capture_timeout_s": 0.0,
        },
        "cameras": {
            "backend": "opencv",
            "source_mode": "auto",
            "selected": [],
            "probe_indices": 0,
            "width": 640,
            "height": 480,
            "fourcc": "MJPG",
        },
        "display": {
            "enabled": True,
            "tile_width": 480,
            "tile_height": 360,
            "columns": 3,
            "gap_px": 24,
            "origin": [40, 40],
            "pump_hz": 30,
        },
        "preview": {
            "fps": 15,
        },
        "sim": {
            "cameras": ["sim0", "sim1", "sim2"],
            "width": 320,
            "height": 240,
            "fail_rate": 0.0,
            "seed": 0,
        },
        "bus": {
            "max_queue_depth": 8,
        },
        "logging": {
            "level": "info",
            "file": {
                "enabled": False,
                "path": "logs/stageview.jsonl",
                "min_level": "debug",
                "flush_interval_ms": 200,
                "rotate_mb": 20,
            },
        },
    }


def _merge_dicts(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _merge_dicts(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _as_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def validate_config(config: Dict[str, Any]) -> List[str]:
    """Return a list of validation errors for the merged config."""
    errors: List[str] = []

    min_interval = _as_float(get_path(config, "capture.min_interval_s", 0.5))
    max_interval = _as_float(get_path(config, "capture.max_interval_s", 10.0))
    interval = _as_float(get_path(config, "capture.interval_s"))
    if min_interval is None or min_interval <= 0:
        errors.append("capture.min_interval_s must be a number > 0")
    if max_interval is None or (min_interval is not None and max_interval < min_interval):
        errors.append("capture.max_interval_s must be a number >= capture.min_interval_s")
    if interval is None or interval <= 0:
        errors.append("capture.interval_s must be a number > 0")
    elif min_interval is not None and max_interval is not None and not (min_interval <= interval <= max_interval):
        errors.append(f"capture.interval_s={interval} outside [{min_interval}, {max_interval}]")

    threshold = get_path(config, "capture.quarantine_threshold")
    if not isinstance(threshold, int) or isinstance(threshold, bool) or threshold < 1:
        errors.append("capture.quarantine_threshold must be an integer >= 1")

    timeout = _as_float(get_path(config, "capture.capture_timeout_s", 0.0))
    if timeout is None or timeout < 0:
        errors.append("capture.capture_timeout_s must be a number >= 0")

    backend = str(get_path(config, "cameras.backend", "") or "").lower()
    if backend not in BACKENDS:
        errors.append(f"cameras.backend '{backend}' not in {sorted(BACKENDS)}")
    source_mode = str(get_path(config, "cameras.source_mode", "") or "").lower()
    if source_mode not in SOURCE_MODES:
        errors.append(f"cameras.source_mode '{source_mode}' not in {sorted(SOURCE_MODES)}")
    selected = get_path(config, "cameras.selected", [])
    if not isinstance(selected, list):
        errors.append("cameras.selected must be a list of camera ids")

    for key in ("display.tile_width", "display.tile_height", "cameras.width", "cameras.height"):
        value = get_path(config, key)
        if not isinstance(value, int) or value <= 0:
            errors.append(f"{key} must be a positive integer")
    columns = get_path(config, "display.columns")
    if not isinstance(columns, int) or columns < 1:
        errors.append("display.columns must be an integer >= 1")
    origin = get_path(config, "display.origin")
    if not isinstance(origin, (list, tuple)) or len(origin) != 2:
        errors.append("display.origin must be [x, y]")

    fail_rate = _as_float(get_path(config, "sim.fail_rate", 0.0))
    if fail_rate is None or not (0.0 <= fail_rate <= 1.0):
        errors.append("sim.fail_rate must be within [0, 1]")

    level = get_path(config, "logging.level", "info")
    if not isinstance(level, str) or level not in LEVELS:
        errors.append(f"logging.level '{level}' not in {sorted(LEVELS)}")

    return errors
