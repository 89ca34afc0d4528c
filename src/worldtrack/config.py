from __future__ import annotations

"""Aggregated configuration with optional ``WORLDTRACK_*`` environment overrides."""

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Mapping, Optional

from dotenv import load_dotenv

from .depth_processor import DepthProcessorConfig
from .tracker import TrackerConfig

logger = logging.getLogger("worldtrack.config")

ENV_PREFIX = "WORLDTRACK_"


@dataclass(frozen=True)
class WorldtrackConfig:
    tracker: TrackerConfig = field(default_factory=TrackerConfig)
    depth: DepthProcessorConfig = field(default_factory=DepthProcessorConfig)
    decode_workers: int = 4


def _parse_bool(raw: str) -> bool:
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"not a boolean: {raw!r}")


# env suffix -> (field, parser)
_TRACKER_FIELDS: dict[str, tuple[str, Callable[[str], object]]] = {
    "MAX_TRACKING_DISTANCE": ("max_tracking_distance", float),
    "CONFIDENCE_DECAY_RATE": ("confidence_decay_rate", float),
    "MIN_CONFIDENCE": ("min_confidence", float),
    "MAX_CONFIDENCE": ("max_confidence", float),
    "POSITION_SMOOTHING": ("position_smoothing", float),
    "TRAJECTORY_BLEND": ("trajectory_blend", float),
    "TRAJECTORY_SMOOTHING": ("trajectory_smoothing", float),
    "HISTORY_SIZE": ("history_size", int),
    "EVICTION_GRACE_MS": ("eviction_grace_ms", float),
}
_ENCODING_FIELDS: dict[str, tuple[str, Callable[[str], object]]] = {
    "DEPTH_NEAR": ("near", float),
    "DEPTH_FAR": ("far", float),
    "DEPTH_INVERTED": ("inverted", _parse_bool),
}
_NATIVE_FIELDS: dict[str, tuple[str, Callable[[str], object]]] = {
    "NATIVE_FLIP_Y": ("flip_y", _parse_bool),
    "NATIVE_FLIP_Z": ("flip_z", _parse_bool),
}


def _collect(
    env: Mapping[str, str],
    fields: Mapping[str, tuple[str, Callable[[str], object]]],
) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for suffix, (name, parse) in fields.items():
        key = ENV_PREFIX + suffix
        raw = env.get(key)
        if raw is None or raw.strip() == "":
            continue
        try:
            overrides[name] = parse(raw)
        except ValueError as exc:
            raise ValueError(f"Invalid value for {key}: {raw!r}") from exc
    return overrides


def from_env(
    env: Optional[Mapping[str, str]] = None,
    *,
    dotenv_path: Optional[Path] = None,
    base: Optional[WorldtrackConfig] = None,
) -> WorldtrackConfig:
    """Apply ``WORLDTRACK_*`` overrides to ``base`` (defaults when omitted).

    Without an explicit ``env`` the process environment is used, after loading a
    ``.env`` file if one is found.
    """
    if env is None:
        load_dotenv(dotenv_path)
        env = os.environ

    config = base or WorldtrackConfig()
    tracker = replace(config.tracker, **_collect(env, _TRACKER_FIELDS))
    encoding = replace(config.depth.encoding, **_collect(env, _ENCODING_FIELDS))
    native = replace(config.depth.native, **_collect(env, _NATIVE_FIELDS))
    depth = replace(config.depth, encoding=encoding, native=native)

    workers = _collect(env, {"DECODE_WORKERS": ("decode_workers", int)})
    config = replace(config, tracker=tracker, depth=depth, **workers)
    logger.debug(f"Configuration: {config}")
    return config
