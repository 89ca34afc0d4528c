from __future__ import annotations

import pytest

from worldtrack.config import WorldtrackConfig, from_env
from worldtrack.pipeline import TrackingPipeline


def test_defaults_without_overrides() -> None:
    config = from_env({})

    assert config == WorldtrackConfig()
    assert config.tracker.max_tracking_distance == 1.0
    assert config.depth.encoding.far == 2.5


def test_overrides_are_parsed() -> None:
    config = from_env(
        {
            "WORLDTRACK_MAX_TRACKING_DISTANCE": "0.5",
            "WORLDTRACK_HISTORY_SIZE": "4",
            "WORLDTRACK_DEPTH_FAR": "4.0",
            "WORLDTRACK_DEPTH_INVERTED": "false",
            "WORLDTRACK_NATIVE_FLIP_Y": "no",
            "WORLDTRACK_DECODE_WORKERS": "2",
            "UNRELATED": "x",
        }
    )

    assert config.tracker.max_tracking_distance == 0.5
    assert config.tracker.history_size == 4
    assert config.depth.encoding.far == 4.0
    assert config.depth.encoding.inverted is False
    assert config.depth.native.flip_y is False
    assert config.decode_workers == 2


def test_blank_values_are_ignored() -> None:
    assert from_env({"WORLDTRACK_MIN_CONFIDENCE": "  "}) == WorldtrackConfig()


@pytest.mark.parametrize(
    ("key", "raw"),
    [
        ("WORLDTRACK_HISTORY_SIZE", "ten"),
        ("WORLDTRACK_DEPTH_INVERTED", "maybe"),
        ("WORLDTRACK_EVICTION_GRACE_MS", "soon"),
    ],
)
def test_invalid_values_name_the_variable(key: str, raw: str) -> None:
    with pytest.raises(ValueError, match=key):
        from_env({key: raw})


def test_encoding_override_reaches_the_depth_processor() -> None:
    config = from_env({"WORLDTRACK_DEPTH_NEAR": "0.5", "WORLDTRACK_DEPTH_FAR": "5.0"})

    pipeline = TrackingPipeline(config)

    assert pipeline.depth_processor.config.occlusion.encoding.far == 5.0
    assert pipeline.depth_processor.decode_depth_value(1.0) == pytest.approx(0.5)


def test_history_size_reaches_the_tracker() -> None:
    pipeline = TrackingPipeline(from_env({"WORLDTRACK_HISTORY_SIZE": "3"}))
    assert pipeline.image_tracker.config.history_size == 3
