from __future__ import annotations

import math

import numpy as np
import pytest

from worldtrack.uncertainty import (
    combine_sam3_confidence,
    combine_uncertainties,
    estimate_depth_uncertainty,
    propagate_uncertainty,
    uncertainty_to_weight,
)


def test_too_few_points_use_default() -> None:
    assert estimate_depth_uncertainty(np.zeros((2, 3))) == pytest.approx(0.1)
    assert estimate_depth_uncertainty(np.empty((0, 3))) == pytest.approx(0.1)


def test_flat_cloud_is_floored_at_two_centimeters() -> None:
    points = np.column_stack([np.arange(10.0), np.zeros(10), np.full(10, 1.0)])
    assert estimate_depth_uncertainty(points) == pytest.approx(0.02)


def test_spread_is_half_the_depth_std() -> None:
    points = np.column_stack([np.zeros(4), np.zeros(4), [1.0, 1.0, 1.4, 1.4]])
    assert estimate_depth_uncertainty(points) == pytest.approx(0.1)


def test_combined_uncertainty_is_root_sum_square() -> None:
    assert combine_uncertainties(0.03, 0.04, 0.0) == pytest.approx(0.05)
    assert combine_uncertainties(0.1) > 0.1


@pytest.mark.parametrize(
    ("confidence", "factor"),
    [(0.0, 2.0), (0.5, 1.25), (1.0, 0.5)],
)
def test_detection_confidence_scales_uncertainty(confidence: float, factor: float) -> None:
    assert combine_sam3_confidence(confidence, 0.1) == pytest.approx(0.1 * factor)


def test_weight_is_monotone_and_finite_at_zero() -> None:
    assert uncertainty_to_weight(0.0) == pytest.approx(1000.0)
    assert uncertainty_to_weight(0.01) > uncertainty_to_weight(0.1)
    assert math.isfinite(uncertainty_to_weight(0.0, epsilon=1e-6))


def test_rotation_error_adds_in_quadrature() -> None:
    assert propagate_uncertainty(0.05, 0.0) == pytest.approx(0.05)
    assert propagate_uncertainty(0.0, 0.5) == pytest.approx(0.05)
