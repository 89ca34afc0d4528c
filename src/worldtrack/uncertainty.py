from __future__ import annotations

"""Scalar position uncertainty (meters) and its conversion into fusion weights."""

import math

import numpy as np

DEFAULT_DEPTH_UNCERTAINTY_M = 0.1
MIN_DEPTH_UNCERTAINTY_M = 0.02
DEFAULT_POSE_UNCERTAINTY_M = 0.01
DEFAULT_INTRINSICS_UNCERTAINTY_M = 0.005


def estimate_depth_uncertainty(points: np.ndarray) -> float:
    """Half the standard deviation of point depths, floored at 2 cm.

    Fewer than three points carry no usable spread and get the 10 cm default.
    """
    arr = np.asarray(points, dtype=np.float64)
    if arr.ndim != 2 or arr.shape[0] < 3:
        return DEFAULT_DEPTH_UNCERTAINTY_M
    std = float(np.std(arr[:, 2]))
    return max(0.5 * std, MIN_DEPTH_UNCERTAINTY_M)


def combine_uncertainties(
    depth_uncertainty: float,
    pose_uncertainty: float = DEFAULT_POSE_UNCERTAINTY_M,
    intrinsics_uncertainty: float = DEFAULT_INTRINSICS_UNCERTAINTY_M,
) -> float:
    return math.sqrt(
        depth_uncertainty * depth_uncertainty
        + pose_uncertainty * pose_uncertainty
        + intrinsics_uncertainty * intrinsics_uncertainty
    )


def combine_sam3_confidence(detection_confidence: float, depth_uncertainty: float) -> float:
    """Scale depth uncertainty by ``2.0 - 1.5 * confidence`` (x2.0 at 0, x0.5 at 1)."""
    return depth_uncertainty * (2.0 - 1.5 * detection_confidence)


def uncertainty_to_weight(uncertainty: float, epsilon: float = 0.001) -> float:
    return 1.0 / (uncertainty + epsilon)


def propagate_uncertainty(local_uncertainty: float, rotation_uncertainty: float = 0.01) -> float:
    """Add the contribution of head-rotation error to a local position uncertainty."""
    rotation_term = rotation_uncertainty * 0.1
    return math.sqrt(local_uncertainty * local_uncertainty + rotation_term * rotation_term)
