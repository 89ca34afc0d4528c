from __future__ import annotations

"""Depth-map quality scoring (holes, local noise, discontinuities)."""

from dataclasses import dataclass
from typing import Optional

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

from .point_cloud import DepthEncoding


@dataclass(frozen=True)
class DepthQualityConfig:
    hole_ratio_limit: float = 0.1
    noise_flag_m: float = 0.05
    noise_limit_m: float = 0.1
    discontinuity_threshold_m: float = 0.2
    discontinuity_flag_ratio: float = 0.15
    noise_kernel_radius: int = 3
    noise_stride: int = 5
    discontinuity_stride: int = 3
    min_score: float = 0.5
    mask_threshold: float = 128


@dataclass(frozen=True)
class DepthQualityReport:
    score: float
    hole_ratio: float
    noise_level: float
    discontinuity_ratio: float
    has_holes: bool
    has_noise: bool
    has_discontinuities: bool


def _mask_lookup(
    mask: Optional[np.ndarray],
    rows: np.ndarray,
    cols: np.ndarray,
    shape: tuple[int, int],
    threshold: float,
) -> np.ndarray:
    """Object membership of depth-map sample locations, scaled into mask resolution."""
    if mask is None:
        return np.ones((len(rows), len(cols)), dtype=bool)
    mask_arr = np.asarray(mask)
    height, width = shape
    mask_rows = np.floor(rows / height * mask_arr.shape[0]).astype(np.int64)
    mask_cols = np.floor(cols / width * mask_arr.shape[1]).astype(np.int64)
    return mask_arr[np.ix_(mask_rows, mask_cols)] >= threshold


def assess_depth_quality(
    depth_map: Optional[np.ndarray],
    mask: Optional[np.ndarray] = None,
    *,
    encoding: DepthEncoding | None = None,
    config: DepthQualityConfig | None = None,
) -> DepthQualityReport:
    """Score a normalized depth map in [0, 1].

    Holes are counted over the whole map. Noise and discontinuities are sampled on
    a sparse grid, restricted to the mask when one is given.
    """
    cfg = config or DepthQualityConfig()
    if depth_map is None:
        return DepthQualityReport(
            score=0.0,
            hole_ratio=1.0,
            noise_level=float("inf"),
            discontinuity_ratio=1.0,
            has_holes=True,
            has_noise=True,
            has_discontinuities=True,
        )

    encoding = encoding or DepthEncoding()
    depth = encoding.decode(np.asarray(depth_map, dtype=np.float64))
    valid = np.isfinite(depth) & (depth > 0.0) & (depth <= encoding.far)
    depth = np.where(valid, depth, np.nan)

    hole_ratio = 1.0 - float(np.count_nonzero(valid)) / float(depth.size) if depth.size else 1.0

    noise = _noise_level(depth, mask, cfg)
    discontinuity_ratio = _discontinuity_ratio(depth, mask, cfg)

    score = 1.0
    score -= hole_ratio * 0.4
    score -= min(noise / 0.1, 0.3)
    score -= discontinuity_ratio * 0.3
    score = max(0.0, min(1.0, score))

    return DepthQualityReport(
        score=score,
        hole_ratio=hole_ratio,
        noise_level=noise,
        discontinuity_ratio=discontinuity_ratio,
        has_holes=hole_ratio > cfg.hole_ratio_limit,
        has_noise=noise > cfg.noise_flag_m,
        has_discontinuities=discontinuity_ratio > cfg.discontinuity_flag_ratio,
    )


def _noise_level(depth: np.ndarray, mask: Optional[np.ndarray], cfg: DepthQualityConfig) -> float:
    k = cfg.noise_kernel_radius
    height, width = depth.shape
    rows = np.arange(k, height - k, cfg.noise_stride)
    cols = np.arange(k, width - k, cfg.noise_stride)
    if rows.size == 0 or cols.size == 0:
        return 0.0

    windows = sliding_window_view(depth, (2 * k + 1, 2 * k + 1))[np.ix_(rows - k, cols - k)]
    centers = depth[np.ix_(rows, cols)]
    usable = np.isfinite(centers) & _mask_lookup(mask, rows, cols, depth.shape, cfg.mask_threshold)
    if not np.any(usable):
        return 0.0

    windows = windows[usable]
    diffs = windows - centers[usable][:, None, None]
    finite = np.isfinite(diffs)
    squared = np.where(finite, diffs * diffs, 0.0).sum(axis=(1, 2))
    counts = finite.sum(axis=(1, 2))
    local_std = np.sqrt(squared / np.maximum(counts, 1))
    return float(np.mean(local_std[counts > 0])) if np.any(counts > 0) else 0.0


def _discontinuity_ratio(depth: np.ndarray, mask: Optional[np.ndarray], cfg: DepthQualityConfig) -> float:
    height, width = depth.shape
    rows = np.arange(1, height - 1, cfg.discontinuity_stride)
    cols = np.arange(1, width - 1, cfg.discontinuity_stride)
    if rows.size == 0 or cols.size == 0:
        return 0.0

    centers = depth[np.ix_(rows, cols)]
    usable = np.isfinite(centers) & _mask_lookup(mask, rows, cols, depth.shape, cfg.mask_threshold)

    flagged = 0
    compared = 0
    for d_row, d_col in ((0, -1), (0, 1), (-1, 0), (1, 0)):
        neighbor = depth[np.ix_(rows + d_row, cols + d_col)]
        pair = usable & np.isfinite(neighbor)
        compared += int(np.count_nonzero(pair))
        flagged += int(np.count_nonzero(pair & (np.abs(centers - neighbor) > cfg.discontinuity_threshold_m)))

    return flagged / compared if compared else 0.0


def is_depth_quality_sufficient(report: DepthQualityReport, config: DepthQualityConfig | None = None) -> bool:
    cfg = config or DepthQualityConfig()
    return report.score > cfg.min_score and not report.has_holes and report.noise_level < cfg.noise_limit_m
