from __future__ import annotations

"""Mask/depth tests that flag truncated or partially hidden objects."""

from dataclasses import dataclass, field
from typing import Optional

import cv2
import numpy as np

from .point_cloud import DepthEncoding

_FAR_SENTINEL = np.float32(1e6)


@dataclass(frozen=True)
class OcclusionConfig:
    min_region_area: int = 25
    border_thickness: int = 5
    z_threshold_m: float = 0.3
    min_hole_area: int = 100
    edge_iterations: int = 2
    min_filter_size: int = 5
    min_occluded_edge_pixels: int = 10
    mask_threshold: float = 128
    encoding: DepthEncoding = field(default_factory=DepthEncoding)


@dataclass(frozen=True)
class OcclusionReport:
    occluded: bool
    reasons: tuple[str, ...] = ()


_CROSS_KERNEL = cv2.getStructuringElement(cv2.MORPH_CROSS, (3, 3))


def _binary(mask: np.ndarray, threshold: float) -> np.ndarray:
    arr = np.asarray(mask)
    if arr.ndim != 2:
        raise ValueError("mask must be 2-D")
    return (arr > threshold).astype(np.uint8)


def remove_small_regions(mask: np.ndarray, min_area: int = 25, threshold: float = 128) -> np.ndarray:
    """Drop 4-connected mask components smaller than ``min_area``; returns a 0/255 mask."""
    binary = _binary(mask, threshold)
    count, labels, stats, _ = cv2.connectedComponentsWithStats(binary, connectivity=4)
    keep = np.zeros(count, dtype=bool)
    keep[1:] = stats[1:, cv2.CC_STAT_AREA] >= min_area
    return np.where(keep[labels], 255, 0).astype(np.uint8)


def is_near_image_border(mask: np.ndarray, border_thickness: int = 5, threshold: float = 128) -> bool:
    binary = _binary(mask, threshold)
    t = max(0, int(border_thickness))
    if t == 0:
        return False
    return bool(
        binary[:t, :].any() or binary[-t:, :].any() or binary[:, :t].any() or binary[:, -t:].any()
    )


def has_internal_occlusion(mask: np.ndarray, min_hole_area: int = 100, threshold: float = 128) -> bool:
    """True for a split mask or a hole of at least ``min_hole_area`` pixels.

    Holes are background components that do not touch the image border.
    """
    binary = _binary(mask, threshold)
    component_count, _ = cv2.connectedComponents(binary, connectivity=4)
    if component_count - 1 > 1:
        return True

    background = (1 - binary).astype(np.uint8)
    count, labels, stats, _ = cv2.connectedComponentsWithStats(background, connectivity=4)
    if count <= 1:
        return False

    touching = np.zeros(count, dtype=bool)
    for edge in (labels[0, :], labels[-1, :], labels[:, 0], labels[:, -1]):
        touching[np.unique(edge)] = True

    for label in range(1, count):
        if not touching[label] and stats[label, cv2.CC_STAT_AREA] >= min_hole_area:
            return True
    return False


def is_occluded_by_others(
    mask: np.ndarray,
    depth_map: np.ndarray,
    config: OcclusionConfig | None = None,
) -> bool:
    """Detect a closer surface hugging the mask boundary.

    Compares depth on the inner edge band of the mask with the nearest depth on the
    outer band. An object sitting in front of the masked one shows up as inner-edge
    pixels that lie more than ``z_threshold_m`` behind their outside neighbourhood.
    """
    cfg = config or OcclusionConfig()
    binary = _binary(mask, cfg.mask_threshold)
    height, width = binary.shape

    depth = np.asarray(depth_map, dtype=np.float32)
    if depth.shape != binary.shape:
        depth = cv2.resize(depth, (width, height), interpolation=cv2.INTER_NEAREST)
    z = np.asarray(cfg.encoding.decode(depth), dtype=np.float32)

    iterations = max(1, int(cfg.edge_iterations))
    eroded = cv2.erode(binary, _CROSS_KERNEL, iterations=iterations, borderType=cv2.BORDER_CONSTANT, borderValue=0)
    dilated = cv2.dilate(binary, _CROSS_KERNEL, iterations=iterations, borderType=cv2.BORDER_CONSTANT, borderValue=0)
    internal_edge = (binary == 1) & (eroded == 0)
    external_edge = (dilated == 1) & (binary == 0)
    if not internal_edge.any() or not external_edge.any():
        return False

    external_z = np.where(external_edge & np.isfinite(z), z, _FAR_SENTINEL).astype(np.float32)
    size = max(1, int(cfg.min_filter_size))
    nearest_outside = cv2.erode(
        external_z,
        np.ones((size, size), dtype=np.uint8),
        borderType=cv2.BORDER_CONSTANT,
        borderValue=float(_FAR_SENTINEL),
    )

    reachable = nearest_outside < _FAR_SENTINEL
    candidates = internal_edge & reachable & np.isfinite(z)
    occluded = candidates & ((z - nearest_outside) > cfg.z_threshold_m)
    return int(np.count_nonzero(occluded)) > cfg.min_occluded_edge_pixels


def check_occlusion(
    mask: np.ndarray,
    depth_map: Optional[np.ndarray] = None,
    config: OcclusionConfig | None = None,
) -> OcclusionReport:
    """Run every occlusion test on a cleaned mask and report which ones fired."""
    cfg = config or OcclusionConfig()
    cleaned = remove_small_regions(mask, cfg.min_region_area, cfg.mask_threshold)

    reasons = []
    if is_near_image_border(cleaned, cfg.border_thickness, cfg.mask_threshold):
        reasons.append("border")
    if has_internal_occlusion(cleaned, cfg.min_hole_area, cfg.mask_threshold):
        reasons.append("internal")
    if depth_map is not None and is_occluded_by_others(cleaned, depth_map, cfg):
        reasons.append("foreground")

    return OcclusionReport(occluded=bool(reasons), reasons=tuple(reasons))
