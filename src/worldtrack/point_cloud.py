from __future__ import annotations

"""Depth decoding, masked depth unprojection and point-cloud clean-up."""

from dataclasses import dataclass
from typing import Union

import numpy as np

from .model import CameraIntrinsics

ArrayOrFloat = Union[float, np.ndarray]

MIN_VALID_DEPTH_M = 0.1


@dataclass(frozen=True)
class DepthEncoding:
    """Linear mapping between normalized depth-map values and meters.

    With ``inverted=True`` a value of 1.0 (255) is the near plane.
    """

    near: float = 0.25
    far: float = 2.5
    inverted: bool = True

    def __post_init__(self) -> None:
        if not (0.0 <= self.near < self.far):
            raise ValueError("DepthEncoding requires 0 <= near < far")

    def decode(self, normalized: ArrayOrFloat) -> ArrayOrFloat:
        span = self.far - self.near
        if self.inverted:
            return self.near + (1.0 - normalized) * span
        return self.near + normalized * span

    def encode(self, depth_m: ArrayOrFloat) -> ArrayOrFloat:
        span = self.far - self.near
        normalized = (np.asarray(depth_m, dtype=np.float64) - self.near) / span
        if self.inverted:
            normalized = 1.0 - normalized
        normalized = np.clip(normalized, 0.0, 1.0)
        if np.ndim(normalized) == 0:
            return float(normalized)
        return normalized


def filter_valid_points(
    points: np.ndarray,
    min_depth: float = MIN_VALID_DEPTH_M,
    max_depth: float = 2.5,
) -> np.ndarray:
    """Keep finite points whose camera-space z lies in ``[min_depth, max_depth]``."""
    arr = np.asarray(points, dtype=np.float64)
    if arr.size == 0:
        return np.empty((0, 3), dtype=np.float64)
    if arr.ndim != 2 or arr.shape[1] != 3:
        raise ValueError("point cloud must be Nx3")
    keep = np.all(np.isfinite(arr), axis=1) & (arr[:, 2] >= min_depth) & (arr[:, 2] <= max_depth)
    return arr[keep]


def construct_point_cloud_from_mask(
    mask: np.ndarray,
    depth_map: np.ndarray,
    intrinsics: CameraIntrinsics,
    image_width: int,
    image_height: int,
    *,
    encoding: DepthEncoding | None = None,
    mask_threshold: float = 128,
    sample_step: int = 1,
    min_depth: float = MIN_VALID_DEPTH_M,
) -> np.ndarray:
    """Unproject masked depth pixels into camera-space points (Nx3).

    ``mask`` is a 2-D intensity image; pixels at or above ``mask_threshold`` belong to
    the object. ``depth_map`` holds normalized [0, 1] values and may have a different
    resolution than the mask; mask pixels are mapped through image coordinates.
    """
    encoding = encoding or DepthEncoding()
    mask_arr = np.asarray(mask)
    depth_arr = np.asarray(depth_map, dtype=np.float64)
    if mask_arr.ndim != 2 or depth_arr.ndim != 2:
        raise ValueError("mask and depth map must be 2-D")

    step = max(1, int(sample_step))
    mask_h, mask_w = mask_arr.shape
    depth_h, depth_w = depth_arr.shape

    rows = np.arange(0, mask_h, step)
    cols = np.arange(0, mask_w, step)
    grid_v, grid_u = np.meshgrid(rows, cols, indexing="ij")
    selected = mask_arr[grid_v, grid_u] >= mask_threshold
    if not np.any(selected):
        return np.empty((0, 3), dtype=np.float64)

    u = grid_u[selected].astype(np.float64) * (image_width / mask_w)
    v = grid_v[selected].astype(np.float64) * (image_height / mask_h)

    depth_u = np.floor(u * depth_w / image_width).astype(np.int64)
    depth_v = np.floor(v * depth_h / image_height).astype(np.int64)
    in_bounds = (depth_u >= 0) & (depth_u < depth_w) & (depth_v >= 0) & (depth_v < depth_h)
    u, v = u[in_bounds], v[in_bounds]

    depth_m = encoding.decode(depth_arr[depth_v[in_bounds], depth_u[in_bounds]])
    usable = np.isfinite(depth_m) & (depth_m > 0.0)
    u, v, depth_m = u[usable], v[usable], depth_m[usable]

    points = np.stack(
        [
            (u - intrinsics.cx) / intrinsics.fx * depth_m,
            (v - intrinsics.cy) / intrinsics.fy * depth_m,
            depth_m,
        ],
        axis=1,
    )
    return filter_valid_points(points, min_depth=min_depth, max_depth=encoding.far)


def dbscan_labels(points: np.ndarray, eps: float = 0.02, min_points: int = 3) -> np.ndarray:
    """Cluster label per point (``-1`` for noise).

    A point is a core point when at least ``min_points`` other points lie within
    ``eps``. Border points join the first cluster that reaches them.
    """
    arr = np.asarray(points, dtype=np.float64)
    n = len(arr)
    labels = np.full(n, -1, dtype=np.int64)
    if n == 0:
        return labels

    neighbors = _radius_neighbors(arr, eps)

    visited = np.zeros(n, dtype=bool)
    cluster_id = 0
    for seed in range(n):
        if visited[seed]:
            continue
        visited[seed] = True
        if len(neighbors[seed]) < min_points:
            continue

        labels[seed] = cluster_id
        frontier = list(neighbors[seed])
        while frontier:
            idx = frontier.pop()
            if not visited[idx]:
                visited[idx] = True
                if len(neighbors[idx]) >= min_points:
                    frontier.extend(neighbors[idx])
            if labels[idx] < 0:
                labels[idx] = cluster_id
        cluster_id += 1

    return labels


def _radius_neighbors(points: np.ndarray, radius: float) -> list[np.ndarray]:
    """Indices of the other points within ``radius`` of each point, bucketed on a voxel grid of that size."""
    cells = np.floor(points / max(radius, 1e-9)).astype(np.int64)
    buckets: dict[tuple[int, int, int], list[int]] = {}
    for index, cell in enumerate(map(tuple, cells)):
        buckets.setdefault(cell, []).append(index)

    offsets = [(dx, dy, dz) for dx in (-1, 0, 1) for dy in (-1, 0, 1) for dz in (-1, 0, 1)]
    radius_sq = radius * radius
    result: list[np.ndarray] = [np.empty((0,), dtype=np.int64)] * len(points)

    for (cx, cy, cz), members in buckets.items():
        candidates = [
            idx
            for dx, dy, dz in offsets
            for idx in buckets.get((cx + dx, cy + dy, cz + dz), ())
        ]
        member_idx = np.asarray(members, dtype=np.int64)
        candidate_idx = np.asarray(candidates, dtype=np.int64)
        deltas = points[member_idx][:, None, :] - points[candidate_idx][None, :, :]
        within = np.sum(deltas * deltas, axis=2) <= radius_sq
        for row, point_index in enumerate(member_idx):
            hits = candidate_idx[within[row]]
            result[point_index] = hits[hits != point_index]

    return result


def remove_outliers(points: np.ndarray, eps: float = 0.02, min_points: int = 3) -> np.ndarray:
    """Keep only the largest DBSCAN cluster; return the input when nothing clusters."""
    arr = np.asarray(points, dtype=np.float64)
    if len(arr) < min_points:
        return arr

    labels = dbscan_labels(arr, eps=eps, min_points=min_points)
    clustered = labels[labels >= 0]
    if clustered.size == 0:
        return arr
    largest = int(np.argmax(np.bincount(clustered)))
    return arr[labels == largest]
