from __future__ import annotations

"""Principal component analysis of camera-space point clouds."""

from dataclasses import dataclass

import numpy as np

from .model import Quaternion, Vec3
from .vision import quaternion_from_matrix

MIN_DIMENSION_M = 0.1


@dataclass(frozen=True)
class PCAResult:
    centroid: Vec3
    axes: tuple[Vec3, Vec3, Vec3]
    dimensions: Vec3
    eigenvalues: tuple[float, float, float]


@dataclass(frozen=True)
class OrientedBox:
    center: Vec3
    size: Vec3
    rotation: Quaternion


def _as_points(points: np.ndarray) -> np.ndarray:
    arr = np.asarray(points, dtype=np.float64)
    if arr.size == 0:
        return np.empty((0, 3), dtype=np.float64)
    if arr.ndim != 2 or arr.shape[1] != 3:
        raise ValueError("point cloud must be Nx3")
    return arr


def _vec(arr: np.ndarray) -> Vec3:
    return (float(arr[0]), float(arr[1]), float(arr[2]))


def compute_centroid(points: np.ndarray) -> np.ndarray:
    arr = _as_points(points)
    if len(arr) == 0:
        return np.zeros(3, dtype=np.float64)
    return np.mean(arr, axis=0)


def compute_covariance(points: np.ndarray, centroid: np.ndarray | None = None) -> np.ndarray:
    """Population covariance (divided by N)."""
    arr = _as_points(points)
    if len(arr) == 0:
        return np.zeros((3, 3), dtype=np.float64)
    center = compute_centroid(arr) if centroid is None else np.asarray(centroid, dtype=np.float64)
    centered = arr - center[None, :]
    return centered.T @ centered / float(len(arr))


def jacobi_eigendecomposition(
    matrix: np.ndarray,
    *,
    max_iterations: int = 100,
    tolerance: float = 1e-10,
) -> tuple[np.ndarray, np.ndarray]:
    """Eigen-decompose a symmetric 3x3 matrix with cyclic Jacobi rotations.

    Each iteration zeroes the largest off-diagonal entry. Returns ``(eigenvalues,
    eigenvectors)`` sorted by descending eigenvalue magnitude, eigenvectors as
    columns. The input is not modified.
    """
    a = np.array(matrix, dtype=np.float64, copy=True)
    if a.shape != (3, 3):
        raise ValueError("matrix must be 3x3")
    v = np.eye(3, dtype=np.float64)

    for _ in range(max_iterations):
        off = np.abs(np.triu(a, k=1))
        p, q = np.unravel_index(int(np.argmax(off)), off.shape)
        if off[p, q] < tolerance:
            break

        theta = 0.5 * np.arctan2(2.0 * a[p, q], a[q, q] - a[p, p])
        c = np.cos(theta)
        s = np.sin(theta)

        rotation = np.eye(3, dtype=np.float64)
        rotation[p, p] = c
        rotation[q, q] = c
        rotation[q, p] = -s
        rotation[p, q] = s

        a = rotation.T @ a @ rotation
        a[p, q] = a[q, p] = 0.0
        v = v @ rotation

    eigenvalues = np.diag(a).copy()
    order = np.argsort(-np.abs(eigenvalues), kind="stable")
    return eigenvalues[order], v[:, order]


def compute_pca(points: np.ndarray) -> PCAResult:
    """Centroid, principal axes, extents and eigenvalues of a point cloud.

    With fewer than three points the axes are the identity basis and the extent
    is a 10 cm cube around the centroid.
    """
    arr = _as_points(points)
    centroid = compute_centroid(arr)

    if len(arr) < 3:
        return PCAResult(
            centroid=_vec(centroid),
            axes=((1.0, 0.0, 0.0), (0.0, 1.0, 0.0), (0.0, 0.0, 1.0)),
            dimensions=(MIN_DIMENSION_M, MIN_DIMENSION_M, MIN_DIMENSION_M),
            eigenvalues=(0.0, 0.0, 0.0),
        )

    eigenvalues, eigenvectors = jacobi_eigendecomposition(compute_covariance(arr, centroid))
    axes = eigenvectors / np.linalg.norm(eigenvectors, axis=0, keepdims=True)

    projected = (arr - centroid[None, :]) @ axes
    extents = np.maximum(projected.max(axis=0) - projected.min(axis=0), MIN_DIMENSION_M)

    return PCAResult(
        centroid=_vec(centroid),
        axes=(_vec(axes[:, 0]), _vec(axes[:, 1]), _vec(axes[:, 2])),
        dimensions=_vec(extents),
        eigenvalues=(float(eigenvalues[0]), float(eigenvalues[1]), float(eigenvalues[2])),
    )


def bounding_box_from_pca(result: PCAResult) -> OrientedBox:
    basis = np.asarray(result.axes, dtype=np.float64).T
    if np.linalg.det(basis) < 0.0:
        basis[:, 2] *= -1.0
    return OrientedBox(
        center=result.centroid,
        size=result.dimensions,
        rotation=quaternion_from_matrix(basis),
    )
