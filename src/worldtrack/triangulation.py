from __future__ import annotations

"""Multi-view ray triangulation with uncertainty-weighted least squares."""

import math
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from .model import Ray, Vec3

PARALLEL_EPSILON = 1e-10
PIVOT_EPSILON = 1e-10
DEFAULT_RAY_UNCERTAINTY_M = 0.1
SINGULAR_FALLBACK_UNCERTAINTY_M = 1.0


@dataclass(frozen=True)
class TriangulationResult:
    """``position`` is ``None`` only when no rays were given (uncertainty is then infinite)."""

    position: Optional[Vec3]
    uncertainty: float

    @property
    def ok(self) -> bool:
        return self.position is not None and math.isfinite(self.uncertainty)


@dataclass(frozen=True)
class ClosestPoints:
    point_on_first: np.ndarray
    point_on_second: np.ndarray
    midpoint: np.ndarray
    distance: float


def _vec(arr: np.ndarray) -> Vec3:
    return (float(arr[0]), float(arr[1]), float(arr[2]))


def _uncertainty(ray: Ray) -> float:
    return ray.uncertainty if ray.uncertainty > 0.0 else DEFAULT_RAY_UNCERTAINTY_M


def closest_point_between_rays(first: Ray, second: Ray) -> ClosestPoints:
    """Closest points of two lines; nearly parallel lines fall back to their origins."""
    o1 = np.asarray(first.origin, dtype=np.float64)
    d1 = np.asarray(first.direction, dtype=np.float64)
    o2 = np.asarray(second.origin, dtype=np.float64)
    d2 = np.asarray(second.direction, dtype=np.float64)

    w = o1 - o2
    a = float(d1 @ d1)
    b = float(d1 @ d2)
    c = float(d2 @ d2)
    d = float(d1 @ w)
    e = float(d2 @ w)
    denom = a * c - b * b

    if abs(denom) < PARALLEL_EPSILON:
        return ClosestPoints(
            point_on_first=o1,
            point_on_second=o2,
            midpoint=(o1 + o2) * 0.5,
            distance=float(np.linalg.norm(o1 - o2)),
        )

    t1 = (b * e - c * d) / denom
    t2 = (a * e - b * d) / denom
    p1 = o1 + d1 * t1
    p2 = o2 + d2 * t2
    return ClosestPoints(
        point_on_first=p1,
        point_on_second=p2,
        midpoint=(p1 + p2) * 0.5,
        distance=float(np.linalg.norm(p1 - p2)),
    )


def solve_linear_system(a: np.ndarray, b: np.ndarray) -> Optional[np.ndarray]:
    """Gaussian elimination with partial pivoting; ``None`` when a pivot is below 1e-10."""
    m = np.array(a, dtype=np.float64, copy=True)
    rhs = np.array(b, dtype=np.float64, copy=True)
    n = m.shape[0]
    if m.shape != (n, n) or rhs.shape != (n,):
        raise ValueError("expected a square system")

    for col in range(n):
        pivot = col + int(np.argmax(np.abs(m[col:, col])))
        if abs(m[pivot, col]) < PIVOT_EPSILON:
            return None
        if pivot != col:
            m[[col, pivot]] = m[[pivot, col]]
            rhs[[col, pivot]] = rhs[[pivot, col]]
        factors = m[col + 1 :, col] / m[col, col]
        m[col + 1 :, col:] -= factors[:, None] * m[col, col:][None, :]
        rhs[col + 1 :] -= factors * rhs[col]

    x = np.zeros(n, dtype=np.float64)
    for row in range(n - 1, -1, -1):
        x[row] = (rhs[row] - m[row, row + 1 :] @ x[row + 1 :]) / m[row, row]
    return x


def triangulate_rays(rays: Sequence[Ray], weights: Optional[Sequence[float]] = None) -> TriangulationResult:
    """Best-estimate point for a bundle of rays.

    One ray resolves to its endpoint. Two rays use the midpoint of their closest
    points. Three or more solve the weighted normal equations of the summed squared
    perpendicular distances, each ray weighted by ``weight / uncertainty``.
    """
    if not rays:
        return TriangulationResult(position=None, uncertainty=math.inf)

    if len(rays) == 1:
        ray = rays[0]
        return TriangulationResult(position=ray.endpoint, uncertainty=ray.uncertainty)

    if len(rays) == 2:
        closest = closest_point_between_rays(rays[0], rays[1])
        mean_uncertainty = (_uncertainty(rays[0]) + _uncertainty(rays[1])) * 0.5
        return TriangulationResult(
            position=_vec(closest.midpoint),
            uncertainty=max(closest.distance * 0.5, mean_uncertainty),
        )

    ray_weights = [1.0] * len(rays) if weights is None else [float(w) for w in weights]
    if len(ray_weights) != len(rays):
        raise ValueError("weights must match rays")

    normal = np.zeros((3, 3), dtype=np.float64)
    rhs = np.zeros(3, dtype=np.float64)
    effective = np.zeros(len(rays), dtype=np.float64)
    identity = np.eye(3, dtype=np.float64)

    for index, ray in enumerate(rays):
        direction = np.asarray(ray.direction, dtype=np.float64)
        origin = np.asarray(ray.origin, dtype=np.float64)
        weight = ray_weights[index] / _uncertainty(ray)
        projection = identity - np.outer(direction, direction)
        normal += weight * projection
        rhs += weight * (projection @ origin)
        effective[index] = weight

    endpoints = np.asarray([ray.endpoint for ray in rays], dtype=np.float64)
    total = float(effective.sum())
    solution = solve_linear_system(normal, rhs)

    if solution is None:
        if total <= 0.0:
            fallback = endpoints.mean(axis=0)
        else:
            fallback = (endpoints * effective[:, None]).sum(axis=0) / total
        return TriangulationResult(position=_vec(fallback), uncertainty=SINGULAR_FALLBACK_UNCERTAINTY_M)

    distances = np.linalg.norm(endpoints - solution[None, :], axis=1)
    if total <= 0.0:
        residual = float(distances.mean())
    else:
        residual = float((distances * effective).sum() / total)
    return TriangulationResult(position=_vec(solution), uncertainty=residual)
