from __future__ import annotations

"""Camera, headset and world frame helpers (pinhole back-projection and quaternions)."""

import math
from typing import Optional, Sequence

import numpy as np

from .model import IDENTITY_QUATERNION, CameraIntrinsics, HeadTransform, Quaternion, Ray, Vec3

# Camera frame is X right / Y down / Z forward, headset frame is X right / Y up / Z backward.
# Flipping Y and Z is a half turn about X.
CAMERA_TO_HEADSET: Quaternion = (1.0, 0.0, 0.0, 0.0)


def _as_vec3(vector: Sequence[float]) -> np.ndarray:
    arr = np.asarray(vector, dtype=np.float64)
    if arr.shape != (3,):
        raise ValueError("vector must be length 3")
    return arr


def _to_tuple(arr: np.ndarray) -> Vec3:
    return (float(arr[0]), float(arr[1]), float(arr[2]))


def quaternion_multiply(a: Quaternion, b: Quaternion) -> Quaternion:
    """Hamilton product ``a * b`` of two (x, y, z, w) quaternions."""
    ax, ay, az, aw = a
    bx, by, bz, bw = b
    return (
        aw * bx + ax * bw + ay * bz - az * by,
        aw * by - ax * bz + ay * bw + az * bx,
        aw * bz + ax * by - ay * bx + az * bw,
        aw * bw - ax * bx - ay * by - az * bz,
    )


def quaternion_to_matrix(q: Quaternion) -> np.ndarray:
    x, y, z, w = q
    norm = math.sqrt(x * x + y * y + z * z + w * w)
    if norm <= 0.0:
        return np.eye(3, dtype=np.float64)
    x, y, z, w = x / norm, y / norm, z / norm, w / norm
    return np.asarray(
        [
            [1.0 - 2.0 * (y * y + z * z), 2.0 * (x * y - z * w), 2.0 * (x * z + y * w)],
            [2.0 * (x * y + z * w), 1.0 - 2.0 * (x * x + z * z), 2.0 * (y * z - x * w)],
            [2.0 * (x * z - y * w), 2.0 * (y * z + x * w), 1.0 - 2.0 * (x * x + y * y)],
        ],
        dtype=np.float64,
    )


def quaternion_from_matrix(matrix: Sequence[Sequence[float]]) -> Quaternion:
    """Quaternion of the upper-left 3x3 rotation block of ``matrix``."""
    m = np.asarray(matrix, dtype=np.float64)
    if m.shape not in {(3, 3), (4, 4)}:
        raise ValueError("rotation matrix must be 3x3 or 4x4")
    m = m[:3, :3]
    trace = m[0, 0] + m[1, 1] + m[2, 2]

    if trace > 0.0:
        s = 0.5 / math.sqrt(trace + 1.0)
        q = (
            (m[2, 1] - m[1, 2]) * s,
            (m[0, 2] - m[2, 0]) * s,
            (m[1, 0] - m[0, 1]) * s,
            0.25 / s,
        )
    elif m[0, 0] > m[1, 1] and m[0, 0] > m[2, 2]:
        s = 2.0 * math.sqrt(1.0 + m[0, 0] - m[1, 1] - m[2, 2])
        q = (0.25 * s, (m[0, 1] + m[1, 0]) / s, (m[0, 2] + m[2, 0]) / s, (m[2, 1] - m[1, 2]) / s)
    elif m[1, 1] > m[2, 2]:
        s = 2.0 * math.sqrt(1.0 + m[1, 1] - m[0, 0] - m[2, 2])
        q = ((m[0, 1] + m[1, 0]) / s, 0.25 * s, (m[1, 2] + m[2, 1]) / s, (m[0, 2] - m[2, 0]) / s)
    else:
        s = 2.0 * math.sqrt(1.0 + m[2, 2] - m[0, 0] - m[1, 1])
        q = ((m[0, 2] + m[2, 0]) / s, (m[1, 2] + m[2, 1]) / s, 0.25 * s, (m[1, 0] - m[0, 1]) / s)

    norm = math.sqrt(sum(v * v for v in q))
    return (float(q[0] / norm), float(q[1] / norm), float(q[2] / norm), float(q[3] / norm))


def rotate_vector(q: Quaternion, vector: Sequence[float]) -> np.ndarray:
    return quaternion_to_matrix(q) @ _as_vec3(vector)


def head_rotation(head: HeadTransform) -> Quaternion:
    """Rotation of a captured head pose: matrix first, then quaternion, else identity."""
    if head.matrix is not None:
        return quaternion_from_matrix(head.matrix)
    if head.rotation is not None:
        return head.rotation
    return IDENTITY_QUATERNION


def camera_to_headset(point_camera: Sequence[float]) -> np.ndarray:
    point = _as_vec3(point_camera)
    return np.asarray([point[0], -point[1], -point[2]], dtype=np.float64)


def pixel_direction(u: float, v: float, intrinsics: CameraIntrinsics) -> np.ndarray:
    """Un-normalized ``K^-1 [u, v, 1]`` for a pixel."""
    return np.asarray(
        [(u - intrinsics.cx) / intrinsics.fx, (v - intrinsics.cy) / intrinsics.fy, 1.0],
        dtype=np.float64,
    )


def back_project_pixel(u: float, v: float, depth_m: float, intrinsics: CameraIntrinsics) -> np.ndarray:
    return pixel_direction(u, v, intrinsics) * depth_m


def create_camera_ray(
    u: float,
    v: float,
    intrinsics: CameraIntrinsics,
    origin: Sequence[float],
    rotation: Optional[Quaternion] = None,
    depth: float = 1.0,
    uncertainty: float = 0.1,
) -> Ray:
    """Ray through pixel ``(u, v)`` with the camera direction rotated into the target frame."""
    direction = pixel_direction(u, v, intrinsics)
    direction = direction / np.linalg.norm(direction)
    if rotation is not None:
        direction = rotate_vector(rotation, direction)
    return Ray(
        origin=_to_tuple(_as_vec3(origin)),
        direction=_to_tuple(direction),
        depth=float(depth),
        uncertainty=float(uncertainty),
    )
