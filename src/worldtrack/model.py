from __future__ import annotations

"""Shared data model for detections, camera geometry, observations and tracking events."""

import math
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union

Vec3 = tuple[float, float, float]
Quaternion = tuple[float, float, float, float]
Matrix4 = tuple[tuple[float, float, float, float], ...]
BBox = tuple[float, float, float, float]

IDENTITY_QUATERNION: Quaternion = (0.0, 0.0, 0.0, 1.0)


def _vec3(values: Any, name: str) -> Vec3:
    items = tuple(float(v) for v in values)
    if len(items) != 3:
        raise ValueError(f"{name} must have 3 components")
    return (items[0], items[1], items[2])


def _quaternion(values: Any, name: str) -> Quaternion:
    items = tuple(float(v) for v in values)
    if len(items) != 4:
        raise ValueError(f"{name} must be a quaternion (x, y, z, w)")
    norm = math.sqrt(sum(v * v for v in items))
    if norm <= 0.0 or not math.isfinite(norm):
        raise ValueError(f"{name} must be a non-zero finite quaternion")
    return (items[0] / norm, items[1] / norm, items[2] / norm, items[3] / norm)


@dataclass(frozen=True)
class Detection:
    """One detector output for one camera frame.

    ``bbox`` is ``(x1, y1, x2, y2)`` in image pixels. ``mask_index`` points into the
    mask list delivered with the same response.
    """

    label: str
    score: float
    bbox: BBox
    mask_index: Optional[int] = None

    def __post_init__(self) -> None:
        bbox = tuple(float(v) for v in self.bbox)
        if len(bbox) != 4:
            raise ValueError("Detection bbox must be (x1, y1, x2, y2)")
        if bbox[2] < bbox[0] or bbox[3] < bbox[1]:
            raise ValueError("Detection bbox requires x2 >= x1 and y2 >= y1")
        object.__setattr__(self, "bbox", bbox)
        object.__setattr__(self, "score", float(self.score))

    @property
    def center(self) -> tuple[float, float]:
        x1, y1, x2, y2 = self.bbox
        return ((x1 + x2) * 0.5, (y1 + y2) * 0.5)

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "Detection":
        """Build a detection from a JSON-like payload (``maskIndex`` or ``mask_index``)."""
        mask_index = payload.get("mask_index", payload.get("maskIndex"))
        return cls(
            label=str(payload.get("label") or "object"),
            score=float(payload.get("score", 0.0)),
            bbox=tuple(payload["bbox"]),
            mask_index=None if mask_index is None else int(mask_index),
        )


@dataclass(frozen=True)
class CameraIntrinsics:
    fx: float
    fy: float
    cx: float
    cy: float

    def __post_init__(self) -> None:
        if not (self.fx > 0.0 and self.fy > 0.0):
            raise ValueError("CameraIntrinsics requires positive focal lengths")

    @classmethod
    def from_fov(
        cls,
        width: int,
        height: int,
        horizontal_fov_deg: float = 90.0,
        vertical_fov_deg: float = 70.0,
    ) -> "CameraIntrinsics":
        """Approximate pinhole intrinsics from an assumed field of view."""
        hfov = math.radians(horizontal_fov_deg)
        vfov = math.radians(vertical_fov_deg)
        return cls(
            fx=width / (2.0 * math.tan(hfov / 2.0)),
            fy=height / (2.0 * math.tan(vfov / 2.0)),
            cx=width / 2.0,
            cy=height / 2.0,
        )


@dataclass(frozen=True)
class CameraExtrinsics:
    """Camera pose relative to the headset, expressed in headset space."""

    translation: Vec3 = (0.0, 0.0, 0.0)
    rotation: Optional[Quaternion] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "translation", _vec3(self.translation, "translation"))
        if self.rotation is not None:
            object.__setattr__(self, "rotation", _quaternion(self.rotation, "rotation"))


@dataclass(frozen=True)
class HeadTransform:
    """Head pose captured together with the camera frame.

    ``matrix`` is a row-major 4x4 pose; when present its rotation block wins over
    ``rotation``.
    """

    position: Vec3 = (0.0, 0.0, 0.0)
    rotation: Optional[Quaternion] = None
    matrix: Optional[Matrix4] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "position", _vec3(self.position, "position"))
        if self.rotation is not None:
            object.__setattr__(self, "rotation", _quaternion(self.rotation, "rotation"))
        if self.matrix is not None:
            rows = tuple(tuple(float(v) for v in row) for row in self.matrix)
            if len(rows) != 4 or any(len(row) != 4 for row in rows):
                raise ValueError("HeadTransform matrix must be 4x4")
            object.__setattr__(self, "matrix", rows)


@dataclass(frozen=True)
class Ray:
    origin: Vec3
    direction: Vec3
    depth: float = 1.0
    uncertainty: float = 0.1

    def __post_init__(self) -> None:
        origin = _vec3(self.origin, "origin")
        direction = _vec3(self.direction, "direction")
        norm = math.sqrt(sum(v * v for v in direction))
        if norm <= 0.0 or not math.isfinite(norm):
            raise ValueError("Ray direction must be a non-zero finite vector")
        object.__setattr__(self, "origin", origin)
        object.__setattr__(self, "direction", tuple(v / norm for v in direction))

    @property
    def endpoint(self) -> Vec3:
        return (
            self.origin[0] + self.direction[0] * self.depth,
            self.origin[1] + self.direction[1] * self.depth,
            self.origin[2] + self.direction[2] * self.depth,
        )


@dataclass(frozen=True)
class PositionObservation:
    """One entry of a tracked object's rolling position history."""

    position: Vec3
    ray: Optional[Ray] = None
    uncertainty: float = 0.1
    timestamp_ms: float = 0.0


@dataclass(frozen=True)
class NativeDepthSample:
    """Hit-test sample captured by the device, keyed by the pixel it was cast through."""

    position: Vec3
    depth: float
    pixel_x: int
    pixel_y: int


@dataclass(frozen=True)
class NativeObservation:
    position: Vec3
    depth: float
    timestamp_ms: float = 0.0


@dataclass(frozen=True)
class PositionEstimate:
    """World-space position resolved for one detection from a depth map."""

    position: Vec3
    depth: float
    ray: Ray
    uncertainty: float
    camera_point: Vec3
    camera_position: Vec3
    method: str = "single_pixel"
    quality_score: Optional[float] = None
    occlusion_reasons: tuple[str, ...] = ()


@dataclass(frozen=True)
class NativeEstimate:
    position: Vec3
    depth: float
    sample_count: int
    clamped: bool = False


@dataclass(frozen=True)
class TrackedObject:
    """Immutable snapshot of a tracked object handed to consumers."""

    object_id: str
    label: str
    fused_position: Vec3
    capture_time_position: Vec3
    position_history: tuple[PositionObservation, ...]
    native_position_history: tuple[NativeObservation, ...]
    native_fused_position: Optional[Vec3]
    confidence: float
    view_count: int
    last_seen_ms: float
    bbox: Optional[BBox]
    mask_index: Optional[int]
    camera_intrinsics: Optional[CameraIntrinsics]
    depth: Optional[float]
    is_video_mode: bool


@dataclass(frozen=True)
class TrackCreated:
    object_id: str
    snapshot: TrackedObject


@dataclass(frozen=True)
class TrackUpdated:
    object_id: str
    snapshot: TrackedObject


@dataclass(frozen=True)
class TrackRemoved:
    object_id: str
    label: str


TrackingEvent = Union[TrackCreated, TrackUpdated, TrackRemoved]
