from __future__ import annotations

"""Per-detection depth resolution: camera space -> headset space -> world space.

Two depth sources are supported:
  - server depth maps (normalized grayscale images plus optional object masks),
    resolved through the occlusion/quality gate into either a PCA centroid of the
    masked point cloud or a single-pixel sample;
  - device-native hit-test samples captured separately and keyed by pixel.
"""

import logging
import math
from dataclasses import dataclass, field, replace
from typing import Mapping, Optional, Union

import cv2
import numpy as np

from .depth_quality import DepthQualityConfig, assess_depth_quality, is_depth_quality_sufficient
from .model import (
    IDENTITY_QUATERNION,
    CameraExtrinsics,
    CameraIntrinsics,
    Detection,
    HeadTransform,
    NativeDepthSample,
    NativeEstimate,
    PositionEstimate,
    Vec3,
)
from .occlusion import OcclusionConfig, check_occlusion
from .pca import compute_pca
from .point_cloud import DepthEncoding, construct_point_cloud_from_mask, remove_outliers
from .uncertainty import (
    DEFAULT_DEPTH_UNCERTAINTY_M,
    combine_sam3_confidence,
    combine_uncertainties,
    estimate_depth_uncertainty,
)
from .vision import (
    CAMERA_TO_HEADSET,
    back_project_pixel,
    camera_to_headset,
    create_camera_ray,
    head_rotation,
    pixel_direction,
    quaternion_multiply,
    rotate_vector,
)

logger = logging.getLogger("worldtrack.depth")

ImageSource = Union[bytes, bytearray, np.ndarray]


@dataclass(frozen=True)
class NativeDepthConfig:
    flip_y: bool = True
    flip_z: bool = False
    min_y_m: float = -0.3
    max_y_m: float = 2.5
    mask_threshold: float = 128


@dataclass(frozen=True)
class DepthProcessorConfig:
    encoding: DepthEncoding = field(default_factory=DepthEncoding)
    native: NativeDepthConfig = field(default_factory=NativeDepthConfig)
    occlusion: OcclusionConfig = field(default_factory=OcclusionConfig)
    quality: DepthQualityConfig = field(default_factory=DepthQualityConfig)
    mask_threshold: float = 128
    point_cloud_step: int = 2
    uncertainty_mask_threshold: float = 64
    uncertainty_step: int = 1
    min_valid_depth_m: float = 0.1
    min_cloud_points: int = 10
    outlier_eps_m: float = 0.02
    outlier_min_points: int = 3
    horizontal_fov_deg: float = 90.0
    vertical_fov_deg: float = 70.0
    default_detection_confidence: float = 0.5


@dataclass(frozen=True)
class ExtremePoints:
    topmost: tuple[float, float]
    bottommost: tuple[float, float]
    leftmost: tuple[float, float]
    rightmost: tuple[float, float]

    @property
    def center(self) -> tuple[float, float]:
        return (
            (self.leftmost[0] + self.rightmost[0]) * 0.5,
            (self.topmost[1] + self.bottommost[1]) * 0.5,
        )


def _decode_image(source: ImageSource) -> tuple[np.ndarray, bool]:
    """Decoded pixel array and whether its channels are in OpenCV (BGR) order."""
    if isinstance(source, np.ndarray):
        return source, False
    buffer = np.frombuffer(bytes(source), dtype=np.uint8)
    if buffer.size == 0:
        raise ValueError("Empty image buffer")
    try:
        image = cv2.imdecode(buffer, cv2.IMREAD_UNCHANGED)
    except cv2.error as exc:
        raise ValueError(f"Could not decode image bytes: {exc}") from exc
    if image is None:
        raise ValueError("Could not decode image bytes")
    return image, True


def _red_channel(image: np.ndarray, bgr: bool) -> np.ndarray:
    if image.ndim == 2:
        return image
    if image.ndim != 3 or image.shape[2] not in (3, 4):
        raise ValueError(f"Unsupported image shape {image.shape}")
    return image[:, :, 2] if bgr else image[:, :, 0]


def _normalize(channel: np.ndarray) -> np.ndarray:
    if channel.dtype == np.uint8:
        return channel.astype(np.float64) / 255.0
    if channel.dtype == np.uint16:
        return channel.astype(np.float64) / 65535.0
    return channel.astype(np.float64)


def load_depth_map(source: ImageSource) -> np.ndarray:
    """Normalized [0, 1] depth values from PNG bytes or an already decoded image.

    Grayscale-in-RGB images carry the value in the red channel.
    """
    image, bgr = _decode_image(source)
    return _normalize(_red_channel(image, bgr))


def load_mask(source: ImageSource) -> np.ndarray:
    """2-D 0..255 object mask from PNG bytes or an already decoded image.

    Uses the alpha channel when it carries information, otherwise the red channel
    (grayscale masks are stored opaque). Float images are read as 0..1.
    """
    image, bgr = _decode_image(source)
    if image.ndim == 3 and image.shape[2] == 4:
        alpha = image[:, :, 3]
        full = 65535 if alpha.dtype == np.uint16 else 255
        if not np.all(alpha == full):
            channel = alpha
        else:
            channel = _red_channel(image, bgr)
    else:
        channel = _red_channel(image, bgr)
    return np.clip(np.rint(_normalize(channel) * 255.0), 0.0, 255.0).astype(np.uint8)


def _vec(arr: np.ndarray) -> Vec3:
    return (float(arr[0]), float(arr[1]), float(arr[2]))


class DepthProcessor:
    def __init__(self, config: DepthProcessorConfig | None = None) -> None:
        cfg = config or DepthProcessorConfig()
        # One depth encoding for every consumer of the depth map.
        self.config = replace(cfg, occlusion=replace(cfg.occlusion, encoding=cfg.encoding))
        self._captured_samples: dict[tuple[int, int], NativeDepthSample] = {}
        self._encoding_logged = False

    @property
    def encoding(self) -> DepthEncoding:
        return self.config.encoding

    def set_depth_encoding(self, near: float, far: float, inverted: bool = True) -> None:
        encoding = DepthEncoding(near=near, far=far, inverted=inverted)
        self.config = replace(
            self.config,
            encoding=encoding,
            occlusion=replace(self.config.occlusion, encoding=encoding),
        )
        logger.info(f"Depth encoding set: near={near}m, far={far}m, inverted={inverted}")

    def decode_depth_value(self, normalized: float) -> float:
        return float(self.encoding.decode(normalized))

    @property
    def has_captured_depth_data(self) -> bool:
        return bool(self._captured_samples)

    def set_captured_depth_data(self, samples: Optional[Mapping[object, NativeDepthSample]]) -> None:
        """Replace the native hit-test samples; ``None`` clears them."""
        self._captured_samples = {}
        if samples:
            for sample in samples.values():
                self._captured_samples[(int(sample.pixel_x), int(sample.pixel_y))] = sample

    def resolve_intrinsics(
        self,
        intrinsics: Optional[CameraIntrinsics],
        image_width: int,
        image_height: int,
    ) -> CameraIntrinsics:
        if intrinsics is not None:
            return intrinsics
        logger.debug(f"No intrinsics, assuming {self.config.horizontal_fov_deg}x{self.config.vertical_fov_deg} deg FOV")
        return CameraIntrinsics.from_fov(
            image_width,
            image_height,
            self.config.horizontal_fov_deg,
            self.config.vertical_fov_deg,
        )

    def find_extreme_points_in_mask(
        self,
        mask: np.ndarray,
        bbox: tuple[float, float, float, float],
        image_width: int,
        image_height: int,
    ) -> Optional[ExtremePoints]:
        """Extreme object pixels inside ``bbox`` (image coordinates); ``None`` for an empty mask."""
        mask_arr = np.asarray(mask)
        mask_h, mask_w = mask_arr.shape[:2]
        x1, y1, x2, y2 = bbox
        xs = np.arange(x1, x2 + 1e-9, 1.0)
        ys = np.arange(y1, y2 + 1e-9, 1.0)
        if xs.size == 0 or ys.size == 0:
            return None

        mask_cols = np.floor(xs / image_width * mask_w).astype(np.int64)
        mask_rows = np.floor(ys / image_height * mask_h).astype(np.int64)
        col_ok = (mask_cols >= 0) & (mask_cols < mask_w)
        row_ok = (mask_rows >= 0) & (mask_rows < mask_h)
        xs, mask_cols = xs[col_ok], mask_cols[col_ok]
        ys, mask_rows = ys[row_ok], mask_rows[row_ok]
        if xs.size == 0 or ys.size == 0:
            return None

        inside = mask_arr[np.ix_(mask_rows, mask_cols)] > self.config.mask_threshold
        if not inside.any():
            return None

        row_idx, col_idx = np.nonzero(inside)
        top = int(np.argmin(row_idx))
        bottom = int(np.argmax(row_idx))
        left = int(np.argmin(col_idx))
        right = int(np.argmax(col_idx))
        return ExtremePoints(
            topmost=(float(xs[col_idx[top]]), float(ys[row_idx[top]])),
            bottommost=(float(xs[col_idx[bottom]]), float(ys[row_idx[bottom]])),
            leftmost=(float(xs[col_idx[left]]), float(ys[row_idx[left]])),
            rightmost=(float(xs[col_idx[right]]), float(ys[row_idx[right]])),
        )

    def sample_depth_at_pixel(
        self,
        depth_map: np.ndarray,
        x: float,
        y: float,
        image_width: int,
        image_height: int,
    ) -> Optional[float]:
        """Decoded depth (m) of the depth-map pixel under image pixel ``(x, y)``."""
        depth_h, depth_w = depth_map.shape[:2]
        depth_x = math.floor(x / image_width * depth_w)
        depth_y = math.floor(y / image_height * depth_h)
        if not (0 <= depth_x < depth_w and 0 <= depth_y < depth_h):
            return None
        normalized = float(depth_map[depth_y, depth_x])
        depth_m = self.decode_depth_value(normalized)
        if not self._encoding_logged:
            logger.debug(
                f"Depth encoding: normalized={normalized:.3f} -> {depth_m:.2f}m "
                f"(near={self.encoding.near}m, far={self.encoding.far}m, inverted={self.encoding.inverted})"
            )
            self._encoding_logged = True
        if not math.isfinite(depth_m) or depth_m <= 0.0:
            return None
        return depth_m

    def calculate_world_position(
        self,
        detection: Detection,
        depth_map: Optional[np.ndarray],
        image_width: int,
        image_height: int,
        head_transform: HeadTransform,
        intrinsics: Optional[CameraIntrinsics] = None,
        extrinsics: Optional[CameraExtrinsics] = None,
        mask: Optional[np.ndarray] = None,
    ) -> Optional[PositionEstimate]:
        """World position, ray and uncertainty for one detection, or ``None``.

        ``head_transform`` must be the pose captured with the frame, not the live one.
        """
        if depth_map is None:
            logger.warning(f"No depth map for '{detection.label}', skipping")
            return None
        try:
            return self._calculate_world_position(
                detection,
                load_depth_map(np.asarray(depth_map)),
                image_width,
                image_height,
                head_transform,
                intrinsics,
                extrinsics,
                None if mask is None else load_mask(np.asarray(mask)),
            )
        except Exception:
            logger.exception(f"Depth resolution failed for '{detection.label}'")
            return None

    def _calculate_world_position(
        self,
        detection: Detection,
        depth_map: np.ndarray,
        image_width: int,
        image_height: int,
        head_transform: HeadTransform,
        intrinsics: Optional[CameraIntrinsics],
        extrinsics: Optional[CameraExtrinsics],
        mask: Optional[np.ndarray],
    ) -> Optional[PositionEstimate]:
        cfg = self.config
        camera = self.resolve_intrinsics(intrinsics, image_width, image_height)

        sample_x, sample_y = detection.center
        if mask is not None:
            extremes = self.find_extreme_points_in_mask(mask, detection.bbox, image_width, image_height)
            if extremes is not None:
                sample_x, sample_y = extremes.center

        method = "bbox_center"
        quality_score: Optional[float] = None
        reasons: tuple[str, ...] = ()
        camera_point: Optional[np.ndarray] = None

        if mask is not None:
            quality = assess_depth_quality(depth_map, mask, encoding=cfg.encoding, config=cfg.quality)
            occlusion = check_occlusion(mask, depth_map, cfg.occlusion)
            quality_score = quality.score
            reasons = occlusion.reasons
            method = "single_pixel"

            if occlusion.occluded or not is_depth_quality_sufficient(quality, cfg.quality):
                logger.debug(
                    f"'{detection.label}': single-pixel depth (occlusion={list(reasons)}, quality={quality.score:.2f})"
                )
            else:
                cloud = construct_point_cloud_from_mask(
                    mask,
                    depth_map,
                    camera,
                    image_width,
                    image_height,
                    encoding=cfg.encoding,
                    mask_threshold=cfg.mask_threshold,
                    sample_step=cfg.point_cloud_step,
                    min_depth=cfg.min_valid_depth_m,
                )
                if len(cloud) >= cfg.min_cloud_points:
                    cleaned = remove_outliers(cloud, eps=cfg.outlier_eps_m, min_points=cfg.outlier_min_points)
                    if len(cleaned) >= 3:
                        camera_point = np.asarray(compute_pca(cleaned).centroid, dtype=np.float64)
                    else:
                        camera_point = np.mean(cleaned, axis=0)
                    method = "point_cloud"

        if camera_point is None:
            depth_m = self.sample_depth_at_pixel(depth_map, sample_x, sample_y, image_width, image_height)
            if depth_m is None:
                logger.warning(f"No usable depth at ({sample_x:.0f}, {sample_y:.0f}) for '{detection.label}'")
                return None
            camera_point = back_project_pixel(sample_x, sample_y, depth_m, camera)

        depth_m = float(camera_point[2])
        if not np.all(np.isfinite(camera_point)):
            logger.warning(f"Non-finite camera-space point for '{detection.label}'")
            return None

        extrinsics = extrinsics or CameraExtrinsics()
        headset = camera_to_headset(camera_point)
        if extrinsics.rotation is not None:
            headset = rotate_vector(extrinsics.rotation, headset)
        headset = headset + np.asarray(extrinsics.translation, dtype=np.float64)

        head_q = head_rotation(head_transform)
        head_position = np.asarray(head_transform.position, dtype=np.float64)
        world = head_position + rotate_vector(head_q, headset)
        camera_origin = head_position + rotate_vector(head_q, extrinsics.translation)

        ray_rotation = quaternion_multiply(
            quaternion_multiply(head_q, extrinsics.rotation or IDENTITY_QUATERNION),
            CAMERA_TO_HEADSET,
        )
        center_u, center_v = detection.center
        ray_depth = depth_m * float(np.linalg.norm(pixel_direction(center_u, center_v, camera)))

        depth_uncertainty = DEFAULT_DEPTH_UNCERTAINTY_M
        if mask is not None:
            dense = construct_point_cloud_from_mask(
                mask,
                depth_map,
                camera,
                image_width,
                image_height,
                encoding=cfg.encoding,
                mask_threshold=cfg.uncertainty_mask_threshold,
                sample_step=cfg.uncertainty_step,
                min_depth=cfg.min_valid_depth_m,
            )
            depth_uncertainty = estimate_depth_uncertainty(dense)
        confidence = detection.score or cfg.default_detection_confidence
        uncertainty = combine_uncertainties(combine_sam3_confidence(confidence, depth_uncertainty))

        ray = create_camera_ray(
            center_u,
            center_v,
            camera,
            _vec(camera_origin),
            ray_rotation,
            depth=ray_depth,
            uncertainty=uncertainty,
        )
        return PositionEstimate(
            position=_vec(world),
            depth=depth_m,
            ray=ray,
            uncertainty=uncertainty,
            camera_point=_vec(camera_point),
            camera_position=_vec(camera_origin),
            method=method,
            quality_score=quality_score,
            occlusion_reasons=reasons,
        )

    def calculate_native_depth_position(
        self,
        detection: Detection,
        image_width: int,
        image_height: int,
        mask: Optional[np.ndarray] = None,
    ) -> Optional[NativeEstimate]:
        """Average of the captured hit-test samples inside the detection (and its mask)."""
        if not self._captured_samples:
            logger.warning("No captured depth data available for native depth calculation")
            return None
        try:
            return self._calculate_native_depth_position(detection, image_width, image_height, mask)
        except Exception:
            logger.exception(f"Native depth resolution failed for '{detection.label}'")
            return None

    def _calculate_native_depth_position(
        self,
        detection: Detection,
        image_width: int,
        image_height: int,
        mask: Optional[np.ndarray],
    ) -> Optional[NativeEstimate]:
        native = self.config.native
        x1 = max(0, math.floor(detection.bbox[0]))
        y1 = max(0, math.floor(detection.bbox[1]))
        x2 = min(image_width - 1, math.ceil(detection.bbox[2]))
        y2 = min(image_height - 1, math.ceil(detection.bbox[3]))

        mask_arr = None if mask is None else np.asarray(mask)
        accepted: list[NativeDepthSample] = []
        rejected_by_mask = 0
        for (px, py), sample in self._captured_samples.items():
            if not (x1 <= px <= x2 and y1 <= py <= y2):
                continue
            if mask_arr is not None:
                mask_h, mask_w = mask_arr.shape[:2]
                mx = math.floor(px / image_width * mask_w)
                my = math.floor(py / image_height * mask_h)
                if not (0 <= mx < mask_w and 0 <= my < mask_h) or mask_arr[my, mx] <= native.mask_threshold:
                    rejected_by_mask += 1
                    continue
            accepted.append(sample)

        logger.debug(f"Native depth for '{detection.label}': {len(accepted)} accepted, {rejected_by_mask} rejected by mask")
        if not accepted:
            logger.warning(f"No native depth samples in bbox [{x1},{y1},{x2},{y2}] for '{detection.label}'")
            return None

        positions = np.asarray([sample.position for sample in accepted], dtype=np.float64)
        depths = np.asarray([sample.depth for sample in accepted], dtype=np.float64)
        position = positions.mean(axis=0)
        depth = float(depths.mean())
        if not (np.all(np.isfinite(position)) and math.isfinite(depth)):
            logger.warning(f"Non-finite native samples for '{detection.label}', dropping")
            return None

        raw_y = float(position[1])
        if native.flip_y:
            position[1] = -position[1]

        clamped = False
        if not (native.min_y_m <= position[1] <= native.max_y_m):
            logger.warning(
                f"Native Y={position[1]:.2f} out of bounds [{native.min_y_m}, {native.max_y_m}], "
                f"clamping (raw was {raw_y:.2f})"
            )
            position[1] = min(max(position[1], native.min_y_m), native.max_y_m)
            clamped = True

        if native.flip_z:
            position[2] = -position[2]

        return NativeEstimate(position=_vec(position), depth=depth, sample_count=len(accepted), clamped=clamped)
