from __future__ import annotations

"""One detection response in, one batch of tracking events out."""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

import numpy as np

from .config import WorldtrackConfig
from .depth_processor import DepthProcessor, ImageSource, load_depth_map, load_mask
from .model import (
    CameraExtrinsics,
    CameraIntrinsics,
    Detection,
    HeadTransform,
    PositionObservation,
    TrackCreated,
    TrackingEvent,
    TrackRemoved,
    TrackUpdated,
)
from .tracker import ObjectTracker

logger = logging.getLogger("worldtrack.pipeline")

DEFAULT_DETECTION_SCORE = 0.5


@dataclass(frozen=True)
class FrameInput:
    """Everything captured for one detection response.

    ``head_transform`` is the pose at capture time. ``depth_map`` and ``masks`` may be
    PNG bytes or decoded arrays.
    """

    detections: Sequence[Detection]
    image_width: int
    image_height: int
    head_transform: HeadTransform
    depth_map: Optional[ImageSource] = None
    masks: Sequence[ImageSource] = ()
    intrinsics: Optional[CameraIntrinsics] = None
    extrinsics: Optional[CameraExtrinsics] = None
    video_mode: bool = False


@dataclass(frozen=True)
class DetectionDiagnostics:
    index: int
    label: str
    object_id: Optional[str] = None
    method: Optional[str] = None
    uncertainty: Optional[float] = None
    quality_score: Optional[float] = None
    occlusion_reasons: tuple[str, ...] = ()
    native_samples: int = 0
    skipped: Optional[str] = None


@dataclass(frozen=True)
class BatchResult:
    events: tuple[TrackingEvent, ...]
    diagnostics: tuple[DetectionDiagnostics, ...]

    @property
    def created(self) -> list[TrackCreated]:
        return [e for e in self.events if isinstance(e, TrackCreated)]

    @property
    def updated(self) -> list[TrackUpdated]:
        return [e for e in self.events if isinstance(e, TrackUpdated)]

    @property
    def removed(self) -> list[TrackRemoved]:
        return [e for e in self.events if isinstance(e, TrackRemoved)]


class TrackingPipeline:
    """Depth processor plus independent image-mode and video-mode trackers."""

    def __init__(
        self,
        config: WorldtrackConfig | None = None,
        *,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.config = config or WorldtrackConfig()
        self.depth_processor = DepthProcessor(self.config.depth)
        self.image_tracker = ObjectTracker(self.config.tracker, video_mode=False, clock=clock)
        self.video_tracker = ObjectTracker(self.config.tracker, video_mode=True, clock=clock)

    def tracker_for(self, video_mode: bool) -> ObjectTracker:
        return self.video_tracker if video_mode else self.image_tracker

    def reset(self, video_mode: Optional[bool] = None) -> list[TrackRemoved]:
        """Reset one tracker, or both when ``video_mode`` is ``None``."""
        if video_mode is None:
            return self.image_tracker.reset() + self.video_tracker.reset()
        return self.tracker_for(video_mode).reset()

    def _decode_masks(self, frame: FrameInput) -> list[Optional[np.ndarray]]:
        def decode(detection: Detection) -> Optional[np.ndarray]:
            index = detection.mask_index
            if index is None:
                return None
            if not (0 <= index < len(frame.masks)):
                logger.warning(f"Mask index {index} out of range for '{detection.label}' ({len(frame.masks)} masks)")
                return None
            try:
                return load_mask(frame.masks[index])
            except ValueError as exc:
                logger.warning(f"Failed to load mask {index} for '{detection.label}': {exc}")
                return None

        if not any(d.mask_index is not None for d in frame.detections):
            return [None] * len(frame.detections)
        workers = max(1, int(self.config.decode_workers))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            return list(executor.map(decode, frame.detections))

    def process(self, frame: FrameInput) -> BatchResult:
        """Resolve, match and fuse every detection in order, then decay and evict.

        Masks are decoded concurrently; tracker updates run sequentially in
        detection order so double-match resolution is deterministic.
        """
        tracker = self.tracker_for(frame.video_mode)
        events: list[TrackingEvent] = []
        diagnostics: list[DetectionDiagnostics] = []

        depth_map: Optional[np.ndarray] = None
        if frame.depth_map is not None:
            try:
                depth_map = load_depth_map(frame.depth_map)
            except ValueError as exc:
                logger.warning(f"Failed to load depth map: {exc}")

        masks = self._decode_masks(frame) if depth_map is not None else [None] * len(frame.detections)
        use_native = self.depth_processor.has_captured_depth_data
        matched_ids: set[str] = set()

        for index, (detection, mask) in enumerate(zip(frame.detections, masks)):
            label = detection.label or "object"
            score = detection.score or DEFAULT_DETECTION_SCORE

            estimate = self.depth_processor.calculate_world_position(
                detection,
                depth_map,
                frame.image_width,
                frame.image_height,
                frame.head_transform,
                frame.intrinsics,
                frame.extrinsics,
                mask,
            )
            if estimate is None:
                diagnostics.append(DetectionDiagnostics(index=index, label=label, skipped="no_position"))
                continue

            native = None
            if use_native:
                native = self.depth_processor.calculate_native_depth_position(
                    detection, frame.image_width, frame.image_height, mask
                )

            observation = PositionObservation(
                position=estimate.position,
                ray=estimate.ray,
                uncertainty=estimate.uncertainty,
            )
            event = tracker.observe(
                label,
                observation,
                score,
                matched_ids,
                bbox=detection.bbox,
                mask_index=detection.mask_index,
                intrinsics=frame.intrinsics,
                depth=estimate.depth,
                native=native,
            )
            if event is not None:
                events.append(event)

            diagnostics.append(
                DetectionDiagnostics(
                    index=index,
                    label=label,
                    object_id=None if event is None else event.object_id,
                    method=estimate.method,
                    uncertainty=estimate.uncertainty,
                    quality_score=estimate.quality_score,
                    occlusion_reasons=estimate.occlusion_reasons,
                    native_samples=0 if native is None else native.sample_count,
                    skipped=None if event is not None else "tracker_reset",
                )
            )

        tracker.decay(d.label or "object" for d in frame.detections)
        events.extend(tracker.cleanup())

        logger.debug(
            f"Batch: {len(frame.detections)} detections -> "
            f"{sum(isinstance(e, TrackCreated) for e in events)} created, "
            f"{sum(isinstance(e, TrackUpdated) for e in events)} updated, "
            f"{sum(isinstance(e, TrackRemoved) for e in events)} removed"
        )
        return BatchResult(events=tuple(events), diagnostics=tuple(diagnostics))
