from __future__ import annotations

"""Identity-preserving 3-D object tracker (match / create / update / decay / evict)."""

import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass, replace
from typing import Callable, Iterable, Optional, Sequence

import numpy as np

from .model import (
    BBox,
    CameraIntrinsics,
    NativeEstimate,
    NativeObservation,
    PositionObservation,
    TrackCreated,
    TrackedObject,
    TrackRemoved,
    TrackUpdated,
    Vec3,
)
from .trajectory import smooth_trajectory
from .triangulation import triangulate_rays
from .uncertainty import uncertainty_to_weight

logger = logging.getLogger("worldtrack.tracker")


@dataclass(frozen=True)
class TrackerConfig:
    max_tracking_distance: float = 1.0
    confidence_decay_rate: float = 0.1
    min_confidence: float = 0.1
    max_confidence: float = 1.0
    # Share of the new estimate blended into the fused position per update.
    position_smoothing: float = 0.3
    confidence_gain: float = 0.1
    history_size: int = 10
    eviction_grace_ms: float = 3000.0
    # Share of the smoothed trajectory mixed into a triangulated estimate.
    trajectory_blend: float = 0.3
    trajectory_smoothing: float = 0.7
    min_triangulation_angle_deg: float = 1.0
    default_uncertainty: float = 0.1


def _wall_clock_ms() -> float:
    return time.time() * 1000.0


def _lerp(a: Sequence[float], b: Sequence[float], t: float) -> np.ndarray:
    start = np.asarray(a, dtype=np.float64)
    return start + (np.asarray(b, dtype=np.float64) - start) * t


def _vec(arr: np.ndarray) -> Vec3:
    return (float(arr[0]), float(arr[1]), float(arr[2]))


class _TrackState:
    __slots__ = (
        "object_id",
        "label",
        "fused_position",
        "capture_time_position",
        "history",
        "native_history",
        "native_fused_position",
        "confidence",
        "view_count",
        "last_seen_ms",
        "bbox",
        "mask_index",
        "camera_intrinsics",
        "depth",
        "is_video_mode",
    )

    def __init__(
        self,
        *,
        object_id: str,
        label: str,
        position: Vec3,
        confidence: float,
        now_ms: float,
        history_size: int,
        is_video_mode: bool,
    ) -> None:
        self.object_id = object_id
        self.label = label
        self.fused_position = np.asarray(position, dtype=np.float64)
        self.capture_time_position: Vec3 = position
        self.history: deque[PositionObservation] = deque(maxlen=history_size)
        self.native_history: deque[NativeObservation] = deque(maxlen=history_size)
        self.native_fused_position: Optional[np.ndarray] = None
        self.confidence = confidence
        self.view_count = 1
        self.last_seen_ms = now_ms
        self.bbox: Optional[BBox] = None
        self.mask_index: Optional[int] = None
        self.camera_intrinsics: Optional[CameraIntrinsics] = None
        self.depth: Optional[float] = None
        self.is_video_mode = is_video_mode

    def snapshot(self) -> TrackedObject:
        return TrackedObject(
            object_id=self.object_id,
            label=self.label,
            fused_position=_vec(self.fused_position),
            capture_time_position=self.capture_time_position,
            position_history=tuple(self.history),
            native_position_history=tuple(self.native_history),
            native_fused_position=None if self.native_fused_position is None else _vec(self.native_fused_position),
            confidence=self.confidence,
            view_count=self.view_count,
            last_seen_ms=self.last_seen_ms,
            bbox=self.bbox,
            mask_index=self.mask_index,
            camera_intrinsics=self.camera_intrinsics,
            depth=self.depth,
            is_video_mode=self.is_video_mode,
        )


class ObjectTracker:
    """Owns one map of tracked objects and one id namespace.

    Image-mode and video-mode tracking use two independent instances. All state
    changes go through the public methods, which return immutable events.
    """

    def __init__(
        self,
        config: TrackerConfig | None = None,
        *,
        video_mode: bool = False,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.config = config or TrackerConfig()
        self.video_mode = video_mode
        self._clock = clock or _wall_clock_ms
        self._lock = threading.RLock()
        self._tracks: dict[str, _TrackState] = {}
        self._next_id = 0

    @property
    def id_prefix(self) -> str:
        return "video_obj" if self.video_mode else "obj"

    def __len__(self) -> int:
        with self._lock:
            return len(self._tracks)

    def __contains__(self, object_id: object) -> bool:
        with self._lock:
            return object_id in self._tracks

    def get(self, object_id: str) -> Optional[TrackedObject]:
        with self._lock:
            track = self._tracks.get(object_id)
            return None if track is None else track.snapshot()

    def objects(self) -> dict[str, TrackedObject]:
        with self._lock:
            return {object_id: track.snapshot() for object_id, track in self._tracks.items()}

    def find_match(
        self,
        label: str,
        position: Sequence[float],
        exclude_ids: Iterable[str] = (),
    ) -> Optional[str]:
        """Closest same-label object within ``max_tracking_distance`` not already matched."""
        excluded = set(exclude_ids)
        point = np.asarray(position, dtype=np.float64)
        best_id: Optional[str] = None
        best_distance = math.inf
        with self._lock:
            for object_id, track in self._tracks.items():
                if track.label != label or object_id in excluded:
                    continue
                distance = float(np.linalg.norm(point - track.fused_position))
                if distance < self.config.max_tracking_distance and distance < best_distance:
                    best_id = object_id
                    best_distance = distance
        if best_id is not None:
            logger.debug(f"Match: {label} -> {best_id} ({best_distance:.2f}m)")
        return best_id

    def create(
        self,
        label: str,
        observation: PositionObservation,
        score: float,
        *,
        bbox: Optional[BBox] = None,
        mask_index: Optional[int] = None,
        intrinsics: Optional[CameraIntrinsics] = None,
        depth: Optional[float] = None,
        native: Optional[NativeEstimate] = None,
    ) -> TrackCreated:
        cfg = self.config
        with self._lock:
            now = self._clock()
            object_id = f"{self.id_prefix}_{self._next_id}"
            self._next_id += 1

            track = _TrackState(
                object_id=object_id,
                label=label,
                position=observation.position,
                confidence=min(max(score, 0.0), cfg.max_confidence),
                now_ms=now,
                history_size=cfg.history_size,
                is_video_mode=self.video_mode,
            )
            track.history.append(self._stamped(observation, now))
            track.bbox = None if bbox is None else tuple(bbox)
            track.mask_index = mask_index
            track.camera_intrinsics = intrinsics
            track.depth = depth
            if native is not None:
                track.native_history.append(NativeObservation(native.position, native.depth or 1.0, now))
                track.native_fused_position = np.asarray(native.position, dtype=np.float64)

            self._tracks[object_id] = track
            snapshot = track.snapshot()

        logger.info(f"[{'VIDEO' if self.video_mode else 'IMAGE'}] New: {label} ({object_id})")
        return TrackCreated(object_id=object_id, snapshot=snapshot)

    def update(
        self,
        object_id: str,
        observation: PositionObservation,
        score: float,
        *,
        bbox: Optional[BBox] = None,
        intrinsics: Optional[CameraIntrinsics] = None,
        depth: Optional[float] = None,
        native: Optional[NativeEstimate] = None,
    ) -> Optional[TrackUpdated]:
        """Fuse a new observation into an existing object.

        Returns ``None`` when the object no longer exists (e.g. a concurrent reset).
        """
        cfg = self.config
        with self._lock:
            track = self._tracks.get(object_id)
            if track is None:
                logger.debug(f"Update for unknown object {object_id} ignored")
                return None

            now = self._clock()
            track.history.append(self._stamped(observation, now))
            target = self._fusion_target(track, observation)
            track.fused_position = _lerp(track.fused_position, target, cfg.position_smoothing)

            track.confidence = min(max(track.confidence + score * cfg.confidence_gain, 0.0), cfg.max_confidence)
            track.view_count += 1
            track.last_seen_ms = now
            if depth is not None:
                track.depth = depth
            if native is not None:
                self._fuse_native(track, native, now)
            if intrinsics is not None:
                track.camera_intrinsics = intrinsics
            if bbox is not None:
                if track.bbox is None:
                    track.bbox = tuple(bbox)
                else:
                    track.bbox = tuple((old + new) * 0.5 for old, new in zip(track.bbox, bbox))

            snapshot = track.snapshot()

        return TrackUpdated(object_id=object_id, snapshot=snapshot)

    def observe(
        self,
        label: str,
        observation: PositionObservation,
        score: float,
        matched_ids: set[str],
        **details,
    ) -> Optional[TrackCreated | TrackUpdated]:
        """Match one detection and update or create; records the id in ``matched_ids``."""
        with self._lock:
            object_id = self.find_match(label, observation.position, matched_ids)
            if object_id is None:
                event: Optional[TrackCreated | TrackUpdated] = self.create(label, observation, score, **details)
            else:
                details.pop("mask_index", None)
                event = self.update(object_id, observation, score, **details)
        if event is not None:
            matched_ids.add(event.object_id)
        return event

    def decay(self, detected_labels: Iterable[str]) -> None:
        """Lower the confidence of every object whose label is absent from this batch."""
        present = set(detected_labels)
        with self._lock:
            for track in self._tracks.values():
                if track.label not in present:
                    track.confidence = max(0.0, track.confidence - self.config.confidence_decay_rate)

    def cleanup(self) -> list[TrackRemoved]:
        """Evict objects that are both below ``min_confidence`` and unseen past the grace period."""
        cfg = self.config
        removed: list[TrackRemoved] = []
        with self._lock:
            now = self._clock()
            stale = [
                track
                for track in self._tracks.values()
                if track.confidence < cfg.min_confidence and now - track.last_seen_ms > cfg.eviction_grace_ms
            ]
            for track in stale:
                del self._tracks[track.object_id]
                removed.append(TrackRemoved(object_id=track.object_id, label=track.label))
                logger.info(
                    f"Removing low-confidence object {track.object_id}: {track.label} "
                    f"(confidence: {track.confidence:.2f}, unseen for {(now - track.last_seen_ms) / 1000.0:.1f}s)"
                )
        return removed

    def reset(self) -> list[TrackRemoved]:
        """Drop every object and restart the id counter."""
        with self._lock:
            removed = [TrackRemoved(object_id=t.object_id, label=t.label) for t in self._tracks.values()]
            self._tracks.clear()
            self._next_id = 0
        logger.info(f"Reset {len(removed)} tracked objects")
        return removed

    def _stamped(self, observation: PositionObservation, now: float) -> PositionObservation:
        if observation.timestamp_ms:
            return observation
        return replace(observation, timestamp_ms=now)

    def _fusion_target(self, track: _TrackState, observation: PositionObservation) -> np.ndarray:
        cfg = self.config
        history = list(track.history)
        with_rays = [entry for entry in history if entry.ray is not None]

        if len(with_rays) >= 2 and self._triangulable(with_rays):
            rays = [replace(entry.ray, uncertainty=entry.uncertainty) for entry in with_rays]
            weights = [uncertainty_to_weight(entry.uncertainty) for entry in with_rays]
            result = triangulate_rays(rays, weights)
            if result.ok:
                smoothed = smooth_trajectory(history, cfg.trajectory_smoothing)
                logger.debug(
                    f"{track.object_id}: triangulated {len(rays)} rays, residual {result.uncertainty:.3f}m"
                )
                return _lerp(result.position, smoothed, cfg.trajectory_blend)

        count = len(history)
        total = 0.0
        accum = np.zeros(3, dtype=np.float64)
        for index, entry in enumerate(history):
            weight = track.confidence * (index + 1) / count * uncertainty_to_weight(entry.uncertainty)
            accum += np.asarray(entry.position, dtype=np.float64) * weight
            total += weight
        if total > 0.0:
            return accum / total
        return np.asarray(observation.position, dtype=np.float64)

    def _triangulable(self, entries: Sequence[PositionObservation]) -> bool:
        """Rays need some angular spread; near-parallel bundles only pin down their origins."""
        directions = np.asarray([entry.ray.direction for entry in entries], dtype=np.float64)
        cosines = np.clip(directions @ directions.T, -1.0, 1.0)
        spread = math.degrees(math.acos(float(cosines.min())))
        return spread >= self.config.min_triangulation_angle_deg

    def _fuse_native(self, track: _TrackState, native: NativeEstimate, now: float) -> None:
        cfg = self.config
        track.native_history.append(NativeObservation(native.position, native.depth or 1.0, now))

        history = list(track.native_history)
        count = len(history)
        total = 0.0
        accum = np.zeros(3, dtype=np.float64)
        for index, entry in enumerate(history):
            weight = track.confidence * (index + 1) / count / (entry.depth or 1.0)
            accum += np.asarray(entry.position, dtype=np.float64) * weight
            total += weight

        if total <= 0.0:
            average = np.asarray(native.position, dtype=np.float64)
        else:
            average = accum / total

        if track.native_fused_position is None:
            track.native_fused_position = average
            return
        smoothed = smooth_trajectory(history, cfg.trajectory_smoothing)
        target = _lerp(average, smoothed, cfg.trajectory_blend)
        track.native_fused_position = _lerp(track.native_fused_position, target, cfg.position_smoothing)
