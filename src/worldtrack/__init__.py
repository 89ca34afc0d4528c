"""worldtrack -- 2-D detections + depth maps -> identity-preserving 3-D world tracks.

Core modules:
  - model:            Data model (Detection, CameraIntrinsics, Ray, tracking events, ...)
  - vision:           Pinhole back-projection, quaternions, camera/headset frames
  - point_cloud:      Depth encoding, masked unprojection, DBSCAN outlier removal
  - pca:              Jacobi eigen-decomposition and oriented extents
  - uncertainty:      Scalar uncertainty model and fusion weights
  - triangulation:    1/2/N-ray triangulation
  - trajectory:       History smoothing and extrapolation
  - depth_quality:    Depth-map quality score
  - occlusion:        Border/hole/foreground occlusion tests
  - depth_processor:  Per-detection world position (server depth + native hit tests)
  - tracker:          Match/create/update/decay/evict state machine
  - pipeline:         One detection batch -> tracking events
  - config:           Aggregated configuration and environment overrides
"""

from .config import WorldtrackConfig, from_env
from .depth_processor import (
    DepthProcessor,
    DepthProcessorConfig,
    NativeDepthConfig,
    load_depth_map,
    load_mask,
)
from .depth_quality import DepthQualityConfig, DepthQualityReport, assess_depth_quality, is_depth_quality_sufficient
from .model import (
    CameraExtrinsics,
    CameraIntrinsics,
    Detection,
    HeadTransform,
    NativeDepthSample,
    NativeEstimate,
    PositionEstimate,
    PositionObservation,
    Ray,
    TrackCreated,
    TrackedObject,
    TrackingEvent,
    TrackRemoved,
    TrackUpdated,
)
from .occlusion import OcclusionConfig, OcclusionReport, check_occlusion
from .pca import PCAResult, bounding_box_from_pca, compute_pca, jacobi_eigendecomposition
from .pipeline import BatchResult, FrameInput, TrackingPipeline
from .point_cloud import DepthEncoding, construct_point_cloud_from_mask, filter_valid_points, remove_outliers
from .tracker import ObjectTracker, TrackerConfig
from .triangulation import TriangulationResult, closest_point_between_rays, triangulate_rays
from .uncertainty import (
    combine_sam3_confidence,
    combine_uncertainties,
    estimate_depth_uncertainty,
    propagate_uncertainty,
    uncertainty_to_weight,
)

__all__ = [
    # model
    "CameraExtrinsics",
    "CameraIntrinsics",
    "Detection",
    "HeadTransform",
    "NativeDepthSample",
    "NativeEstimate",
    "PositionEstimate",
    "PositionObservation",
    "Ray",
    "TrackCreated",
    "TrackRemoved",
    "TrackUpdated",
    "TrackedObject",
    "TrackingEvent",
    # processing
    "BatchResult",
    "DepthEncoding",
    "DepthProcessor",
    "DepthProcessorConfig",
    "DepthQualityConfig",
    "DepthQualityReport",
    "FrameInput",
    "NativeDepthConfig",
    "ObjectTracker",
    "OcclusionConfig",
    "OcclusionReport",
    "PCAResult",
    "TrackerConfig",
    "TrackingPipeline",
    "TriangulationResult",
    "WorldtrackConfig",
    # functions
    "assess_depth_quality",
    "bounding_box_from_pca",
    "check_occlusion",
    "closest_point_between_rays",
    "combine_sam3_confidence",
    "combine_uncertainties",
    "compute_pca",
    "construct_point_cloud_from_mask",
    "estimate_depth_uncertainty",
    "filter_valid_points",
    "from_env",
    "is_depth_quality_sufficient",
    "jacobi_eigendecomposition",
    "load_depth_map",
    "load_mask",
    "propagate_uncertainty",
    "remove_outliers",
    "triangulate_rays",
    "uncertainty_to_weight",
]
