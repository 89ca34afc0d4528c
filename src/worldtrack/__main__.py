from __future__ import annotations

import argparse
import logging

import numpy as np

from .config import from_env
from .model import CameraIntrinsics, Detection, HeadTransform, TrackCreated, TrackRemoved
from .pipeline import FrameInput, TrackingPipeline


_DETECTION = {"label": "book", "score": 0.9, "bbox": [260, 180, 380, 300], "maskIndex": 0}


def _synthetic_frame(width: int, height: int, depth_m: float, encoding) -> tuple[np.ndarray, np.ndarray]:
    depth = np.full((height, width), float(encoding.encode(encoding.far)), dtype=np.float64)
    mask = np.zeros((height, width), dtype=np.uint8)
    depth[180:300, 260:380] = float(encoding.encode(depth_m))
    mask[180:300, 260:380] = 255
    return depth, mask


def main() -> None:
    parser = argparse.ArgumentParser(description="Track a synthetic object through a few detection batches.")
    parser.add_argument("--frames", type=int, default=5, help="Number of detection batches to run")
    parser.add_argument("--depth", type=float, default=1.2, help="Object depth in meters")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = from_env()
    pipeline = TrackingPipeline(config)
    width, height = 640, 480
    intrinsics = CameraIntrinsics(fx=500.0, fy=500.0, cx=320.0, cy=240.0)
    depth, mask = _synthetic_frame(width, height, args.depth, config.depth.encoding)

    for frame_index in range(args.frames):
        head_x = 0.02 * frame_index
        frame = FrameInput(
            detections=(Detection.from_mapping(_DETECTION),),
            image_width=width,
            image_height=height,
            head_transform=HeadTransform(position=(head_x, 1.6, 0.0)),
            depth_map=depth,
            masks=(mask,),
            intrinsics=intrinsics,
        )
        result = pipeline.process(frame)
        for event in result.events:
            if isinstance(event, TrackRemoved):
                print(f"frame={frame_index} removed {event.object_id}")
                continue
            kind = "created" if isinstance(event, TrackCreated) else "updated"
            x, y, z = event.snapshot.fused_position
            print(
                f"frame={frame_index} {kind} {event.object_id} "
                f"pos=({x:.3f}, {y:.3f}, {z:.3f}) conf={event.snapshot.confidence:.2f}"
            )


if __name__ == "__main__":
    main()
