from __future__ import annotations

import math

import cv2
import numpy as np
import pytest

from worldtrack.depth_processor import (
    DepthProcessor,
    DepthProcessorConfig,
    NativeDepthConfig,
    load_depth_map,
    load_mask,
)
from worldtrack.model import (
    CameraExtrinsics,
    Detection,
    HeadTransform,
    NativeDepthSample,
)
from worldtrack.point_cloud import DepthEncoding
from worldtrack.uncertainty import combine_uncertainties

ENCODING = DepthEncoding()
WIDTH, HEIGHT = 640, 480


def _uniform_depth(depth_m: float = 1.2) -> np.ndarray:
    return np.full((HEIGHT, WIDTH), ENCODING.encode(depth_m))


def _yaw(degrees: float):
    half = math.radians(degrees) / 2.0
    return (0.0, math.sin(half), 0.0, math.cos(half))


@pytest.fixture
def processor() -> DepthProcessor:
    return DepthProcessor()


@pytest.fixture
def detection() -> Detection:
    return Detection(label="cup", score=0.9, bbox=(100.0, 100.0, 200.0, 200.0))


class TestBBoxCenter:
    def test_identity_head(self, processor, detection, intrinsics) -> None:
        estimate = processor.calculate_world_position(
            detection, _uniform_depth(), WIDTH, HEIGHT, HeadTransform(), intrinsics
        )

        assert estimate is not None
        assert estimate.method == "bbox_center"
        assert estimate.camera_point == pytest.approx((-0.408, -0.216, 1.2), abs=1e-9)
        assert estimate.position == pytest.approx((-0.408, 0.216, -1.2), abs=1e-9)
        assert estimate.depth == pytest.approx(1.2)
        assert estimate.ray.origin == pytest.approx((0.0, 0.0, 0.0))
        assert estimate.ray.endpoint == pytest.approx(estimate.position, abs=1e-9)
        assert estimate.uncertainty == pytest.approx(combine_uncertainties(0.1 * (2.0 - 1.5 * 0.9)))

    def test_head_pose_moves_point_and_ray(self, processor, detection, intrinsics) -> None:
        head = HeadTransform(position=(1.0, 1.6, 0.0), rotation=_yaw(90.0))

        estimate = processor.calculate_world_position(detection, _uniform_depth(), WIDTH, HEIGHT, head, intrinsics)

        assert estimate.position == pytest.approx((-0.2, 1.816, 0.408), abs=1e-9)
        assert estimate.camera_position == pytest.approx((1.0, 1.6, 0.0))
        assert estimate.ray.endpoint == pytest.approx(estimate.position, abs=1e-9)

    def test_head_matrix_is_used(self, processor, detection, intrinsics) -> None:
        matrix = [[0.0, 0.0, 1.0, 0.0], [0.0, 1.0, 0.0, 0.0], [-1.0, 0.0, 0.0, 0.0], [0.0, 0.0, 0.0, 1.0]]
        head = HeadTransform(position=(1.0, 1.6, 0.0), matrix=matrix)

        estimate = processor.calculate_world_position(detection, _uniform_depth(), WIDTH, HEIGHT, head, intrinsics)

        assert estimate.position == pytest.approx((-0.2, 1.816, 0.408), abs=1e-9)

    def test_camera_offset_from_headset(self, processor, detection, intrinsics) -> None:
        extrinsics = CameraExtrinsics(translation=(0.05, 0.0, 0.0))

        estimate = processor.calculate_world_position(
            detection, _uniform_depth(), WIDTH, HEIGHT, HeadTransform(), intrinsics, extrinsics
        )

        assert estimate.position == pytest.approx((-0.358, 0.216, -1.2), abs=1e-9)
        assert estimate.ray.origin == pytest.approx((0.05, 0.0, 0.0))
        assert estimate.ray.endpoint == pytest.approx(estimate.position, abs=1e-9)

    def test_missing_intrinsics_assume_field_of_view(self, processor) -> None:
        centered = Detection(label="cup", score=0.9, bbox=(300.0, 220.0, 340.0, 260.0))

        estimate = processor.calculate_world_position(centered, _uniform_depth(), WIDTH, HEIGHT, HeadTransform())

        assert estimate.camera_point == pytest.approx((0.0, 0.0, 1.2), abs=1e-9)

    def test_no_depth_map(self, processor, detection) -> None:
        assert processor.calculate_world_position(detection, None, WIDTH, HEIGHT, HeadTransform()) is None

    def test_sample_outside_depth_map(self, processor, intrinsics) -> None:
        outside = Detection(label="cup", score=0.9, bbox=(700.0, 100.0, 800.0, 200.0))

        assert processor.calculate_world_position(outside, _uniform_depth(), WIDTH, HEIGHT, HeadTransform(), intrinsics) is None


class TestMaskedDepth:
    def test_clean_mask_uses_point_cloud(self, processor, intrinsics) -> None:
        mask = np.zeros((HEIGHT, WIDTH), dtype=np.uint8)
        mask[200:280, 280:360] = 255
        detection = Detection(label="book", score=0.9, bbox=(280.0, 200.0, 360.0, 280.0), mask_index=0)

        estimate = processor.calculate_world_position(
            detection, _uniform_depth(), WIDTH, HEIGHT, HeadTransform(), intrinsics, mask=mask
        )

        assert estimate.method == "point_cloud"
        assert estimate.occlusion_reasons == ()
        assert estimate.quality_score == pytest.approx(1.0)
        assert estimate.camera_point == pytest.approx((-0.0024, -0.0024, 1.2), abs=1e-9)
        assert estimate.position == pytest.approx((-0.0024, 0.0024, -1.2), abs=1e-9)
        assert estimate.uncertainty == pytest.approx(combine_uncertainties(0.02 * (2.0 - 1.5 * 0.9)))

    def test_truncated_mask_falls_back_to_single_pixel(self, processor, intrinsics) -> None:
        mask = np.zeros((HEIGHT, WIDTH), dtype=np.uint8)
        mask[200:280, 0:80] = 255
        detection = Detection(label="book", score=0.9, bbox=(0.0, 200.0, 80.0, 280.0), mask_index=0)

        estimate = processor.calculate_world_position(
            detection, _uniform_depth(), WIDTH, HEIGHT, HeadTransform(), intrinsics, mask=mask
        )

        assert estimate.method == "single_pixel"
        assert "border" in estimate.occlusion_reasons
        # sample at the center of the mask's extreme points
        assert estimate.camera_point == pytest.approx(((39.5 - 320.0) / 500.0 * 1.2, -0.0012, 1.2), abs=1e-9)

    def test_noisy_depth_falls_back_to_single_pixel(self, processor, intrinsics) -> None:
        rng = np.random.default_rng(5)
        depth = rng.uniform(0.3, 0.7, size=(HEIGHT, WIDTH))
        mask = np.zeros((HEIGHT, WIDTH), dtype=np.uint8)
        mask[200:280, 280:360] = 255
        detection = Detection(label="book", score=0.9, bbox=(280.0, 200.0, 360.0, 280.0), mask_index=0)

        estimate = processor.calculate_world_position(
            detection, depth, WIDTH, HEIGHT, HeadTransform(), intrinsics, mask=mask
        )

        assert estimate.method == "single_pixel"
        assert estimate.quality_score < 1.0


class TestImageLoading:
    def test_grayscale_png_bytes(self) -> None:
        gray = np.full((48, 64), 200, dtype=np.uint8)
        ok, encoded = cv2.imencode(".png", gray)
        assert ok

        depth = load_depth_map(encoded.tobytes())

        assert depth.shape == (48, 64)
        assert depth[0, 0] == pytest.approx(200 / 255)

    def test_color_png_reads_red_channel(self) -> None:
        bgr = np.zeros((8, 8, 3), dtype=np.uint8)
        bgr[:, :, 2] = 51
        ok, encoded = cv2.imencode(".png", bgr)
        assert ok

        assert load_depth_map(encoded.tobytes())[3, 3] == pytest.approx(0.2)

    def test_rgb_array_reads_first_channel(self) -> None:
        rgb = np.zeros((4, 4, 3), dtype=np.uint8)
        rgb[:, :, 0] = 255
        assert load_depth_map(rgb)[0, 0] == pytest.approx(1.0)

    def test_mask_prefers_informative_alpha(self) -> None:
        rgba = np.zeros((4, 4, 4), dtype=np.uint8)
        rgba[:, :, 0] = 255
        rgba[1:3, 1:3, 3] = 255

        mask = load_mask(rgba)

        assert mask[0, 0] == 0
        assert mask[1, 1] == 255

    def test_mask_with_opaque_alpha_reads_red(self) -> None:
        rgba = np.zeros((4, 4, 4), dtype=np.uint8)
        rgba[:, :, 3] = 255
        rgba[0, 0, 0] = 128

        mask = load_mask(rgba)

        assert mask[0, 0] == 128
        assert mask[1, 1] == 0

    def test_float_mask_is_scaled(self) -> None:
        assert load_mask(np.full((2, 2), 0.5))[0, 0] == 128

    def test_undecodable_bytes(self) -> None:
        with pytest.raises(ValueError):
            load_depth_map(b"not an image")


class TestNativeDepth:
    def _samples(self, *samples: NativeDepthSample) -> dict[str, NativeDepthSample]:
        return {f"{s.pixel_x},{s.pixel_y}": s for s in samples}

    def test_no_samples(self, processor, detection) -> None:
        assert not processor.has_captured_depth_data
        assert processor.calculate_native_depth_position(detection, WIDTH, HEIGHT) is None

    def test_averages_samples_inside_bbox(self, processor, detection) -> None:
        processor.set_captured_depth_data(
            self._samples(
                NativeDepthSample(position=(0.1, -1.0, -2.0), depth=2.0, pixel_x=150, pixel_y=150),
                NativeDepthSample(position=(0.3, -1.2, -2.2), depth=2.2, pixel_x=180, pixel_y=120),
                NativeDepthSample(position=(9.0, 9.0, 9.0), depth=9.0, pixel_x=400, pixel_y=400),
            )
        )

        estimate = processor.calculate_native_depth_position(detection, WIDTH, HEIGHT)

        assert estimate.sample_count == 2
        assert estimate.position == pytest.approx((0.2, 1.1, -2.1))
        assert estimate.depth == pytest.approx(2.1)
        assert not estimate.clamped

    def test_vertical_position_is_clamped(self, processor, detection) -> None:
        processor.set_captured_depth_data(
            self._samples(NativeDepthSample(position=(0.0, -3.0, -1.0), depth=1.0, pixel_x=150, pixel_y=150))
        )

        estimate = processor.calculate_native_depth_position(detection, WIDTH, HEIGHT)

        assert estimate.clamped
        assert estimate.position[1] == pytest.approx(2.5)

    def test_flip_z_option(self, detection) -> None:
        processor = DepthProcessor(DepthProcessorConfig(native=NativeDepthConfig(flip_y=False, flip_z=True)))
        processor.set_captured_depth_data(
            self._samples(NativeDepthSample(position=(0.0, 1.0, -1.0), depth=1.0, pixel_x=150, pixel_y=150))
        )

        estimate = processor.calculate_native_depth_position(detection, WIDTH, HEIGHT)

        assert estimate.position == pytest.approx((0.0, 1.0, 1.0))

    def test_mask_rejects_samples(self, processor, detection) -> None:
        processor.set_captured_depth_data(
            self._samples(NativeDepthSample(position=(0.0, -1.0, -1.0), depth=1.0, pixel_x=150, pixel_y=150))
        )
        empty_mask = np.zeros((HEIGHT, WIDTH), dtype=np.uint8)

        assert processor.calculate_native_depth_position(detection, WIDTH, HEIGHT, empty_mask) is None

    def test_clearing_samples(self, processor) -> None:
        processor.set_captured_depth_data(
            self._samples(NativeDepthSample(position=(0.0, 0.0, -1.0), depth=1.0, pixel_x=1, pixel_y=1))
        )
        assert processor.has_captured_depth_data

        processor.set_captured_depth_data(None)

        assert not processor.has_captured_depth_data


def test_depth_encoding_can_be_changed(processor) -> None:
    processor.set_depth_encoding(near=0.5, far=4.5, inverted=False)

    assert processor.decode_depth_value(0.5) == pytest.approx(2.5)
    assert processor.config.occlusion.encoding == processor.encoding


@pytest.mark.parametrize("payload", [b"", bytearray()])
def test_empty_image_buffer_is_a_value_error(payload) -> None:
    with pytest.raises(ValueError):
        load_depth_map(payload)
    with pytest.raises(ValueError):
        load_mask(payload)
