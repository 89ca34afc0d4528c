from __future__ import annotations

import numpy as np
import pytest

from worldtrack.point_cloud import (
    DepthEncoding,
    construct_point_cloud_from_mask,
    dbscan_labels,
    filter_valid_points,
    remove_outliers,
)


@pytest.mark.parametrize("inverted", [True, False])
@pytest.mark.parametrize("depth_m", [0.25, 0.8, 1.7, 2.5])
def test_encoding_round_trip(inverted: bool, depth_m: float) -> None:
    encoding = DepthEncoding(near=0.25, far=2.5, inverted=inverted)
    assert encoding.decode(encoding.encode(depth_m)) == pytest.approx(depth_m)


def test_inverted_encoding_puts_near_plane_at_white() -> None:
    encoding = DepthEncoding()
    assert encoding.decode(1.0) == pytest.approx(0.25)
    assert encoding.decode(0.0) == pytest.approx(2.5)
    assert encoding.encode(10.0) == 0.0


def test_encoding_rejects_bad_range() -> None:
    with pytest.raises(ValueError):
        DepthEncoding(near=2.0, far=1.0)


def test_filter_valid_points_drops_out_of_range_and_nan() -> None:
    points = np.array(
        [
            [0.0, 0.0, 1.0],
            [0.0, 0.0, 0.05],
            [0.0, 0.0, 3.0],
            [np.nan, 0.0, 1.0],
        ]
    )
    np.testing.assert_array_equal(filter_valid_points(points), points[:1])
    assert filter_valid_points(np.empty((0, 3))).shape == (0, 3)


class TestConstructPointCloud:
    def test_unprojects_masked_pixels(self, intrinsics) -> None:
        encoding = DepthEncoding()
        depth = np.full((480, 640), encoding.encode(1.0))
        mask = np.zeros((480, 640), dtype=np.uint8)
        mask[238:242, 318:322] = 255

        points = construct_point_cloud_from_mask(mask, depth, intrinsics, 640, 480, encoding=encoding)

        assert points.shape == (16, 3)
        np.testing.assert_allclose(points[:, 2], 1.0, atol=1e-9)
        center = points[(points[:, 0] == 0.0) & (points[:, 1] == 0.0)]
        assert len(center) == 1

    def test_threshold_is_inclusive(self, intrinsics) -> None:
        depth = np.full((480, 640), 0.5)
        mask = np.zeros((480, 640), dtype=np.uint8)
        mask[100, 100] = 128
        mask[100, 101] = 127

        points = construct_point_cloud_from_mask(mask, depth, intrinsics, 640, 480)

        assert len(points) == 1

    def test_depth_map_at_lower_resolution(self, intrinsics) -> None:
        encoding = DepthEncoding()
        depth = np.full((240, 320), encoding.encode(2.0))
        depth[:, 160:] = encoding.encode(1.0)
        mask = np.zeros((480, 640), dtype=np.uint8)
        mask[200:210, 300:340] = 255

        points = construct_point_cloud_from_mask(mask, depth, intrinsics, 640, 480, encoding=encoding)

        left = points[points[:, 0] < 0.0]
        right = points[points[:, 0] >= 0.0]
        np.testing.assert_allclose(left[:, 2], 2.0, atol=1e-9)
        np.testing.assert_allclose(right[:, 2], 1.0, atol=1e-9)

    def test_sample_step_subsamples(self, intrinsics) -> None:
        depth = np.full((480, 640), 0.5)
        mask = np.zeros((480, 640), dtype=np.uint8)
        mask[100:120, 100:120] = 255

        dense = construct_point_cloud_from_mask(mask, depth, intrinsics, 640, 480, sample_step=1)
        sparse = construct_point_cloud_from_mask(mask, depth, intrinsics, 640, 480, sample_step=2)

        assert len(dense) == 400
        assert len(sparse) == 100

    def test_empty_mask_gives_empty_cloud(self, intrinsics) -> None:
        points = construct_point_cloud_from_mask(
            np.zeros((48, 64), dtype=np.uint8), np.full((48, 64), 0.5), intrinsics, 640, 480
        )
        assert points.shape == (0, 3)


def _grid_cluster(center, count_per_axis: int = 5, spacing: float = 0.01) -> np.ndarray:
    axis = (np.arange(count_per_axis) - count_per_axis // 2) * spacing
    xs, ys = np.meshgrid(axis, axis)
    flat = np.stack([xs.ravel(), ys.ravel(), np.zeros(xs.size)], axis=1)
    return flat + np.asarray(center)


def test_dbscan_marks_isolated_points_as_noise() -> None:
    cluster = _grid_cluster((0.0, 0.0, 1.0))
    outliers = np.array([[0.5, 0.5, 1.5], [-0.4, 0.2, 0.9]])

    labels = dbscan_labels(np.vstack([cluster, outliers]))

    assert set(labels[: len(cluster)]) == {0}
    assert list(labels[len(cluster) :]) == [-1, -1]


def test_remove_outliers_keeps_largest_cluster() -> None:
    main = _grid_cluster((0.0, 0.0, 1.0), count_per_axis=7)
    minor = _grid_cluster((0.3, 0.0, 1.0), count_per_axis=3)
    stray = np.array([[1.0, 1.0, 2.0]])

    kept = remove_outliers(np.vstack([minor, stray, main]))

    assert len(kept) == len(main)
    np.testing.assert_allclose(kept.mean(axis=0), [0.0, 0.0, 1.0], atol=1e-12)


def test_remove_outliers_returns_input_without_clusters() -> None:
    scattered = np.array([[0.0, 0.0, 1.0], [1.0, 0.0, 1.0], [0.0, 1.0, 1.0], [1.0, 1.0, 1.0]])
    np.testing.assert_array_equal(remove_outliers(scattered), scattered)
    np.testing.assert_array_equal(remove_outliers(scattered[:2]), scattered[:2])
