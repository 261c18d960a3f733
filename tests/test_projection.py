from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from pointcloud_video.models import CameraIntrinsics, DepthFrame
from pointcloud_video.projection import Projector, project, project_parallel


def _sorted_rows(points: np.ndarray) -> np.ndarray:
    order = np.lexsort((points[:, 2], points[:, 1], points[:, 0]))
    return points[order]


def test_single_valid_cell(intrinsics):
    depth = np.zeros((3, 4), dtype=np.float32)
    depth[1, 2] = 2.0

    frame = project(depth, intrinsics)

    assert frame.num_points == 1
    # u=2, v=1: x = (2 - 1) * 2 / 2, y = (1 - 1) * 2 / 4, z = 2
    np.testing.assert_allclose(frame.points[0], [1.0, 0.0, 2.0])
    assert frame.points.dtype == np.float32


def test_all_zero_grid_is_empty_frame(intrinsics):
    frame = project(np.zeros((3, 4), dtype=np.float32), intrinsics)
    assert frame.num_points == 0
    assert frame.points.shape == (0, 3)


def test_invalid_samples_skipped(intrinsics):
    depth = np.array(
        [
            [np.nan, -1.0, 0.0, np.inf],
            [1.0, 0.0, 0.0, 0.0],
            [0.0, 0.0, 0.0, 3.0],
        ],
        dtype=np.float32,
    )
    frame = project(depth, intrinsics)
    assert frame.num_points == 2
    # row-major: (u=0, v=1) first, then (u=3, v=2)
    np.testing.assert_allclose(frame.points[0], [-0.5, 0.0, 1.0])
    np.testing.assert_allclose(frame.points[1], [3.0, 0.75, 3.0])


def test_resolution_mismatch_rejected(intrinsics):
    with pytest.raises(ValueError, match="does not match"):
        project(np.ones((6, 8), dtype=np.float32), intrinsics)


def test_integer_depth_rejected(intrinsics):
    with pytest.raises(ValueError, match="float"):
        project(np.ones((3, 4), dtype=np.uint16), intrinsics)


def test_stride_keeps_full_grid_coordinates(intrinsics):
    depth = np.ones((3, 4), dtype=np.float32)
    frame = project(depth, intrinsics, stride=2)

    # Sampled cells: (u, v) in {0, 2} x {0, 2}
    assert frame.num_points == 4
    np.testing.assert_allclose(frame.points[:, 0], [-0.5, 0.5, -0.5, 0.5])
    np.testing.assert_allclose(frame.points[:, 1], [-0.25, -0.25, 0.25, 0.25])


def test_parallel_matches_serial_multiset():
    rng = np.random.default_rng(7)
    depth = rng.uniform(0.2, 4.0, size=(48, 64)).astype(np.float32)
    depth[rng.random(depth.shape) < 0.3] = 0.0
    intrinsics = CameraIntrinsics(fx=50.0, fy=50.0, cx=32.0, cy=24.0, width=64, height=48)

    serial = project(depth, intrinsics)
    with ThreadPoolExecutor(max_workers=4) as executor:
        parallel = project_parallel(depth, intrinsics, executor, num_bands=7)

    assert parallel.num_points == serial.num_points
    np.testing.assert_array_equal(_sorted_rows(parallel.points), _sorted_rows(serial.points))


def test_parallel_all_invalid(intrinsics):
    with ThreadPoolExecutor(max_workers=2) as executor:
        frame = project_parallel(np.zeros((3, 4), dtype=np.float32), intrinsics, executor, num_bands=8)
    assert frame.num_points == 0


def test_projector_with_workers(intrinsics):
    depth = np.full((3, 4), 1.5, dtype=np.float32)
    with Projector(workers=2) as projector:
        frame = projector.project(DepthFrame(depth=depth, intrinsics=intrinsics, timestamp=0.5), frame_index=3)

    assert frame.num_points == 12
    assert frame.frame_index == 3
    assert frame.timestamp == 0.5


def test_projector_rejects_bad_settings():
    with pytest.raises(ValueError):
        Projector(stride=0)
    with pytest.raises(ValueError):
        Projector(workers=0)
