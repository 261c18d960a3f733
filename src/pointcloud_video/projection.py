"""Depth grid to point cloud projection.

Each depth sample at column ``u``, row ``v`` with depth ``d > 0`` becomes the
camera-space point::

    x = (u - cx) * d / fx
    y = (v - cy) * d / fy
    z = d

Invalid samples (zero, negative, NaN, inf) are skipped without error, so the
output size is data dependent and an all-invalid grid yields an empty frame.

The serial projector emits points in row-major scan order. The parallel
projector splits the grid into row bands and compacts the per-band results
into one buffer through a shared append cursor; band order in the output is
whatever order the workers finish in, but every valid sample is represented
exactly once.
"""

from __future__ import annotations

import threading
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Optional

import numpy as np

from .models import CameraIntrinsics, DepthFrame, PointCloudFrame, RecordingConfig


def _check_grid(depth: np.ndarray, intrinsics: CameraIntrinsics) -> np.ndarray:
    depth = np.asarray(depth)
    if depth.ndim != 2:
        raise ValueError(f"Depth grid must be 2-D, got shape {depth.shape}")
    if not np.issubdtype(depth.dtype, np.floating):
        raise ValueError(f"Depth grid must hold float meters, got dtype {depth.dtype}")
    if depth.shape != (intrinsics.height, intrinsics.width):
        raise ValueError(
            f"Depth grid {depth.shape[1]}x{depth.shape[0]} does not match intrinsics "
            f"resolution {intrinsics.width}x{intrinsics.height}; scale the intrinsics first"
        )
    return depth


def _project_block(
    depth: np.ndarray,
    rows: np.ndarray,
    cols: np.ndarray,
    intrinsics: CameraIntrinsics,
) -> np.ndarray:
    """Project a (possibly subsampled) block of the grid.

    Args:
        depth: Depth block [len(rows), len(cols)].
        rows: Full-grid row coordinate (v) of each block row.
        cols: Full-grid column coordinate (u) of each block column.
        intrinsics: Intrinsics of the full grid.

    Returns:
        Points [N, 3] float32 in row-major order of the block.
    """
    valid = np.isfinite(depth) & (depth > 0)
    vi, ui = np.nonzero(valid)
    if vi.size == 0:
        return np.zeros((0, 3), dtype=np.float32)

    d = depth[vi, ui].astype(np.float64)
    u = cols[ui].astype(np.float64)
    v = rows[vi].astype(np.float64)

    points = np.empty((d.size, 3), dtype=np.float32)
    points[:, 0] = (u - intrinsics.cx) * d / intrinsics.fx
    points[:, 1] = (v - intrinsics.cy) * d / intrinsics.fy
    points[:, 2] = d
    return points


def project(
    depth: np.ndarray,
    intrinsics: CameraIntrinsics,
    frame_index: int = 0,
    timestamp: float = 0.0,
    stride: int = 1,
) -> PointCloudFrame:
    """Project a depth grid into a point cloud frame (row-major order).

    Args:
        depth: Depth grid [H, W] in meters.
        intrinsics: Intrinsics scaled to the depth grid resolution.
        frame_index: Index stored on the resulting frame.
        timestamp: Capture timestamp stored on the resulting frame.
        stride: Sample every ``stride``-th row and column.

    Returns:
        PointCloudFrame with one point per valid sampled cell.
    """
    if stride < 1:
        raise ValueError(f"stride must be >= 1, got {stride}")
    depth = _check_grid(depth, intrinsics)

    rows = np.arange(0, depth.shape[0], stride)
    cols = np.arange(0, depth.shape[1], stride)
    points = _project_block(depth[::stride, ::stride], rows, cols, intrinsics)
    return PointCloudFrame(points=points, frame_index=frame_index, timestamp=timestamp)


class _AppendCursor:
    """Shared write position into the compacted output buffer."""

    def __init__(self):
        self._lock = threading.Lock()
        self._position = 0

    def reserve(self, count: int) -> int:
        """Reserve ``count`` slots and return the first one."""
        with self._lock:
            start = self._position
            self._position += count
            return start

    @property
    def position(self) -> int:
        with self._lock:
            return self._position


def project_parallel(
    depth: np.ndarray,
    intrinsics: CameraIntrinsics,
    executor: Executor,
    num_bands: int,
    frame_index: int = 0,
    timestamp: float = 0.0,
    stride: int = 1,
) -> PointCloudFrame:
    """Project a depth grid using row bands processed on an executor.

    Produces the same multiset of points as ``project``; only the relative
    order of bands may differ.

    Args:
        depth: Depth grid [H, W] in meters.
        intrinsics: Intrinsics scaled to the depth grid resolution.
        executor: Executor running the band jobs.
        num_bands: Number of row bands to split the grid into.
        frame_index: Index stored on the resulting frame.
        timestamp: Capture timestamp stored on the resulting frame.
        stride: Sample every ``stride``-th row and column.
    """
    if stride < 1:
        raise ValueError(f"stride must be >= 1, got {stride}")
    depth = _check_grid(depth, intrinsics)

    sampled = depth[::stride, ::stride]
    rows = np.arange(0, depth.shape[0], stride)
    cols = np.arange(0, depth.shape[1], stride)

    # Worst case every sampled cell is valid
    output = np.empty((sampled.size, 3), dtype=np.float32)
    cursor = _AppendCursor()

    def run_band(band_rows: np.ndarray) -> None:
        if band_rows.size == 0:
            return
        r0, r1 = int(band_rows[0]), int(band_rows[-1]) + 1
        band_points = _project_block(sampled[r0:r1], rows[r0:r1], cols, intrinsics)
        start = cursor.reserve(band_points.shape[0])
        output[start:start + band_points.shape[0]] = band_points

    bands = np.array_split(np.arange(sampled.shape[0]), max(1, min(num_bands, sampled.shape[0])))
    futures = [executor.submit(run_band, band) for band in bands]
    for future in futures:
        future.result()

    points = output[:cursor.position].copy()
    return PointCloudFrame(points=points, frame_index=frame_index, timestamp=timestamp)


class Projector:
    """Projects sensor ticks into point cloud frames.

    With ``workers > 1`` the projection runs on a private thread pool; call
    ``close()`` (or use as a context manager) to release it.
    """

    def __init__(self, stride: int = 1, workers: int = 1):
        if stride < 1:
            raise ValueError(f"stride must be >= 1, got {stride}")
        if workers < 1:
            raise ValueError(f"workers must be >= 1, got {workers}")
        self.stride = stride
        self.workers = workers
        self._executor: Optional[ThreadPoolExecutor] = None
        if workers > 1:
            self._executor = ThreadPoolExecutor(
                max_workers=workers, thread_name_prefix="projector"
            )

    @classmethod
    def from_config(cls, config: RecordingConfig) -> "Projector":
        return cls(stride=config.projection_stride, workers=config.projection_workers)

    def project(self, frame: DepthFrame, frame_index: int = 0) -> PointCloudFrame:
        if self._executor is None:
            return project(
                frame.depth,
                frame.intrinsics,
                frame_index=frame_index,
                timestamp=frame.timestamp,
                stride=self.stride,
            )
        return project_parallel(
            frame.depth,
            frame.intrinsics,
            self._executor,
            num_bands=self.workers * 4,
            frame_index=frame_index,
            timestamp=frame.timestamp,
            stride=self.stride,
        )

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def __enter__(self) -> "Projector":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
