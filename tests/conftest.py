from __future__ import annotations

import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable, Optional

import numpy as np
import pytest

from pointcloud_video.bundle import BundleWriter
from pointcloud_video.codec import CodecError, FrameCodec
from pointcloud_video.models import (
    CameraIntrinsics,
    GeometryKind,
    PointCloudFrame,
    QualityTier,
    RecordingConfig,
)

RECORDING_START = datetime(2025, 3, 12, 14, 25, 1)


class FakeCodec(FrameCodec):
    """Deterministic codec storing raw float32 positions behind a magic prefix.

    Args:
        fail_on: Frame indices whose encode raises CodecError.
        gate: If given, encode blocks until the event is set.
    """

    MAGIC = b"FAKEPC"

    def __init__(self, fail_on: Iterable[int] = (), gate: Optional[threading.Event] = None):
        self.fail_on = set(fail_on)
        self.gate = gate
        self.encoded = []
        self._lock = threading.Lock()

    @property
    def file_extension(self) -> str:
        return "drc"

    def encode(self, frame: PointCloudFrame, tier: QualityTier) -> bytes:
        if self.gate is not None:
            self.gate.wait()
        if frame.frame_index in self.fail_on:
            raise CodecError(f"forced failure for frame {frame.frame_index}")
        with self._lock:
            self.encoded.append((frame.frame_index, tier))
        return self.MAGIC + np.ascontiguousarray(frame.points, dtype=np.float32).tobytes()

    def decode(self, data: bytes, frame_index: int = 0) -> PointCloudFrame:
        if self.probe(data) != GeometryKind.POINT_CLOUD:
            raise CodecError("not a fake point cloud")
        body = data[len(self.MAGIC):]
        if len(body) % 12:
            raise CodecError("truncated payload")
        points = np.frombuffer(body, dtype=np.float32).reshape(-1, 3).copy()
        return PointCloudFrame(points=points, frame_index=frame_index)

    def probe(self, data: bytes) -> GeometryKind:
        if data.startswith(self.MAGIC):
            return GeometryKind.POINT_CLOUD
        return GeometryKind.INVALID


class SteppingClock:
    """Clock that advances one second per call, so every bundle name is unique."""

    def __init__(self, start: datetime = RECORDING_START):
        self.current = start - timedelta(seconds=1)

    def __call__(self) -> datetime:
        self.current += timedelta(seconds=1)
        return self.current


def marker_frame(value: float, frame_index: int = 0) -> PointCloudFrame:
    """One-point frame whose coordinates identify it."""
    return PointCloudFrame(
        points=np.full((1, 3), value, dtype=np.float32),
        frame_index=frame_index,
    )


def write_bundle(
    base_dir: Path,
    codec: FrameCodec,
    values: Iterable[float],
    frame_rate: Optional[float] = 10.0,
) -> Path:
    """Write a bundle of marker frames; ``frame_rate=None`` leaves it unfinalized."""
    writer = BundleWriter(extension=codec.file_extension)
    handle = writer.create(base_dir, RECORDING_START)
    values = list(values)
    for index, value in enumerate(values):
        writer.write_frame(handle, index, codec.encode_adaptive(marker_frame(value, index)))
    if frame_rate is not None:
        writer.finalize(handle, frame_count=len(values), frame_rate=frame_rate)
    return handle.path


@pytest.fixture
def fake_codec():
    return FakeCodec()


@pytest.fixture
def fixed_clock():
    return lambda: RECORDING_START


@pytest.fixture
def stepping_clock():
    return SteppingClock()


@pytest.fixture
def intrinsics():
    # 4x3 grid
    return CameraIntrinsics(fx=2.0, fy=4.0, cx=1.0, cy=1.0, width=4, height=3)


@pytest.fixture
def config(tmp_path):
    return RecordingConfig(
        output_dir=tmp_path / "recordings",
        frame_rate=25.0,
        max_workers=2,
        drain_timeout_seconds=5.0,
    )
