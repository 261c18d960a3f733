from __future__ import annotations

import DracoPy
import numpy as np
import pytest

from pointcloud_video.codec import (
    DRACO_HEADER_SIZE,
    QUALITY_PRESETS,
    CodecError,
    DracoFrameCodec,
    probe_draco,
    select_quality_tier,
)
from pointcloud_video.models import GeometryKind, PointCloudFrame, QualityTier


def _random_frame(num_points: int, seed: int = 0) -> PointCloudFrame:
    rng = np.random.default_rng(seed)
    points = rng.uniform(-1.0, 1.0, size=(num_points, 3)).astype(np.float32)
    return PointCloudFrame(points=points)


@pytest.mark.parametrize(
    "count, tier",
    [
        (0, QualityTier.LIGHT),
        (4_999, QualityTier.LIGHT),
        (5_000, QualityTier.MEDIUM),
        (19_999, QualityTier.MEDIUM),
        (20_000, QualityTier.AGGRESSIVE),
        (250_000, QualityTier.AGGRESSIVE),
    ],
)
def test_select_quality_tier(count, tier):
    assert select_quality_tier(count) == tier


def test_presets_map_speed_to_compression_level():
    assert QUALITY_PRESETS[QualityTier.LIGHT].quantization_bits == 12
    assert QUALITY_PRESETS[QualityTier.LIGHT].compression_level == 5
    assert QUALITY_PRESETS[QualityTier.MEDIUM].compression_level == 6
    assert QUALITY_PRESETS[QualityTier.AGGRESSIVE].quantization_bits == 10
    assert QUALITY_PRESETS[QualityTier.AGGRESSIVE].compression_level == 7


@pytest.mark.parametrize("num_points", [999, 5_000, 19_999, 20_000, 50_000])
def test_draco_round_trip_preserves_point_count(num_points):
    codec = DracoFrameCodec()
    frame = _random_frame(num_points, seed=num_points)

    data = codec.encode_adaptive(frame)
    decoded = codec.decode(data, frame_index=4)

    assert decoded.num_points == num_points
    assert decoded.frame_index == 4
    assert decoded.points.dtype == np.float32

    # Compare extents within quantization error
    tier = select_quality_tier(num_points)
    tolerance = 2.0 / (1 << QUALITY_PRESETS[tier].quantization_bits) * 2
    np.testing.assert_allclose(decoded.points.min(axis=0), frame.points.min(axis=0), atol=tolerance)
    np.testing.assert_allclose(decoded.points.max(axis=0), frame.points.max(axis=0), atol=tolerance)


def test_draco_round_trip_empty_frame():
    codec = DracoFrameCodec()

    data = codec.encode_adaptive(PointCloudFrame.empty())
    decoded = codec.decode(data, frame_index=2)

    assert codec.probe(data) == GeometryKind.POINT_CLOUD
    assert decoded.points.shape == (0, 3)
    assert decoded.points.dtype == np.float32
    assert decoded.frame_index == 2


def test_draco_round_trip_keeps_duplicate_points():
    codec = DracoFrameCodec()
    repeated = np.tile(np.array([[0.25, -0.5, 0.75]], dtype=np.float32), (1_000, 1))
    points = np.concatenate([repeated, _random_frame(200, seed=7).points])

    decoded = codec.decode(codec.encode_adaptive(PointCloudFrame(points=points)))

    assert decoded.num_points == 1_200
    tolerance = 2.0 / (1 << QUALITY_PRESETS[QualityTier.LIGHT].quantization_bits) * 2
    near_repeated = np.all(np.abs(decoded.points - repeated[0]) <= tolerance, axis=1)
    assert near_repeated.sum() >= 1_000


def test_probe_identifies_point_cloud_and_mesh():
    codec = DracoFrameCodec()
    frame = _random_frame(100)
    assert codec.probe(codec.encode(frame, QualityTier.LIGHT)) == GeometryKind.POINT_CLOUD

    vertices = np.array([[0, 0, 0], [1, 0, 0], [0, 1, 0], [0, 0, 1]], dtype=np.float32)
    faces = np.array([[0, 1, 2], [0, 1, 3], [0, 2, 3], [1, 2, 3]], dtype=np.uint32)
    mesh_data = DracoPy.encode(vertices, faces)
    assert codec.probe(mesh_data) == GeometryKind.MESH


@pytest.mark.parametrize("data", [b"", b"DRACO", b"not a draco payload at all"])
def test_probe_invalid_payloads(data):
    assert probe_draco(data) == GeometryKind.INVALID


def test_decode_rejects_mesh():
    vertices = np.array([[0, 0, 0], [1, 0, 0], [0, 1, 0]], dtype=np.float32)
    faces = np.array([[0, 1, 2]], dtype=np.uint32)
    with pytest.raises(CodecError, match="not a Draco point cloud"):
        DracoFrameCodec().decode(DracoPy.encode(vertices, faces))


def test_decode_rejects_truncated_payload():
    codec = DracoFrameCodec()
    data = codec.encode(_random_frame(500), QualityTier.LIGHT)
    with pytest.raises(CodecError):
        codec.decode(data[:DRACO_HEADER_SIZE])


def test_decode_rejects_empty_payload():
    with pytest.raises(CodecError):
        DracoFrameCodec().decode(b"")


@pytest.mark.parametrize(
    "points",
    [
        np.zeros((10, 3), dtype=np.int32),
        np.zeros((10, 2), dtype=np.float32),
        np.zeros((3,), dtype=np.float32),
        np.array([[0.0, np.nan, 1.0]], dtype=np.float32),
    ],
)
def test_encode_rejects_invalid_positions(points):
    frame = PointCloudFrame(points=points)
    with pytest.raises(CodecError):
        DracoFrameCodec().encode(frame, QualityTier.LIGHT)
