from __future__ import annotations

import json

import numpy as np
import pytest
from PIL import Image

from pointcloud_video.depth_source import (
    RecordedDepthSource,
    load_depth_map,
    load_recorded_capture,
)


@pytest.fixture
def capture_dir(tmp_path):
    root = tmp_path / "capture"
    depth_dir = root / "depth"
    depth_dir.mkdir(parents=True)

    # Intrinsics at color resolution 8x6, depth maps are 4x3
    (root / "intrinsics.json").write_text(json.dumps({
        "focalLengthX": 8.0,
        "focalLengthY": 8.0,
        "principalPointX": 4.0,
        "principalPointY": 3.0,
        "imageWidth": 8,
        "imageHeight": 6,
    }))
    (root / "frames.jsonl").write_text(
        '{"frameIndex": 1, "timestamp": 0.04}\n'
        '{"frameIndex": 0, "timestamp": 0.0}\n'
        "not json\n"
    )

    millimeters = np.full((3, 4), 1500, dtype=np.uint16)
    millimeters[0, 0] = 0
    Image.fromarray(millimeters).save(depth_dir / "000001.png")
    np.save(depth_dir / "000002.npy", np.full((3, 4), 2.0, dtype=np.float32))
    Image.fromarray(np.zeros((3, 4), dtype=np.uint16)).save(depth_dir / "smoothed-000001.png")
    return root


def test_png_depth_is_converted_to_meters(capture_dir):
    depth = load_depth_map(capture_dir / "depth" / "000001.png")
    assert depth.dtype == np.float32
    assert depth.shape == (3, 4)
    assert depth[0, 0] == 0.0
    np.testing.assert_allclose(depth[1, 1], 1.5)


def test_load_recorded_capture(capture_dir):
    capture = load_recorded_capture(capture_dir)

    assert [p.name for p in capture.depth_paths] == ["000001.png", "000002.npy"]
    assert capture.timestamps == [0.0, 0.04]
    assert capture.intrinsics.width == 8


def test_smoothed_maps_selected_on_request(capture_dir):
    capture = load_recorded_capture(capture_dir, use_smoothed=True)
    assert [p.name for p in capture.depth_paths] == ["smoothed-000001.png"]


def test_frames_have_intrinsics_scaled_to_depth_resolution(capture_dir):
    frames = list(load_recorded_capture(capture_dir).iter_depth_frames())

    assert len(frames) == 2
    intrinsics = frames[0].intrinsics
    assert (intrinsics.width, intrinsics.height) == (4, 3)
    assert intrinsics.fx == pytest.approx(4.0)
    assert intrinsics.cy == pytest.approx(1.5)
    assert [f.timestamp for f in frames] == [0.0, 0.04]


def test_unreadable_depth_map_skipped(capture_dir):
    (capture_dir / "depth" / "000000.png").write_bytes(b"not a png")

    frames = list(load_recorded_capture(capture_dir).iter_depth_frames())

    assert len(frames) == 2


def test_source_returns_none_when_exhausted(capture_dir):
    source = RecordedDepthSource.from_directory(capture_dir)

    assert source() is not None
    assert source() is not None
    assert source() is None
    assert source.exhausted


def test_missing_intrinsics(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_recorded_capture(tmp_path)
