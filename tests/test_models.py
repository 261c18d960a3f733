from __future__ import annotations

import io
import json
import logging
from pathlib import Path

import numpy as np
import pytest

from pointcloud_video.models import (
    BundleMetadata,
    CameraIntrinsics,
    PointCloudFrame,
    RecordingConfig,
    load_recording_config,
)
from pointcloud_video.utils.logging import ROOT_LOGGER_NAME, get_logger, setup_logging


def test_intrinsics_from_arkit_keys():
    intrinsics = CameraIntrinsics.from_dict({
        "focalLengthX": 1400.0,
        "focalLengthY": 1401.0,
        "principalPointX": 960.0,
        "principalPointY": 720.0,
    })
    assert intrinsics.fx == 1400.0
    assert (intrinsics.width, intrinsics.height) == (1920, 1440)


def test_intrinsics_scaled_to_depth_grid():
    color = CameraIntrinsics(fx=1400.0, fy=1400.0, cx=960.0, cy=720.0, width=1920, height=1440)

    depth = color.scaled_to(256, 192)

    assert depth.fx == pytest.approx(1400.0 * 256 / 1920)
    assert depth.cy == pytest.approx(720.0 * 192 / 1440)
    assert (depth.width, depth.height) == (256, 192)
    assert color.scaled_to(1920, 1440) is color
    with pytest.raises(ValueError):
        color.scaled_to(0, 192)


def test_point_cloud_frame_is_read_only_and_copyable():
    source = np.ones((2, 3), dtype=np.float32)
    frame = PointCloudFrame(points=source, frame_index=5)

    with pytest.raises(ValueError):
        frame.points[0, 0] = 2.0

    copy = frame.copy()
    assert copy.frame_index == 5
    assert len(copy) == 2
    assert not np.shares_memory(copy.points, frame.points)


def test_metadata_keys():
    metadata = BundleMetadata(frame_count=3, frame_rate=25.0, recording_date="20250312_142501")
    assert metadata.to_dict() == {
        "frameCount": 3,
        "recordingDate": "20250312_142501",
        "frameRate": 25.0,
    }


def test_metadata_tolerates_bad_values():
    metadata = BundleMetadata.from_dict({"frameCount": "many", "frameRate": None})
    assert metadata.frame_count == 0
    assert metadata.frame_rate == 1.0
    assert metadata.recording_date == ""


def test_config_defaults():
    config = RecordingConfig()
    assert config.output_dir == Path("recordings")
    assert config.frame_rate == 25.0
    assert (config.bundle_prefix, config.bundle_suffix) == ("plyVideo", ".drc.bundle")


@pytest.mark.parametrize(
    "overrides",
    [
        {"frame_rate": 0},
        {"max_workers": 0},
        {"drain_timeout_seconds": -1},
        {"projection_stride": 0},
        {"default_playback_rate": 0},
        {"bundle_prefix": ""},
    ],
)
def test_config_validation(overrides):
    with pytest.raises(ValueError):
        RecordingConfig(**overrides)


def test_load_yaml_config(tmp_path):
    path = tmp_path / "recording.yaml"
    path.write_text("output_dir: /data/captures\nframe_rate: 30\nmax_workers: 4\nunknown_key: 1\n")

    config = load_recording_config(path)

    assert config.output_dir == Path("/data/captures")
    assert config.frame_rate == 30
    assert config.max_workers == 4


def test_load_json_config_round_trip(tmp_path):
    path = tmp_path / "recording.json"
    original = RecordingConfig(output_dir=tmp_path / "out", projection_stride=4)
    path.write_text(json.dumps(original.to_dict()))

    assert load_recording_config(path) == original


def test_config_must_be_mapping(tmp_path):
    path = tmp_path / "recording.yml"
    path.write_text("- just\n- a list\n")
    with pytest.raises(ValueError, match="mapping"):
        load_recording_config(path)


def test_json_logging_includes_session_context():
    stream = io.StringIO()
    setup_logging(level=logging.INFO, session_id="rec-1", json_format=True, stream=stream)
    try:
        get_logger("capture").info("Recording started")
    finally:
        logging.getLogger(ROOT_LOGGER_NAME).handlers.clear()

    entry = json.loads(stream.getvalue().strip())
    assert entry["severity"] == "INFO"
    assert entry["message"] == "Recording started"
    assert entry["logger"] == "pointcloud_video.capture"
    assert entry["session_id"] == "rec-1"
