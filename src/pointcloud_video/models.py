"""Core data models for the point-cloud video pipeline.

This module defines the data structures passed between the projector, the
frame codec, the capture session and the playback session, plus the
recording configuration.

Bundle layout on disk:
    <output_dir>/
        plyVideo_20250312_142501.drc.bundle/
            frame_0000.drc
            frame_0001.drc
            ...
            metadata.json       {"frameCount", "recordingDate", "frameRate"}
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict

import numpy as np
import yaml

from .utils.io import load_json

# yyyyMMdd_HHmmss, used for bundle names, export names and metadata
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"


def format_timestamp(when: datetime) -> str:
    """Format a datetime the way bundle and export names expect."""
    return when.strftime(TIMESTAMP_FORMAT)


class QualityTier(Enum):
    """Compression tier, selected from the point count of a frame."""
    LIGHT = "light"              # < 5,000 points, keeps the most detail
    MEDIUM = "medium"            # 5,000 - 19,999 points
    AGGRESSIVE = "aggressive"    # >= 20,000 points, smallest payloads


class GeometryKind(Enum):
    """Geometry type reported by probing an encoded payload."""
    POINT_CLOUD = "point_cloud"
    MESH = "mesh"
    INVALID = "invalid"


@dataclass(frozen=True)
class CameraIntrinsics:
    """Pinhole intrinsics for the grid of resolution ``width`` x ``height``."""
    fx: float
    fy: float
    cx: float
    cy: float
    width: int
    height: int

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CameraIntrinsics":
        return cls(
            fx=float(data.get("fx", data.get("focalLengthX", 0))),
            fy=float(data.get("fy", data.get("focalLengthY", 0))),
            cx=float(data.get("cx", data.get("principalPointX", 0))),
            cy=float(data.get("cy", data.get("principalPointY", 0))),
            width=int(data.get("width", data.get("imageWidth", 1920))),
            height=int(data.get("height", data.get("imageHeight", 1440))),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fx": self.fx,
            "fy": self.fy,
            "cx": self.cx,
            "cy": self.cy,
            "width": self.width,
            "height": self.height,
        }

    def scaled_to(self, width: int, height: int) -> "CameraIntrinsics":
        """Rescale to another grid resolution (e.g. color image -> depth map).

        ARKit reports intrinsics for the color image, while the depth map is
        much smaller (256x192 vs 1920x1440), so they must be scaled by the
        depth/color resolution ratio before projecting depth samples.
        """
        if width <= 0 or height <= 0:
            raise ValueError(f"Invalid target resolution: {width}x{height}")
        if width == self.width and height == self.height:
            return self

        sx = width / self.width
        sy = height / self.height
        return CameraIntrinsics(
            fx=self.fx * sx,
            fy=self.fy * sy,
            cx=self.cx * sx,
            cy=self.cy * sy,
            width=width,
            height=height,
        )


@dataclass(frozen=True, eq=False)
class DepthFrame:
    """One sensor tick: a depth grid in meters with matching intrinsics."""
    depth: np.ndarray  # [H, W] float, <= 0 or NaN means no measurement
    intrinsics: CameraIntrinsics
    timestamp: float = 0.0


@dataclass(frozen=True, eq=False)
class PointCloudFrame:
    """Position-only point cloud for one captured frame.

    Point order is emission order and carries no spatial meaning. The point
    array is exposed read-only; use ``copy()`` for an independent frame.
    """
    points: np.ndarray  # [N, 3]
    frame_index: int = 0
    timestamp: float = 0.0

    def __post_init__(self):
        view = np.asarray(self.points).view()
        view.flags.writeable = False
        object.__setattr__(self, "points", view)

    @classmethod
    def empty(cls, frame_index: int = 0, timestamp: float = 0.0) -> "PointCloudFrame":
        return cls(np.zeros((0, 3), dtype=np.float32), frame_index, timestamp)

    @property
    def num_points(self) -> int:
        return int(self.points.shape[0]) if self.points.ndim > 0 else 0

    def __len__(self) -> int:
        return self.num_points

    def copy(self) -> "PointCloudFrame":
        """Return a freshly constructed frame with its own point buffer."""
        return PointCloudFrame(
            points=np.array(self.points, copy=True),
            frame_index=self.frame_index,
            timestamp=self.timestamp,
        )


@dataclass(frozen=True)
class CompressedFrame:
    """Codec payload for one frame, keyed by its bundle index."""
    frame_index: int
    data: bytes

    @property
    def size_bytes(self) -> int:
        return len(self.data)


@dataclass
class BundleMetadata:
    """Contents of a bundle's metadata.json."""
    frame_count: int
    frame_rate: float
    recording_date: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "frameCount": self.frame_count,
            "recordingDate": self.recording_date,
            "frameRate": self.frame_rate,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BundleMetadata":
        """Deserialize, falling back to defaults for missing or mistyped values."""
        frame_count = data.get("frameCount", 0)
        frame_rate = data.get("frameRate", 1.0)
        recording_date = data.get("recordingDate", "")

        if isinstance(frame_count, bool) or not isinstance(frame_count, int):
            frame_count = 0
        if isinstance(frame_rate, bool) or not isinstance(frame_rate, (int, float)):
            frame_rate = 1.0

        return cls(
            frame_count=frame_count,
            frame_rate=float(frame_rate),
            recording_date=recording_date if isinstance(recording_date, str) else "",
        )


@dataclass
class RecordingConfig:
    """Configuration for capture and playback.

    Can be loaded from YAML or JSON with ``load_recording_config``.
    """

    # Where bundles are created
    output_dir: Path = field(default_factory=lambda: Path("recordings"))

    # Capture schedule (also written to metadata.json)
    frame_rate: float = 25.0

    # Bundle naming: <prefix>_<yyyyMMdd_HHmmss><suffix>
    bundle_prefix: str = "plyVideo"
    bundle_suffix: str = ".drc.bundle"

    # Background encode/write pool
    max_workers: int = 2
    drain_timeout_seconds: float = 30.0

    # Projection
    projection_stride: int = 1
    projection_workers: int = 1

    # Playback rate when a bundle has no usable metadata
    default_playback_rate: float = 1.0

    def __post_init__(self):
        self.output_dir = Path(self.output_dir)
        if self.frame_rate <= 0:
            raise ValueError(f"frame_rate must be positive, got {self.frame_rate}")
        if self.max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {self.max_workers}")
        if self.drain_timeout_seconds <= 0:
            raise ValueError(
                f"drain_timeout_seconds must be positive, got {self.drain_timeout_seconds}"
            )
        if self.projection_stride < 1:
            raise ValueError(f"projection_stride must be >= 1, got {self.projection_stride}")
        if self.projection_workers < 1:
            raise ValueError(f"projection_workers must be >= 1, got {self.projection_workers}")
        if self.default_playback_rate <= 0:
            raise ValueError(
                f"default_playback_rate must be positive, got {self.default_playback_rate}"
            )
        if not self.bundle_prefix or not self.bundle_suffix:
            raise ValueError("bundle_prefix and bundle_suffix must be non-empty")

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "output_dir": str(self.output_dir),
            "frame_rate": self.frame_rate,
            "bundle_prefix": self.bundle_prefix,
            "bundle_suffix": self.bundle_suffix,
            "max_workers": self.max_workers,
            "drain_timeout_seconds": self.drain_timeout_seconds,
            "projection_stride": self.projection_stride,
            "projection_workers": self.projection_workers,
            "default_playback_rate": self.default_playback_rate,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecordingConfig":
        """Deserialize from dictionary, ignoring unknown keys."""
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


def load_recording_config(config_path: Path) -> RecordingConfig:
    """Load a recording configuration from YAML or JSON.

    Args:
        config_path: Path to a .yaml/.yml or .json file.

    Returns:
        Validated RecordingConfig.
    """
    config_path = Path(config_path)
    if config_path.suffix in (".yaml", ".yml"):
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}
    else:
        data = load_json(config_path)

    if not isinstance(data, dict):
        raise ValueError(f"Recording config must be a mapping: {config_path}")

    return RecordingConfig.from_dict(data)
