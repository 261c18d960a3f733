"""Recorded depth captures as a capture tick source.

Replays depth maps recorded by an iOS/ARKit capture app so a bundle can be
recorded offline, without a live sensor:

    capture_dir/
    ├── intrinsics.json     fx, fy, cx, cy, width, height (color resolution)
    ├── frames.jsonl        optional: {"frameIndex": 0, "timestamp": 0.04}
    └── depth/
        ├── 000001.png      16-bit depth in millimeters
        ├── smoothed-000001.png
        └── 000002.npy      float depth in meters

ARKit intrinsics refer to the color image, so they are rescaled to each
depth map's resolution before projection.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, List, Optional

import numpy as np
from PIL import Image

from .models import CameraIntrinsics, DepthFrame
from .utils.io import load_json, load_jsonl
from .utils.logging import ProgressTracker, get_logger

logger = get_logger(__name__)

DEPTH_EXTENSIONS = (".png", ".npy")
SMOOTHED_PREFIX = "smoothed-"

# 16-bit depth PNGs store millimeters
PNG_DEPTH_SCALE = 0.001


def load_depth_map(path: Path) -> np.ndarray:
    """Load a depth map as float32 meters.

    Args:
        path: 16-bit PNG (millimeters) or .npy (meters).

    Returns:
        Depth grid [H, W]; zero means no measurement.
    """
    path = Path(path)
    if path.suffix.lower() == ".npy":
        depth = np.load(path)
    else:
        with Image.open(path) as image:
            depth = np.asarray(image).astype(np.float32) * PNG_DEPTH_SCALE

    if depth.ndim != 2:
        raise ValueError(f"Depth map must be single channel, got shape {depth.shape}: {path}")
    return depth.astype(np.float32, copy=False)


@dataclass
class RecordedCapture:
    """A recorded capture on disk."""
    capture_dir: Path
    intrinsics: CameraIntrinsics
    depth_paths: List[Path] = field(default_factory=list)
    timestamps: List[float] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.depth_paths)

    def timestamp_for(self, position: int) -> float:
        if position < len(self.timestamps):
            return self.timestamps[position]
        return float(position)

    def iter_depth_frames(self) -> Iterator[DepthFrame]:
        """Yield depth frames in recording order, skipping unreadable maps."""
        tracker = ProgressTracker(f"replay_{self.capture_dir.name}", logger=logger)

        with tracker.stage("load_depth_maps", total_items=len(self.depth_paths)):
            for position, path in enumerate(self.depth_paths):
                try:
                    depth = load_depth_map(path)
                except (OSError, ValueError) as e:
                    tracker.log_error(f"Skipping depth map {path.name}", e)
                    continue

                tracker.update(1)
                yield DepthFrame(
                    depth=depth,
                    intrinsics=self.intrinsics.scaled_to(depth.shape[1], depth.shape[0]),
                    timestamp=self.timestamp_for(position),
                )


def load_recorded_capture(capture_dir: Path, use_smoothed: bool = False) -> RecordedCapture:
    """Discover the intrinsics, depth maps and timestamps of a recorded capture.

    Args:
        capture_dir: Capture directory.
        use_smoothed: Use ``smoothed-*`` depth maps instead of the raw ones.

    Raises:
        FileNotFoundError: If intrinsics.json is missing.
    """
    capture_dir = Path(capture_dir)
    intrinsics_path = capture_dir / "intrinsics.json"
    if not intrinsics_path.exists():
        raise FileNotFoundError(f"No intrinsics.json in {capture_dir}")

    intrinsics = CameraIntrinsics.from_dict(load_json(intrinsics_path))
    if intrinsics.fx <= 0 or intrinsics.fy <= 0:
        raise ValueError(f"Invalid focal length in {intrinsics_path}")

    depth_paths: List[Path] = []
    depth_dir = capture_dir / "depth"
    if depth_dir.exists():
        depth_paths = sorted(
            p for p in depth_dir.iterdir()
            if p.suffix.lower() in DEPTH_EXTENSIONS
            and p.name.startswith(SMOOTHED_PREFIX) == use_smoothed
        )

    timestamps: List[float] = []
    frames_path = capture_dir / "frames.jsonl"
    if frames_path.exists():
        entries = sorted(load_jsonl(frames_path), key=lambda e: int(e.get("frameIndex", 0)))
        timestamps = [float(e.get("timestamp", 0)) for e in entries]

    logger.info(
        f"Loaded recorded capture {capture_dir.name}: {len(depth_paths)} depth maps, "
        f"{len(timestamps)} timestamps"
    )
    return RecordedCapture(
        capture_dir=capture_dir,
        intrinsics=intrinsics,
        depth_paths=depth_paths,
        timestamps=timestamps,
    )


class RecordedDepthSource:
    """Callable depth source that returns the next recorded frame per call.

    Returns None once the recording is exhausted, which capture treats as
    "no new frame this tick".
    """

    def __init__(self, capture: RecordedCapture):
        self.capture = capture
        self._frames: Optional[Iterator[DepthFrame]] = None
        self._lock = threading.Lock()
        self.exhausted = False

    @classmethod
    def from_directory(cls, capture_dir: Path, use_smoothed: bool = False) -> "RecordedDepthSource":
        return cls(load_recorded_capture(capture_dir, use_smoothed=use_smoothed))

    def __call__(self) -> Optional[DepthFrame]:
        with self._lock:
            if self.exhausted:
                return None
            if self._frames is None:
                self._frames = self.capture.iter_depth_frames()
            frame = next(self._frames, None)
            if frame is None:
                self.exhausted = True
                logger.info(f"Recorded capture {self.capture.capture_dir.name} exhausted")
            return frame
