"""Single-frame export as ASCII PLY and standalone codec files.

PLY output is position only::

    ply
    format ascii 1.0
    element vertex N
    property float x
    property float y
    property float z
    end_header
    x y z
    ...

Coordinates are written with the shortest decimal text that reads back to
the same float32 value, so write/read round-trips exactly.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

import numpy as np

from .codec import FrameCodec, validate_points
from .models import PointCloudFrame, QualityTier, format_timestamp
from .utils.io import write_bytes_atomic
from .utils.logging import get_logger

logger = get_logger(__name__)

EXPORT_PREFIX = "pointCloud"

_PLY_PROPERTIES = ("x", "y", "z")


def _format_float(value: np.float32) -> str:
    return np.format_float_positional(value, unique=True, trim="-")


def format_ascii_ply(points: np.ndarray) -> str:
    """Render points [N, 3] as an ASCII PLY document."""
    points = validate_points(points)

    header = "ply\n"
    header += "format ascii 1.0\n"
    header += f"element vertex {points.shape[0]}\n"
    for name in _PLY_PROPERTIES:
        header += f"property float {name}\n"
    header += "end_header\n"

    lines = [" ".join(_format_float(v) for v in point) + "\n" for point in points]
    return header + "".join(lines)


def write_ascii_ply(points: np.ndarray, path: Path) -> Path:
    """Write points to an ASCII PLY file.

    Args:
        points: Point positions [N, 3].
        path: Output file path.

    Returns:
        The written path.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    write_bytes_atomic(format_ascii_ply(points).encode("utf-8"), path)
    logger.debug(f"Wrote {points.shape[0]} points to {path}")
    return path


def read_ascii_ply(path: Path) -> np.ndarray:
    """Read an ASCII PLY file with float x, y, z vertex properties.

    Returns:
        Points [N, 3] float32.

    Raises:
        ValueError: If the file is not a position-only ASCII PLY.
    """
    path = Path(path)
    with open(path, "r", encoding="utf-8") as f:
        if f.readline().strip() != "ply":
            raise ValueError(f"Not a PLY file: {path}")

        num_vertices: Optional[int] = None
        properties = []
        fmt = None
        for line in f:
            tokens = line.split()
            if not tokens:
                continue
            if tokens[0] == "end_header":
                break
            if tokens[0] == "format":
                fmt = tokens[1]
            elif tokens[:2] == ["element", "vertex"]:
                num_vertices = int(tokens[2])
            elif tokens[0] == "property" and num_vertices is not None:
                properties.append(tokens[-1])
        else:
            raise ValueError(f"PLY header not terminated: {path}")

        if fmt != "ascii":
            raise ValueError(f"Unsupported PLY format {fmt!r}: {path}")
        if num_vertices is None or tuple(properties[:3]) != _PLY_PROPERTIES:
            raise ValueError(f"PLY file has no x/y/z vertex element: {path}")

        rows = [next(f, "").split() for _ in range(num_vertices)]

    if any(len(row) < 3 for row in rows):
        raise ValueError(f"PLY file has fewer than {num_vertices} complete vertices: {path}")

    points = np.array([row[:3] for row in rows], dtype=np.float32)
    return points.reshape(-1, 3)


def save_compressed_frame(
    frame: PointCloudFrame,
    path: Path,
    codec: FrameCodec,
    tier: Optional[QualityTier] = None,
) -> Path:
    """Encode one frame into a standalone codec file.

    Uses the tier selected from the point count unless ``tier`` is given.
    """
    data = codec.encode(frame, tier) if tier is not None else codec.encode_adaptive(frame)
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    write_bytes_atomic(data, path)
    logger.debug(f"Saved compressed frame to {path} ({len(data)} bytes)")
    return path


def load_compressed_frame(path: Path, codec: FrameCodec) -> PointCloudFrame:
    """Decode a standalone codec file."""
    return codec.decode(Path(path).read_bytes())


def export_frame(
    frame: PointCloudFrame,
    output_dir: Path,
    codec: FrameCodec,
    when: Optional[datetime] = None,
) -> Dict[str, Path]:
    """Export one frame as ``pointCloud_<timestamp>.ply`` and ``.drc`` side by side.

    Args:
        frame: Frame to export.
        output_dir: Destination directory.
        codec: Codec for the compressed copy.
        when: Timestamp used in the file names (defaults to now).

    Returns:
        Dict with ``ply`` and ``compressed`` paths.
    """
    output_dir = Path(output_dir)
    stem = f"{EXPORT_PREFIX}_{format_timestamp(when or datetime.now())}"

    outputs = {
        "ply": write_ascii_ply(frame.points, output_dir / f"{stem}.ply"),
        "compressed": save_compressed_frame(
            frame, output_dir / f"{stem}.{codec.file_extension}", codec
        ),
    }
    logger.info(f"Exported frame {frame.frame_index} ({frame.num_points} points) to {output_dir}")
    return outputs
