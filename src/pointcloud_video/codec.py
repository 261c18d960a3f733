"""Frame codec adapter around Draco point cloud compression.

The pipeline only depends on the ``FrameCodec`` contract:

    encode(frame, tier) -> bytes
    decode(data)        -> PointCloudFrame
    probe(data)         -> GeometryKind

``DracoFrameCodec`` implements it with DracoPy. Compression settings are
chosen from the point count of each frame (see ``select_quality_tier``), so
dense frames get smaller payloads and sparse frames keep more detail.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict

import DracoPy
import numpy as np

from .models import CompressedFrame, GeometryKind, PointCloudFrame, QualityTier
from .utils.logging import get_logger

logger = get_logger(__name__)

# Point count thresholds between tiers
MEDIUM_TIER_MIN_POINTS = 5_000
AGGRESSIVE_TIER_MIN_POINTS = 20_000

# Draco header: "DRACO", major, minor, encoder type, encoder method, flags (u16)
DRACO_MAGIC = b"DRACO"
DRACO_HEADER_SIZE = 11
_ENCODER_TYPE_OFFSET = 7
_ENCODER_TYPE_POINT_CLOUD = 0
_ENCODER_TYPE_MESH = 1

# Draco derives the quantization box from the points, which an empty frame lacks
_EMPTY_QUANTIZATION_RANGE = 1.0
_EMPTY_QUANTIZATION_ORIGIN = [0.0, 0.0, 0.0]


class CodecError(RuntimeError):
    """Raised when a frame cannot be encoded or a payload cannot be decoded."""


@dataclass(frozen=True)
class QualityPreset:
    """Draco settings for one quality tier."""
    quantization_bits: int
    encoding_speed: int
    decoding_speed: int

    @property
    def compression_level(self) -> int:
        # DracoPy exposes one knob: speed = 10 - compression_level, applied
        # to both encoder and decoder.
        return 10 - self.encoding_speed


QUALITY_PRESETS: Dict[QualityTier, QualityPreset] = {
    QualityTier.LIGHT: QualityPreset(quantization_bits=12, encoding_speed=5, decoding_speed=9),
    QualityTier.MEDIUM: QualityPreset(quantization_bits=11, encoding_speed=4, decoding_speed=8),
    QualityTier.AGGRESSIVE: QualityPreset(quantization_bits=10, encoding_speed=3, decoding_speed=7),
}


def select_quality_tier(num_points: int) -> QualityTier:
    """Pick the compression tier for a frame from its point count."""
    if num_points < MEDIUM_TIER_MIN_POINTS:
        return QualityTier.LIGHT
    if num_points < AGGRESSIVE_TIER_MIN_POINTS:
        return QualityTier.MEDIUM
    return QualityTier.AGGRESSIVE


def probe_draco(data: bytes) -> GeometryKind:
    """Report the geometry type stored in a Draco payload header."""
    if not data or len(data) < DRACO_HEADER_SIZE or not data.startswith(DRACO_MAGIC):
        return GeometryKind.INVALID

    encoder_type = data[_ENCODER_TYPE_OFFSET]
    if encoder_type == _ENCODER_TYPE_POINT_CLOUD:
        return GeometryKind.POINT_CLOUD
    if encoder_type == _ENCODER_TYPE_MESH:
        return GeometryKind.MESH
    return GeometryKind.INVALID


def validate_points(points: np.ndarray) -> np.ndarray:
    """Check that a point array is an [N, 3] float array of finite values.

    Returns:
        The points as a contiguous float32 array.

    Raises:
        CodecError: If the layout cannot be represented as float positions.
    """
    points = np.asarray(points)
    if points.ndim != 2 or points.shape[1] != 3:
        raise CodecError(f"Expected points with shape [N, 3], got {points.shape}")
    if not np.issubdtype(points.dtype, np.floating):
        raise CodecError(f"Position data must be floating point, got {points.dtype}")
    if not np.all(np.isfinite(points)):
        raise CodecError("Position data contains NaN or infinite values")
    return np.ascontiguousarray(points, dtype=np.float32)


class FrameCodec(ABC):
    """Uniform encode/decode contract for point cloud frames."""

    @property
    @abstractmethod
    def file_extension(self) -> str:
        """Extension (without dot) used for payload files."""

    @abstractmethod
    def encode(self, frame: PointCloudFrame, tier: QualityTier) -> bytes:
        """Encode a frame. Raises CodecError instead of returning partial bytes."""

    @abstractmethod
    def decode(self, data: bytes, frame_index: int = 0) -> PointCloudFrame:
        """Decode a payload. Raises CodecError for non point cloud or corrupt data."""

    @abstractmethod
    def probe(self, data: bytes) -> GeometryKind:
        """Report the geometry type of a payload without decoding it."""

    def encode_adaptive(self, frame: PointCloudFrame) -> bytes:
        """Encode with the tier selected from the frame's point count."""
        return self.encode(frame, select_quality_tier(frame.num_points))

    def compress(self, frame: PointCloudFrame) -> CompressedFrame:
        """Encode adaptively and key the payload by the frame index."""
        return CompressedFrame(frame_index=frame.frame_index, data=self.encode_adaptive(frame))


class DracoFrameCodec(FrameCodec):
    """Frame codec backed by Google Draco through DracoPy."""

    @property
    def file_extension(self) -> str:
        return "drc"

    def encode(self, frame: PointCloudFrame, tier: QualityTier) -> bytes:
        points = validate_points(frame.points)
        preset = QUALITY_PRESETS[tier]

        options = {}
        if points.shape[0] == 0:
            options["quantization_range"] = _EMPTY_QUANTIZATION_RANGE
            options["quantization_origin"] = _EMPTY_QUANTIZATION_ORIGIN

        try:
            # preserve_order keeps duplicate points, which Draco merges otherwise
            data = DracoPy.encode(
                points,
                quantization_bits=preset.quantization_bits,
                compression_level=preset.compression_level,
                preserve_order=True,
                **options,
            )
        except Exception as e:
            raise CodecError(f"Draco failed to encode frame {frame.frame_index}: {e}") from e

        if not data:
            raise CodecError(f"Draco produced no data for frame {frame.frame_index}")

        logger.debug(
            f"Encoded frame {frame.frame_index}: {points.shape[0]} points, "
            f"tier={tier.value}, {len(data)} bytes"
        )
        return bytes(data)

    def decode(self, data: bytes, frame_index: int = 0) -> PointCloudFrame:
        kind = self.probe(data)
        if kind != GeometryKind.POINT_CLOUD:
            raise CodecError(f"Payload is not a Draco point cloud (probe: {kind.value})")

        try:
            decoded = DracoPy.decode(bytes(data))
            if decoded.points is None:
                points = np.zeros((0, 3), dtype=np.float32)
            else:
                points = np.asarray(decoded.points, dtype=np.float32).reshape(-1, 3)
        except Exception as e:
            raise CodecError(f"Draco failed to decode payload: {e}") from e

        return PointCloudFrame(points=points, frame_index=frame_index)

    def probe(self, data: bytes) -> GeometryKind:
        return probe_draco(data)
