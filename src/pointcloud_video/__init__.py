"""Point-cloud video capture and playback.

Records a stream of depth-camera frames as a "point-cloud video": each depth
frame is projected into a point set, compressed with Draco, and written into
a self-describing bundle directory. Bundles play back at their recorded rate.

Architecture:
    Depth source (sensor or recorded capture)
        -> Projector: depth grid + intrinsics -> point cloud frame
        -> CaptureSession: background encode + write, finalize on stop
        -> Bundle: frame_0000.drc ... + metadata.json
    Bundle
        -> BundleReader: enumerate + decode, skip corrupt frames
        -> PlaybackSession: fixed-rate single-pass emission

Typical use:
    codec = DracoFrameCodec()
    session = CaptureSession(codec, config=RecordingConfig(output_dir=out))
    session.attach_source(RecordedDepthSource.from_directory(capture_dir))
    session.start()
    ...
    session.stop()
"""

from .models import (
    BundleMetadata,
    CameraIntrinsics,
    CompressedFrame,
    DepthFrame,
    GeometryKind,
    PointCloudFrame,
    QualityTier,
    RecordingConfig,
    load_recording_config,
)
from .projection import (
    Projector,
    project,
    project_parallel,
)
from .codec import (
    CodecError,
    DracoFrameCodec,
    FrameCodec,
    select_quality_tier,
)
from .bundle import (
    BundleHandle,
    BundleReader,
    BundleWriter,
    LoadedBundle,
    find_bundles,
)
from .capture import (
    CaptureSession,
    CaptureStats,
    CaptureTicker,
    SessionResult,
    SessionState,
    SessionStatus,
)
from .playback import (
    PlaybackResult,
    PlaybackSession,
    PlaybackState,
    PlaybackStatus,
)
from .export import (
    export_frame,
    format_ascii_ply,
    load_compressed_frame,
    read_ascii_ply,
    save_compressed_frame,
    write_ascii_ply,
)
from .depth_source import (
    RecordedCapture,
    RecordedDepthSource,
    load_recorded_capture,
)


__version__ = "0.1.0"

__all__ = [
    # Version
    "__version__",
    # Models
    "BundleMetadata",
    "CameraIntrinsics",
    "CompressedFrame",
    "DepthFrame",
    "GeometryKind",
    "PointCloudFrame",
    "QualityTier",
    "RecordingConfig",
    "load_recording_config",
    # Projection
    "Projector",
    "project",
    "project_parallel",
    # Codec
    "CodecError",
    "DracoFrameCodec",
    "FrameCodec",
    "select_quality_tier",
    # Bundles
    "BundleHandle",
    "BundleReader",
    "BundleWriter",
    "LoadedBundle",
    "find_bundles",
    # Capture
    "CaptureSession",
    "CaptureStats",
    "CaptureTicker",
    "SessionResult",
    "SessionState",
    "SessionStatus",
    # Playback
    "PlaybackResult",
    "PlaybackSession",
    "PlaybackState",
    "PlaybackStatus",
    # Export
    "export_frame",
    "format_ascii_ply",
    "load_compressed_frame",
    "read_ascii_ply",
    "save_compressed_frame",
    "write_ascii_ply",
    # Recorded captures
    "RecordedCapture",
    "RecordedDepthSource",
    "load_recorded_capture",
]
