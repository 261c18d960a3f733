"""Point-cloud video bundle writer and reader.

A bundle is a directory of sequentially numbered codec payloads plus a
metadata descriptor written once when recording stops:

    plyVideo_20250312_142501.drc.bundle/
        frame_0000.drc
        frame_0001.drc
        ...
        metadata.json

Frame files use a fixed-width four digit index, so sorting names
lexicographically gives emission order. This limits a bundle to 10,000
frames (indices 0..9999), about 6.6 minutes at 25 fps.

A bundle without metadata.json was not finalized. The reader can still play
it (frame count and rate are inferred) unless opened in strict mode.
"""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .codec import CodecError, FrameCodec
from .models import (
    BundleMetadata,
    PointCloudFrame,
    RecordingConfig,
    format_timestamp,
)
from .utils.io import (
    directory_size_bytes,
    iter_files_with_extension,
    load_json,
    save_json,
    write_bytes_atomic,
)
from .utils.logging import ProgressTracker, get_logger

logger = get_logger(__name__)

METADATA_FILENAME = "metadata.json"
FRAME_PREFIX = "frame"
FRAME_INDEX_DIGITS = 4
MAX_FRAME_INDEX = 10 ** FRAME_INDEX_DIGITS - 1

_FRAME_INDEX_RE = re.compile(rf"^{FRAME_PREFIX}_(\d+)\.")


def frame_file_name(index: int, extension: str) -> str:
    """File name for a frame payload, e.g. ``frame_0042.drc``."""
    if not 0 <= index <= MAX_FRAME_INDEX:
        raise ValueError(f"Frame index {index} outside bundle range 0..{MAX_FRAME_INDEX}")
    return f"{FRAME_PREFIX}_{index:0{FRAME_INDEX_DIGITS}d}.{extension.lstrip('.')}"


def parse_frame_index(path: Path) -> Optional[int]:
    """Recover the frame index from a payload file name, if it follows the convention."""
    match = _FRAME_INDEX_RE.match(path.name)
    return int(match.group(1)) if match else None


@dataclass
class BundleHandle:
    """An open bundle being recorded."""
    path: Path
    created_at: datetime
    extension: str
    finalized: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def metadata_path(self) -> Path:
        return self.path / METADATA_FILENAME


class BundleWriter:
    """Creates bundles and persists frame payloads and metadata."""

    def __init__(
        self,
        extension: str = "drc",
        prefix: str = "plyVideo",
        suffix: str = ".drc.bundle",
    ):
        self.extension = extension.lstrip(".")
        self.prefix = prefix
        self.suffix = suffix

    @classmethod
    def from_config(cls, config: RecordingConfig, codec: FrameCodec) -> "BundleWriter":
        return cls(
            extension=codec.file_extension,
            prefix=config.bundle_prefix,
            suffix=config.bundle_suffix,
        )

    def bundle_name(self, when: datetime) -> str:
        return f"{self.prefix}_{format_timestamp(when)}{self.suffix}"

    def create(self, base_dir: Path, when: datetime) -> BundleHandle:
        """Create a new, empty bundle directory.

        Args:
            base_dir: Parent directory (created if missing).
            when: Recording start time, used for the bundle name.

        Returns:
            Handle for writing frames.

        Raises:
            FileExistsError: If a bundle with the same name already exists.
            OSError: If the directory cannot be created.
        """
        base_dir = Path(base_dir)
        base_dir.mkdir(parents=True, exist_ok=True)

        path = base_dir / self.bundle_name(when)
        path.mkdir(exist_ok=False)

        logger.info(f"Created bundle directory: {path}")
        return BundleHandle(path=path, created_at=when, extension=self.extension)

    def write_frame(self, handle: BundleHandle, index: int, data: bytes) -> Path:
        """Write one frame payload. Re-writing an index replaces the file."""
        path = handle.path / frame_file_name(index, handle.extension)
        write_bytes_atomic(data, path)
        logger.debug(f"Wrote {path.name} ({len(data)} bytes)")
        return path

    def finalize(
        self,
        handle: BundleHandle,
        frame_count: int,
        frame_rate: float,
        recorded_at: Optional[datetime] = None,
    ) -> Path:
        """Write metadata.json. Can only be called once per handle.

        Args:
            handle: Bundle being recorded.
            frame_count: Number of frames in the bundle.
            frame_rate: Capture frame rate.
            recorded_at: Time stamped into ``recordingDate`` (defaults to creation time).

        Returns:
            Path to the metadata file.
        """
        with handle._lock:
            if handle.finalized:
                raise RuntimeError(f"Bundle already finalized: {handle.path}")
            handle.finalized = True

        metadata = BundleMetadata(
            frame_count=frame_count,
            frame_rate=float(frame_rate),
            recording_date=format_timestamp(recorded_at or handle.created_at),
        )
        save_json(metadata.to_dict(), handle.metadata_path)
        logger.info(f"Finalized bundle {handle.name} with {frame_count} frames at {frame_rate} fps")
        return handle.metadata_path


@dataclass
class LoadedBundle:
    """Decoded contents of a bundle."""
    path: Path
    frames: List[PointCloudFrame]
    frame_rate: float
    frame_count: int
    payload_count: int
    metadata: Optional[BundleMetadata] = None
    skipped: List[str] = field(default_factory=list)
    report: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_complete(self) -> bool:
        return self.metadata is not None


class BundleReader:
    """Enumerates and decodes the frames of a bundle directory."""

    def __init__(
        self,
        bundle_dir: Path,
        codec: FrameCodec,
        strict: bool = False,
        default_frame_rate: float = 1.0,
    ):
        """Initialize the reader.

        Args:
            bundle_dir: Bundle directory.
            codec: Codec used to decode payloads.
            strict: Refuse bundles without metadata.json.
            default_frame_rate: Frame rate used when metadata is missing.

        Raises:
            FileNotFoundError: If the directory does not exist.
            NotADirectoryError: If the path is not a directory.
        """
        self.bundle_dir = Path(bundle_dir)
        self.codec = codec
        self.strict = strict
        self.default_frame_rate = default_frame_rate

        if not self.bundle_dir.exists():
            raise FileNotFoundError(f"Bundle not found: {self.bundle_dir}")
        if not self.bundle_dir.is_dir():
            raise NotADirectoryError(f"Bundle is not a directory: {self.bundle_dir}")

    def read_metadata(self) -> Optional[BundleMetadata]:
        """Read metadata.json; missing or unreadable metadata returns None."""
        metadata_path = self.bundle_dir / METADATA_FILENAME
        if not metadata_path.exists():
            return None

        try:
            data = load_json(metadata_path)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable metadata in {self.bundle_dir.name}: {e}")
            return None

        if not isinstance(data, dict):
            logger.warning(f"Ignoring malformed metadata in {self.bundle_dir.name}")
            return None

        return BundleMetadata.from_dict(data)

    def payload_paths(self) -> List[Path]:
        """Payload files sorted by name, which is frame order."""
        return list(iter_files_with_extension(self.bundle_dir, self.codec.file_extension))

    def _decode_path(self, path: Path, position: int) -> PointCloudFrame:
        index = parse_frame_index(path)
        return self.codec.decode(path.read_bytes(), frame_index=position if index is None else index)

    def iter_frames(self) -> Iterator[PointCloudFrame]:
        """Lazily decode frames in order, skipping payloads that fail to decode."""
        for position, path in enumerate(self.payload_paths()):
            try:
                yield self._decode_path(path, position)
            except (OSError, CodecError) as e:
                logger.warning(f"Skipping frame {path.name}: {e}")

    def load(self) -> LoadedBundle:
        """Eagerly decode every frame.

        Returns:
            LoadedBundle with the playable frames and timing information.

        Raises:
            ValueError: In strict mode, if the bundle has no metadata.
            OSError: If the directory cannot be listed.
        """
        metadata = self.read_metadata()
        if metadata is None:
            if self.strict:
                raise ValueError(f"Bundle is incomplete (no {METADATA_FILENAME}): {self.bundle_dir}")
            logger.warning(f"No metadata in {self.bundle_dir.name}, inferring frame count and rate")

        paths = self.payload_paths()
        tracker = ProgressTracker(f"load_{self.bundle_dir.name}", logger=logger)
        frames: List[PointCloudFrame] = []
        skipped: List[str] = []

        with tracker.stage("decode_frames", total_items=len(paths)):
            for position, path in enumerate(paths):
                try:
                    frames.append(self._decode_path(path, position))
                except (OSError, CodecError) as e:
                    skipped.append(path.name)
                    tracker.log_error(f"Skipping frame {path.name}", e)
                    continue
                tracker.update(1)

        frame_rate = self.default_frame_rate
        frame_count = len(paths)
        if metadata is not None:
            if metadata.frame_rate > 0:
                frame_rate = metadata.frame_rate
            if metadata.frame_count > 0:
                frame_count = metadata.frame_count

        return LoadedBundle(
            path=self.bundle_dir,
            frames=frames,
            frame_rate=frame_rate,
            frame_count=frame_count,
            payload_count=len(paths),
            metadata=metadata,
            skipped=skipped,
            report=tracker.generate_report(),
        )


def find_bundles(parent_dir: Path, config: Optional[RecordingConfig] = None) -> List[Path]:
    """List bundle directories in a folder, ignoring unrelated entries.

    Args:
        parent_dir: Folder to scan.
        config: Supplies the bundle name prefix and suffix (defaults if omitted).

    Returns:
        Bundle paths sorted by name (oldest recording first).
    """
    config = config or RecordingConfig()
    prefix, suffix = config.bundle_prefix, config.bundle_suffix
    pattern = re.compile(rf"^{re.escape(prefix)}_\d{{8}}_\d{{6}}{re.escape(suffix)}$")
    parent_dir = Path(parent_dir)
    if not parent_dir.is_dir():
        return []
    return sorted(
        (p for p in parent_dir.iterdir() if p.is_dir() and pattern.match(p.name)),
        key=lambda p: p.name,
    )


def bundle_size_bytes(bundle_dir: Path) -> int:
    """Total on-disk size of a bundle."""
    return directory_size_bytes(Path(bundle_dir))
