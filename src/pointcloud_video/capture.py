"""Recording lifecycle for point-cloud video capture.

A ``CaptureSession`` owns one recording at a time:

    IDLE --start()--> RECORDING --stop()--> FINALIZING --> IDLE

While recording, every tick hands a frame to ``submit`` which assigns the next
bundle index and dispatches an encode-and-write job to a thread pool, so the
tick never waits on compression or disk I/O. ``stop`` drains the pool (bounded
by ``drain_timeout_seconds``) before metadata is written, so ``frameCount``
never exceeds the payload files on disk.
"""

from __future__ import annotations

import dataclasses
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .bundle import MAX_FRAME_INDEX, BundleHandle, BundleWriter, bundle_size_bytes
from .codec import CodecError, FrameCodec
from .models import DepthFrame, PointCloudFrame, RecordingConfig
from .projection import Projector
from .utils.logging import get_logger

logger = get_logger(__name__)

DepthSource = Callable[[], Optional[DepthFrame]]


class SessionState(Enum):
    """Lifecycle state of a capture session."""
    IDLE = "idle"
    RECORDING = "recording"
    FINALIZING = "finalizing"


class SessionStatus(Enum):
    """Outcome of a session operation."""
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class SessionResult:
    """Result of ``CaptureSession.start`` or ``CaptureSession.stop``."""
    status: SessionStatus
    bundle_path: Optional[Path] = None
    metrics: Dict[str, Any] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.status == SessionStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "bundle_path": str(self.bundle_path) if self.bundle_path else None,
            "metrics": self.metrics,
            "errors": self.errors,
            "duration_seconds": self.duration_seconds,
        }


@dataclass
class CaptureStats:
    """Frame accounting for one recording.

    ``attempted - written`` is the number of frames that never made it into
    the bundle (dropped by a failed encode or write, or abandoned at stop).
    """
    attempted: int = 0
    written: int = 0
    dropped: int = 0
    abandoned: int = 0

    def to_dict(self) -> Dict[str, int]:
        return dataclasses.asdict(self)


class CaptureTicker:
    """Calls ``on_tick`` every ``1 / frame_rate`` seconds on a daemon thread.

    Ticks are scheduled against absolute deadlines so the rate does not drift
    with the time spent inside ``on_tick``. Deadlines missed while a tick ran
    long are skipped rather than replayed in a burst.
    """

    def __init__(self, frame_rate: float, on_tick: Callable[[], None], name: str = "capture-ticker"):
        if frame_rate <= 0:
            raise ValueError(f"frame_rate must be positive, got {frame_rate}")
        self.interval = 1.0 / frame_rate
        self.on_tick = on_tick
        self.name = name
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            raise RuntimeError("Ticker already running")
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._run, args=(self._stop_event,), name=self.name, daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        """Cancel future ticks and wait for a tick in progress to return."""
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        self._thread = None

    def _run(self, stop_event: threading.Event) -> None:
        deadline = time.monotonic() + self.interval
        while not stop_event.wait(max(0.0, deadline - time.monotonic())):
            try:
                self.on_tick()
            except Exception as e:
                logger.warning(f"Capture tick failed: {e}", exc_info=True)

            deadline += self.interval
            now = time.monotonic()
            if deadline < now:
                missed = int((now - deadline) / self.interval) + 1
                deadline += missed * self.interval
                logger.debug(f"Skipped {missed} late ticks")


class CaptureSession:
    """Records a point-cloud video bundle from a stream of frames."""

    def __init__(
        self,
        codec: FrameCodec,
        writer: Optional[BundleWriter] = None,
        config: Optional[RecordingConfig] = None,
        clock: Callable[[], datetime] = datetime.now,
        projector: Optional[Projector] = None,
    ):
        """Initialize the session.

        Args:
            codec: Codec used to compress frames.
            writer: Bundle writer (built from the config and codec if omitted).
            config: Recording configuration.
            clock: Returns the current time; used for bundle naming and metadata.
            projector: Projects depth ticks passed to ``submit_depth``.
        """
        self.config = config or RecordingConfig()
        self.codec = codec
        self.writer = writer or BundleWriter.from_config(self.config, codec)
        self.clock = clock
        self.projector = projector
        self._owns_projector = False

        self.state = SessionState.IDLE
        self.frame_counter = 0
        self.handle: Optional[BundleHandle] = None
        self.stats = CaptureStats()

        self._lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._futures: List[Future] = []
        self._source: Optional[DepthSource] = None
        self._ticker: Optional[CaptureTicker] = None
        self._started_at = 0.0

    @property
    def is_recording(self) -> bool:
        return self.state == SessionState.RECORDING

    def start(self) -> SessionResult:
        """Create a new bundle and begin accepting frames."""
        result = SessionResult(status=SessionStatus.FAILED)

        with self._lock:
            if self.state != SessionState.IDLE:
                result.errors.append("session already active")
                logger.error(f"Cannot start recording: session is {self.state.value}")
                return result

            try:
                handle = self.writer.create(self.config.output_dir, self.clock())
            except OSError as e:
                result.errors.append(f"Cannot create bundle directory: {e}")
                logger.error(f"Cannot create bundle directory: {e}")
                return result

            self.handle = handle
            self.frame_counter = 0
            self.stats = CaptureStats()
            self._futures = []
            self._executor = ThreadPoolExecutor(
                max_workers=self.config.max_workers, thread_name_prefix="frame-encoder"
            )
            self._started_at = time.time()
            self.state = SessionState.RECORDING

        if self._source is not None:
            self._start_ticker()

        logger.info(f"Recording started: {handle.path}")
        result.status = SessionStatus.COMPLETED
        result.bundle_path = handle.path
        return result

    def submit(self, frame: PointCloudFrame) -> Optional[int]:
        """Queue a frame for encoding and writing.

        Returns:
            The bundle index assigned to the frame, or None if the session is
            not recording or the bundle is full.
        """
        with self._lock:
            if self.state != SessionState.RECORDING:
                return None

            index = self.frame_counter
            self.stats.attempted += 1
            if index > MAX_FRAME_INDEX:
                self.stats.dropped += 1
                if index == MAX_FRAME_INDEX + 1:
                    logger.warning(f"Bundle is full ({MAX_FRAME_INDEX + 1} frames), dropping further frames")
                self.frame_counter += 1
                return None

            self.frame_counter += 1
            job_frame = dataclasses.replace(frame, frame_index=index)
            self._futures.append(
                self._executor.submit(self._encode_and_write, self.handle, job_frame)
            )

        logger.debug(f"Submitted frame {index} ({job_frame.num_points} points)")
        return index

    def submit_depth(self, depth_frame: DepthFrame) -> Optional[int]:
        """Project a depth tick and queue the resulting frame."""
        if self.state != SessionState.RECORDING:
            return None

        with self._lock:
            if self.projector is None:
                self.projector = Projector.from_config(self.config)
                self._owns_projector = True
            projector = self.projector

        try:
            frame = projector.project(depth_frame)
        except ValueError as e:
            with self._lock:
                self.stats.attempted += 1
                self.stats.dropped += 1
            logger.warning(f"Dropping depth frame at t={depth_frame.timestamp}: {e}")
            return None

        return self.submit(frame)

    def attach_source(self, source: Optional[DepthSource]) -> None:
        """Pull frames from ``source`` on every capture tick while recording.

        The source returns the latest depth frame, or None when nothing new is
        available. Pass None to detach.
        """
        self._source = source
        if source is None:
            self._stop_ticker()
        elif self.is_recording:
            self._start_ticker()

    def stop(self) -> SessionResult:
        """Stop recording, drain pending jobs and write the bundle metadata."""
        start_time = time.time()
        result = SessionResult(status=SessionStatus.FAILED)

        with self._lock:
            if self.state != SessionState.RECORDING:
                result.errors.append("no active recording")
                logger.error(f"Cannot stop recording: session is {self.state.value}")
                return result
            self.state = SessionState.FINALIZING
            handle = self.handle
            executor = self._executor
            futures = self._futures
            self._futures = []

        self._stop_ticker()
        result.bundle_path = handle.path

        try:
            logger.info(f"Draining {len(futures)} frame jobs")
            self._drain(futures, executor)

            self.writer.finalize(
                handle,
                frame_count=self.stats.written,
                frame_rate=self.config.frame_rate,
                recorded_at=self.clock(),
            )

            result.metrics = self.stats.to_dict()
            result.metrics["bundle_size_bytes"] = bundle_size_bytes(handle.path)
            result.metrics["recording_seconds"] = start_time - self._started_at
            result.status = SessionStatus.COMPLETED

            logger.info(
                f"Recording stopped: {self.stats.written}/{self.stats.attempted} frames written, "
                f"{result.metrics['bundle_size_bytes'] / 1e6:.2f} MB"
            )

        except Exception as e:
            result.errors.append(str(e))
            logger.error(f"Failed to finalize bundle {handle.path}: {e}", exc_info=True)

        finally:
            self._release_projector()
            with self._lock:
                self.state = SessionState.IDLE
                self.handle = None
                self._executor = None
            result.duration_seconds = time.time() - start_time

        return result

    def _encode_and_write(self, handle: BundleHandle, frame: PointCloudFrame) -> bool:
        try:
            compressed = self.codec.compress(frame)
            self.writer.write_frame(handle, compressed.frame_index, compressed.data)
        except (CodecError, OSError, ValueError) as e:
            logger.warning(f"Dropped frame {frame.frame_index}: {e}")
            return False
        logger.debug(
            f"Frame {compressed.frame_index}: {frame.num_points} points -> {compressed.size_bytes} bytes"
        )
        return True

    def _drain(self, futures: List[Future], executor: ThreadPoolExecutor) -> None:
        done, not_done = wait(futures, timeout=self.config.drain_timeout_seconds)

        if not_done:
            cancelled = sum(1 for f in not_done if f.cancel())
            logger.warning(
                f"Abandoned {len(not_done)} frame jobs after {self.config.drain_timeout_seconds}s "
                f"({cancelled} not started, {len(not_done) - cancelled} still running)"
            )
        executor.shutdown(wait=False, cancel_futures=True)

        written = dropped = 0
        for future in done:
            error = future.exception()
            if error is not None:
                logger.warning(f"Frame job failed: {error}")
                dropped += 1
            elif future.result():
                written += 1
            else:
                dropped += 1

        with self._lock:
            self.stats.written = written
            self.stats.dropped += dropped
            self.stats.abandoned = len(not_done)

    def _release_projector(self) -> None:
        with self._lock:
            if not self._owns_projector:
                return
            projector, self.projector = self.projector, None
            self._owns_projector = False
        projector.close()

    def _on_tick(self) -> None:
        source = self._source
        if source is None or not self.is_recording:
            return
        depth_frame = source()
        if depth_frame is not None:
            self.submit_depth(depth_frame)

    def _start_ticker(self) -> None:
        if self._ticker is not None and self._ticker.is_running:
            return
        self._ticker = CaptureTicker(self.config.frame_rate, self._on_tick)
        self._ticker.start()

    def _stop_ticker(self) -> None:
        ticker, self._ticker = self._ticker, None
        if ticker is not None:
            ticker.stop()
