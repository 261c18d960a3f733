"""Fixed-rate, single-pass playback of a point-cloud video bundle.

    CLOSED --open()--> LOADING --> READY --play()--> PLAYING --> STOPPED
                                     ^                              |
                                     +-------- play() (replay) -----+

``play`` emits frame 0 immediately, then one frame every ``1 / frame_rate``
seconds on a background thread, and stops on its own after the last frame.
Every emission is a fresh copy of the decoded frame, so viewers may keep or
mutate what they receive.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from .bundle import BundleReader, LoadedBundle
from .codec import FrameCodec
from .models import PointCloudFrame, RecordingConfig
from .utils.logging import get_logger

logger = get_logger(__name__)

FrameCallback = Callable[[PointCloudFrame], None]


class PlaybackState(Enum):
    CLOSED = "closed"
    LOADING = "loading"
    READY = "ready"
    PLAYING = "playing"
    STOPPED = "stopped"


class PlaybackStatus(Enum):
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class PlaybackResult:
    """Result of a playback operation."""
    status: PlaybackStatus
    state: PlaybackState
    frame_count: int = 0
    frame_rate: float = 0.0
    skipped: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status == PlaybackStatus.COMPLETED


class PlaybackSession:
    """Loads a bundle and plays it back at its recorded frame rate."""

    def __init__(
        self,
        codec: FrameCodec,
        config: Optional[RecordingConfig] = None,
        strict: bool = False,
    ):
        self.codec = codec
        self.config = config or RecordingConfig()
        self.strict = strict

        self.state = PlaybackState.CLOSED
        self.bundle: Optional[LoadedBundle] = None
        self.frames: List[PointCloudFrame] = []
        self.current_index = 0
        self.frame_interval = 0.0

        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    def _result(self, status: PlaybackStatus, error: Optional[str] = None) -> PlaybackResult:
        result = PlaybackResult(
            status=status,
            state=self.state,
            frame_count=len(self.frames),
            frame_rate=1.0 / self.frame_interval if self.frame_interval > 0 else 0.0,
            skipped=list(self.bundle.skipped) if self.bundle else [],
        )
        if error:
            result.errors.append(error)
            logger.error(error)
        return result

    def open(self, bundle_dir: Path) -> PlaybackResult:
        """Load and decode every frame of a bundle.

        Frames that fail to decode are left out. Opening a bundle with no
        playable frames fails and leaves the session closed.
        """
        with self._lock:
            if self.state == PlaybackState.PLAYING:
                return self._result(PlaybackStatus.FAILED, "stop playback before opening another bundle")
            self.state = PlaybackState.LOADING

        try:
            reader = BundleReader(
                bundle_dir,
                self.codec,
                strict=self.strict,
                default_frame_rate=self.config.default_playback_rate,
            )
            loaded = reader.load()
        except (OSError, ValueError) as e:
            self._reset(PlaybackState.CLOSED)
            return self._result(PlaybackStatus.FAILED, f"Cannot load bundle {bundle_dir}: {e}")

        if not loaded.frames:
            self._reset(PlaybackState.CLOSED)
            return self._result(PlaybackStatus.FAILED, f"no playable frames in {bundle_dir}")

        with self._lock:
            self.bundle = loaded
            self.frames = loaded.frames
            self.frame_interval = 1.0 / loaded.frame_rate
            self.current_index = 0
            self.state = PlaybackState.READY

        logger.info(
            f"Opened {Path(bundle_dir).name}: {len(loaded.frames)} frames at {loaded.frame_rate} fps"
            + (f", {len(loaded.skipped)} skipped" if loaded.skipped else "")
        )
        return self._result(PlaybackStatus.COMPLETED)

    def play(
        self,
        on_frame: FrameCallback,
        on_finished: Optional[Callable[[], None]] = None,
    ) -> PlaybackResult:
        """Start single-pass playback from the first frame.

        Args:
            on_frame: Receives each emitted frame on the playback thread.
            on_finished: Called once after the last frame has been emitted.
                Not called when playback is stopped early.
        """
        with self._lock:
            if self.state == PlaybackState.PLAYING:
                return self._result(PlaybackStatus.FAILED, "playback already running")
            if self.state not in (PlaybackState.READY, PlaybackState.STOPPED):
                return self._result(PlaybackStatus.FAILED, f"no bundle ready (state: {self.state.value})")

            self.current_index = 0
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._run,
                args=(on_frame, on_finished, self._stop_event),
                name="playback",
                daemon=True,
            )
            self.state = PlaybackState.PLAYING
            self._thread.start()

        logger.info(f"Playback started ({len(self.frames)} frames)")
        return self._result(PlaybackStatus.COMPLETED)

    def stop(self) -> PlaybackResult:
        """Stop playback. No frame is emitted after this returns."""
        with self._lock:
            if self.state != PlaybackState.PLAYING:
                return self._result(PlaybackStatus.FAILED, f"not playing (state: {self.state.value})")
            self._stop_event.set()
            self.state = PlaybackState.STOPPED
            thread = self._thread

        if thread is not None and thread is not threading.current_thread():
            thread.join()

        logger.info(f"Playback stopped at frame {self.current_index}")
        return self._result(PlaybackStatus.COMPLETED)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the playback thread exits. Returns False on timeout."""
        thread = self._thread
        if thread is None:
            return True
        if thread is threading.current_thread():
            return False
        thread.join(timeout)
        return not thread.is_alive()

    def close(self) -> None:
        """Stop playback if needed and release decoded frames."""
        if self.state == PlaybackState.PLAYING:
            self.stop()
        self.wait()
        self._reset(PlaybackState.CLOSED)

    def _reset(self, state: PlaybackState) -> None:
        with self._lock:
            self.bundle = None
            self.frames = []
            self.current_index = 0
            self.frame_interval = 0.0
            self.state = state

    def _run(
        self,
        on_frame: FrameCallback,
        on_finished: Optional[Callable[[], None]],
        stop_event: threading.Event,
    ) -> None:
        frames = self.frames
        interval = self.frame_interval
        deadline = time.monotonic()
        finished = False

        try:
            for index, frame in enumerate(frames):
                if index > 0:
                    deadline += interval
                    if stop_event.wait(max(0.0, deadline - time.monotonic())):
                        break
                with self._lock:
                    if stop_event.is_set():
                        break
                    self.current_index = index
                on_frame(frame.copy())
            else:
                finished = not stop_event.is_set()
        except Exception as e:
            logger.error(f"Playback callback failed at frame {self.current_index}: {e}", exc_info=True)

        with self._lock:
            if self.state == PlaybackState.PLAYING and stop_event is self._stop_event:
                self.state = PlaybackState.STOPPED

        if finished:
            logger.info("Playback finished")
            if on_finished is not None:
                on_finished()
