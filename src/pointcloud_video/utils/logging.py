"""Logging and progress tracking utilities."""
from __future__ import annotations

import json
import logging
import sys
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

ROOT_LOGGER_NAME = "pointcloud_video"


class JSONFormatter(logging.Formatter):
    """Formatter that outputs one JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "severity": record.levelname,
            "message": record.getMessage(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "logger": record.name,
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        # Context fields attached by setup_logging
        if hasattr(record, "context"):
            log_entry.update(record.context)

        return json.dumps(log_entry)


class ConsoleFormatter(logging.Formatter):
    """Human-readable formatter for interactive use."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        timestamp = datetime.now().strftime("%H:%M:%S")

        msg = f"{color}[{timestamp}] {record.levelname:8s}{self.RESET} {record.name}: {record.getMessage()}"

        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)

        return msg


class _ContextFilter(logging.Filter):
    def __init__(self, context: Dict[str, Any]):
        super().__init__()
        self.context = context

    def filter(self, record: logging.LogRecord) -> bool:
        record.context = dict(self.context)
        return True


def setup_logging(
    level: int = logging.INFO,
    session_id: Optional[str] = None,
    json_format: bool = False,
    stream=None,
) -> logging.Logger:
    """Set up logging for the capture and playback pipeline.

    Args:
        level: Logging level.
        session_id: Recording/playback session ID added to every record.
        json_format: If True, emit one JSON object per line.
        stream: Output stream (defaults to stdout).

    Returns:
        Configured package logger.
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(level)

    # Remove existing handlers
    logger.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setLevel(level)

    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(ConsoleFormatter())

    if session_id:
        handler.addFilter(_ContextFilter({"session_id": session_id}))

    logger.addHandler(handler)
    return logger


def get_logger(name: str = ROOT_LOGGER_NAME) -> logging.Logger:
    """Get a logger instance.

    Args:
        name: Logger name (will be prefixed with 'pointcloud_video.').

    Returns:
        Logger instance.
    """
    if not name.startswith(ROOT_LOGGER_NAME):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return logging.getLogger(name)


@dataclass
class StageMetrics:
    """Metrics for a single processing stage."""
    stage_name: str
    start_time: float
    end_time: Optional[float] = None
    items_total: int = 0
    items_processed: int = 0
    errors: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return time.time() - self.start_time
        return self.end_time - self.start_time

    @property
    def progress_percent(self) -> float:
        if self.items_total == 0:
            return 0.0
        return (self.items_processed / self.items_total) * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage_name": self.stage_name,
            "duration_seconds": self.duration_seconds,
            "items_total": self.items_total,
            "items_processed": self.items_processed,
            "progress_percent": self.progress_percent,
            "errors": self.errors,
            "metadata": self.metadata,
        }


class ProgressTracker:
    """Track progress across the stages of a load or replay.

    Provides:
    - Stage-level progress tracking
    - Per-item error collection
    - Report generation
    """

    def __init__(
        self,
        task_name: str,
        logger: Optional[logging.Logger] = None,
    ):
        """Initialize progress tracker.

        Args:
            task_name: Name of the task being tracked.
            logger: Logger instance (creates one if not provided).
        """
        self.task_name = task_name
        self.logger = logger or get_logger(task_name)

        self.stages: List[StageMetrics] = []
        self.current_stage: Optional[StageMetrics] = None
        self.start_time = time.time()
        self.task_metadata: Dict[str, Any] = {}

    @contextmanager
    def stage(self, name: str, total_items: int = 0):
        """Context manager for tracking a processing stage.

        Args:
            name: Stage name for logging.
            total_items: Expected number of items to process.

        Yields:
            StageMetrics object for the stage.
        """
        stage_metrics = StageMetrics(
            stage_name=name,
            start_time=time.time(),
            items_total=total_items,
        )
        self.current_stage = stage_metrics

        self.logger.debug(f"Starting stage: {name} ({total_items} items)")

        try:
            yield stage_metrics
        except Exception as e:
            stage_metrics.errors.append(str(e))
            self.logger.error(f"Stage {name} failed: {e}")
            raise
        finally:
            stage_metrics.end_time = time.time()
            self.logger.info(
                f"Completed stage: {name} ({stage_metrics.items_processed}/{total_items} items "
                f"in {stage_metrics.duration_seconds:.2f}s, {len(stage_metrics.errors)} errors)"
            )
            self.stages.append(stage_metrics)
            self.current_stage = None

    def update(self, items_processed: int = 1, **metadata):
        """Update progress for the current stage."""
        if self.current_stage is None:
            return

        self.current_stage.items_processed += items_processed
        self.current_stage.metadata.update(metadata)

    def log_error(self, message: str, exception: Optional[Exception] = None):
        """Record a per-item error for the current stage and log it as a warning.

        Args:
            message: Error message.
            exception: Optional exception object.
        """
        full_message = message
        if exception:
            full_message = f"{message}: {exception}"

        if self.current_stage is not None:
            self.current_stage.errors.append(full_message)

        self.logger.warning(full_message)

    def generate_report(self) -> Dict[str, Any]:
        """Generate a summary report of the tracked task."""
        return {
            "task_name": self.task_name,
            "total_duration_seconds": time.time() - self.start_time,
            "stages": [s.to_dict() for s in self.stages],
            "metadata": self.task_metadata,
            "success": all(len(s.errors) == 0 for s in self.stages),
            "total_errors": sum(len(s.errors) for s in self.stages),
        }
