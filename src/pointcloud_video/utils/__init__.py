"""Utility modules for the point-cloud video pipeline."""
from __future__ import annotations

from .logging import setup_logging, get_logger, ProgressTracker
from .io import (
    write_bytes_atomic,
    save_json,
    load_json,
    load_jsonl,
    iter_files_with_extension,
    directory_size_bytes,
)

__all__ = [
    # Logging
    "setup_logging",
    "get_logger",
    "ProgressTracker",
    # I/O
    "write_bytes_atomic",
    "save_json",
    "load_json",
    "load_jsonl",
    "iter_files_with_extension",
    "directory_size_bytes",
]
