"""File I/O utilities for bundles and exports."""
from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Iterator, List, Union

import numpy as np


def write_bytes_atomic(data: bytes, path: Path) -> Path:
    """Write bytes so that readers never observe a partially written file.

    The payload goes to a temporary file in the destination directory and is
    renamed over ``path``. An existing file at ``path`` is replaced.

    Args:
        data: Bytes to write.
        path: Destination path.

    Returns:
        Path to the written file.
    """
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    return path


def save_json(data: Union[Dict, List], path: Path, indent: int = 2) -> Path:
    """Save data as JSON file.

    Args:
        data: Data to serialize.
        path: Output path.
        indent: JSON indentation (0 for compact).

    Returns:
        Path to saved file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=indent if indent > 0 else None, default=_json_serializer)
    return path


def load_json(path: Path) -> Union[Dict, List]:
    """Load data from JSON file."""
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def load_jsonl(path: Path) -> List[Dict[str, Any]]:
    """Load JSONL file (one JSON object per line), skipping malformed lines."""
    entries = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if line:
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError:
                    continue
    return entries


def _json_serializer(obj: Any) -> Any:
    """Custom JSON serializer for special types."""
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.floating):
        return float(obj)
    if isinstance(obj, Path):
        return str(obj)
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    raise TypeError(f"Object of type {type(obj)} is not JSON serializable")


def iter_files_with_extension(directory: Path, extension: str) -> Iterator[Path]:
    """Iterate over regular files with an extension, sorted by file name.

    The extension match is case-insensitive and ignores hidden files
    (including in-progress temporary files).

    Args:
        directory: Directory to scan.
        extension: Extension without the leading dot.

    Yields:
        File paths in lexicographic name order.
    """
    suffix = "." + extension.lstrip(".").lower()
    files = [
        p for p in directory.iterdir()
        if p.is_file() and not p.name.startswith(".") and p.suffix.lower() == suffix
    ]
    yield from sorted(files, key=lambda p: p.name)


def directory_size_bytes(directory: Path) -> int:
    """Total size of all files below a directory, recursively."""
    total = 0
    for entry in directory.iterdir():
        if entry.is_dir():
            total += directory_size_bytes(entry)
        elif entry.is_file():
            total += entry.stat().st_size
    return total
