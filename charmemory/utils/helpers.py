"""Utility functions for charmemory."""

import os
import re
import tempfile
from datetime import datetime
from pathlib import Path

_UNSAFE_NAME_RE = re.compile(r"[^a-zA-Z0-9_-]")


def ensure_dir(path: Path) -> Path:
    """Ensure a directory exists, creating it if necessary."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def safe_filename(name: str) -> str:
    """Convert a character or chat name to a safe filename stem.

    >>> safe_filename("Seraphina (v2)")
    'Seraphina__v2_'
    """
    return _UNSAFE_NAME_RE.sub("_", name)


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Write *content* to *path* via a temp file + rename so readers never see partial writes."""
    ensure_dir(path.parent)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding=encoding) as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def memory_timestamp(now: datetime | None = None) -> str:
    """Timestamp format used on memory blocks (``YYYY-MM-DD HH:MM``)."""
    return (now or datetime.now()).strftime("%Y-%m-%d %H:%M")
