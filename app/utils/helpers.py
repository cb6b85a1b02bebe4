"""
Helper utilities for the ingest pipeline.

Common path and time functions used across the file_ingest domain.
"""

import posixpath
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union


def now_utc() -> datetime:
    """Get current timestamp as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_timestamp(ts: Union[datetime, float]) -> str:
    """Format a datetime or epoch seconds as an RFC 3339 UTC string."""
    if not isinstance(ts, datetime):
        ts = datetime.fromtimestamp(ts, tz=timezone.utc)
    elif ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def normalise_path(path: Union[str, Path]) -> Path:
    """Return an absolute version of ``path`` without resolving symlinks."""
    return Path(posixpath.normpath(str(Path(path).expanduser().absolute())))


def get_file_extension(path: Union[str, Path]) -> str:
    """Get lower-cased file extension including the dot (``.mp4``)."""
    return Path(path).suffix.lower()


def is_hidden(path: Path, prefix: str = ".") -> bool:
    """Check if path is hidden (name starts with ``prefix``)."""
    return bool(prefix) and path.name.startswith(prefix)


def is_within(path: Path, root: Path) -> bool:
    """Check whether ``path`` lies at or below ``root``."""
    try:
        path.relative_to(root)
    except ValueError:
        return False
    return True


def relative_to_root(path: Union[str, Path], root: Optional[Union[str, Path]]) -> str:
    """
    Return ``path`` relative to ``root`` using forward slashes.

    Falls back to the normalised absolute path when ``path`` lies outside
    ``root`` or no root is given.
    """
    path = normalise_path(path)
    if root is None:
        return path.as_posix()

    root = normalise_path(root)
    if not is_within(path, root):
        return path.as_posix()
    return path.relative_to(root).as_posix()


def format_bytes(bytes_count: int) -> str:
    """Format bytes as human-readable string."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_count < 1024.0:
            return f"{bytes_count:.1f} {unit}"
        bytes_count /= 1024.0
    return f"{bytes_count:.1f} PB"
