"""IO utilities shared across the codebase."""

from pathlib import Path


def file_non_empty(path: Path, *, min_bytes: int = 1) -> bool:
    """Return True if path exists and has at least min_bytes. Catches OSError."""
    try:
        return path.exists() and path.stat().st_size >= min_bytes
    except OSError:
        return False


def file_size(path: Path) -> int:
    """Size of path in bytes, or 0 when it is missing or unreadable."""
    try:
        return path.stat().st_size
    except OSError:
        return 0


def ensure_dir(path: Path) -> Path:
    """
    Create path (and parents) if needed and return it.

    Safe to call concurrently from many workers: an existing directory is not an error.
    """
    path.mkdir(parents=True, exist_ok=True)
    return path
