"""Owner-only file helpers for local encrypted state."""

import os
from pathlib import Path


def ensure_private_directory(directory: Path) -> Path:
    """Create the directory if needed and restrict it to the owner (700)."""
    directory.mkdir(parents=True, exist_ok=True)
    try:
        directory.chmod(0o700)
    except OSError:
        pass  # Ignore permission errors on some platforms
    return directory


def set_restrictive_permissions(file_path: Path) -> None:
    """Set restrictive file permissions (600 on Unix)."""
    try:
        file_path.chmod(0o600)
    except OSError:
        pass  # Ignore permission errors on some platforms


def write_private_file(file_path: Path, data: bytes) -> None:
    """
    Atomically replace file_path with data, mode 600.

    The data is written to a sibling temporary file first so a crash never
    leaves a half-written document behind.
    """
    ensure_private_directory(file_path.parent)
    tmp_path = file_path.with_name(file_path.name + ".tmp")
    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, file_path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    set_restrictive_permissions(file_path)


def append_private_line(file_path: Path, line: str) -> None:
    """Append a line to file_path, creating it with mode 600."""
    ensure_private_directory(file_path.parent)
    fd = os.open(file_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
    with os.fdopen(fd, "a", encoding="utf-8") as handle:
        handle.write(line + "\n")


def remove_file(file_path: Path) -> bool:
    """Delete file_path if present. Returns whether a file was removed."""
    try:
        file_path.unlink()
        return True
    except FileNotFoundError:
        return False
