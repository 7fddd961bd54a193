"""
File system utilities for the Agent Orchestrator.

This module provides safe file operations including:
- Atomic writes (write to temp file, then rename)
- Durable line appends for append-only logs
- Directory creation
- File reading with encoding handling
"""

from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path


class FileSystemError(Exception):
    """Raised when a file system operation fails."""
    pass


def ensure_dir(path: str | Path) -> Path:
    """
    Create a directory if it does not exist.

    Creates parent directories as needed (like mkdir -p).

    Args:
        path: Path to the directory to create.

    Returns:
        Path: The path object for the created/existing directory.

    Raises:
        FileSystemError: If directory creation fails.
    """
    path = Path(path)
    try:
        path.mkdir(parents=True, exist_ok=True)
        return path
    except OSError as e:
        raise FileSystemError(f"Failed to create directory {path}: {e}")


def safe_write(path: str | Path, content: str, encoding: str = "utf-8") -> None:
    """
    Write content to a file atomically.

    Uses a temporary file, fsync and rename so a reader sees either the old
    or the new content, never a partial write.

    Args:
        path: Path to the file to write.
        content: Content to write to the file.
        encoding: Character encoding to use. Defaults to utf-8.

    Raises:
        FileSystemError: If write operation fails.
    """
    path = Path(path)
    ensure_dir(path.parent)

    try:
        # Temp file in the same directory keeps the rename on one filesystem
        fd, temp_path = tempfile.mkstemp(
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding=encoding) as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())

            os.replace(temp_path, path)
        except Exception:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise
    except OSError as e:
        raise FileSystemError(f"Failed to write file {path}: {e}")


def append_line(path: str | Path, line: str, encoding: str = "utf-8") -> None:
    """
    Append a single line to a file and flush it to disk.

    Args:
        path: Path to the file to append to.
        line: Line content without trailing newline.
        encoding: Character encoding to use.

    Raises:
        FileSystemError: If the append fails.
    """
    path = Path(path)
    ensure_dir(path.parent)

    try:
        with open(path, "a", encoding=encoding) as f:
            f.write(line + "\n")
            f.flush()
            os.fsync(f.fileno())
    except OSError as e:
        raise FileSystemError(f"Failed to append to {path}: {e}")


def file_exists(path: str | Path) -> bool:
    """Check if a file exists and is a regular file."""
    return Path(path).is_file()


def read_file(path: str | Path, encoding: str = "utf-8") -> str:
    """
    Read a file's contents with encoding handling.

    Args:
        path: Path to the file to read.
        encoding: Character encoding. Defaults to utf-8.

    Returns:
        str: Contents of the file.

    Raises:
        FileSystemError: If file cannot be read.
    """
    path = Path(path)

    if not path.exists():
        raise FileSystemError(f"File not found: {path}")

    if not path.is_file():
        raise FileSystemError(f"Not a file: {path}")

    try:
        return path.read_text(encoding=encoding)
    except UnicodeDecodeError as e:
        raise FileSystemError(f"Failed to decode file {path} with encoding {encoding}: {e}")
    except OSError as e:
        raise FileSystemError(f"Failed to read file {path}: {e}")


def read_lines(path: str | Path, encoding: str = "utf-8") -> list[str]:
    """
    Read the non-empty lines of a file.

    Returns an empty list when the file does not exist.
    """
    if not file_exists(path):
        return []
    return [line for line in read_file(path, encoding).splitlines() if line.strip()]


def list_files(directory: str | Path, pattern: str = "*") -> list[Path]:
    """
    List files matching a glob pattern in a directory.

    Args:
        directory: Directory to search in.
        pattern: Glob pattern to match. Defaults to "*" (all files).

    Returns:
        list[Path]: Matching file paths sorted alphabetically. Empty if the
        directory does not exist.
    """
    directory = Path(directory)
    if not directory.is_dir():
        return []
    return sorted(p for p in directory.glob(pattern) if p.is_file())


def move_file(src: str | Path, dst: str | Path) -> Path:
    """
    Move a file, creating the destination directory if needed.

    Raises:
        FileSystemError: If the move fails.
    """
    src = Path(src)
    dst = Path(dst)
    ensure_dir(dst.parent)
    try:
        shutil.move(str(src), str(dst))
        return dst
    except OSError as e:
        raise FileSystemError(f"Failed to move {src} to {dst}: {e}")
