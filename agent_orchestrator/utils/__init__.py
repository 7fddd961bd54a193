"""Utility modules for the Agent Orchestrator."""

from agent_orchestrator.utils.fs import (
    FileSystemError,
    append_line,
    ensure_dir,
    file_exists,
    list_files,
    move_file,
    read_file,
    read_lines,
    safe_write,
)

__all__ = [
    "FileSystemError",
    "append_line",
    "ensure_dir",
    "file_exists",
    "list_files",
    "move_file",
    "read_file",
    "read_lines",
    "safe_write",
]
