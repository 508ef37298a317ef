"""POSIX path helpers for remote staging folders."""

from __future__ import annotations

import logging
import os
import posixpath
import shlex
from pathlib import Path, PurePosixPath
from typing import Sequence

logger = logging.getLogger(__name__)


def posix_join(*parts: str) -> str:
    """Join path parts using POSIX (forward-slash) rules.

    Suitable for constructing remote paths regardless of the local OS.
    """
    return posixpath.join(*parts)


def human_readable_size(size_bytes: int | float) -> str:
    """Convert a byte count to a human-readable string (e.g. "4.2 MB")."""
    if size_bytes < 0:
        return "0 B"
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size_bytes < 1024.0:
            if unit == "B":
                return f"{int(size_bytes)} B"
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.1f} PB"


def validate_remote_path(path: str) -> bool:
    """Return True if *path* is safe for SFTP operations.

    Rejects empty and relative paths as well as paths that contain null
    bytes or path-traversal sequences (``..``).
    """
    if not path or not path.startswith("/"):
        logger.warning("Remote path rejected — not absolute: %r", path)
        return False
    if "\x00" in path:
        logger.warning("Remote path rejected — contains null byte: %r", path)
        return False
    if ".." in PurePosixPath(path).parts:
        logger.warning("Remote path rejected — contains '..': %r", path)
        return False
    return True


def parent_folders(path: str) -> list[str]:
    """Return every ancestor folder of *path*, shallowest first.

    Example::

        >>> parent_folders("/a/b/c/out.bin")
        ['/a', '/a/b', '/a/b/c']
    """
    parts = [p for p in path.split("/") if p]
    folders: list[str] = []
    cumulative = ""
    for part in parts[:-1]:
        cumulative = f"{cumulative}/{part}"
        folders.append(cumulative)
    return folders


def local_parent_folders(path: str | os.PathLike[str]) -> list[Path]:
    """Return the missing ancestor folders of a local *path*, shallowest first."""
    missing: list[Path] = []
    folder = Path(path).absolute().parent
    while not folder.is_dir():
        missing.append(folder)
        if folder.parent == folder:
            break
        folder = folder.parent
    missing.reverse()
    return missing


def command_string(command: str | Sequence[str]) -> str:
    """Render *command* as a single shell command line."""
    if isinstance(command, str):
        return command
    return shlex.join(command)


def command_argv(command: str | Sequence[str]) -> list[str]:
    """Split *command* into an argument vector."""
    if isinstance(command, str):
        return shlex.split(command)
    return list(command)
