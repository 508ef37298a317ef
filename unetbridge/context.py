"""Where a job's files live and its worker runs.

:class:`LocalContext` and :class:`RemoteContext` implement the same file and
process primitives, so transfer and execution code is written once and never
branches on transport.
"""

from __future__ import annotations

import logging
import os
import stat
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import IO, Sequence

import paramiko

from unetbridge.connection import RemoteSession
from unetbridge.process import LocalProcessHandle, ProcessHandle, RemoteProcessHandle
from unetbridge.utils.path_helpers import parent_folders, posix_join, validate_remote_path

logger = logging.getLogger(__name__)


class ExecutionContext(ABC):
    """File-system and process primitives of one worker location."""

    #: Prefix for shell-transcript log lines, e.g. ``alice@gpu01 $``.
    prompt: str = "$"
    #: Short host label for observers.
    host_label: str = "localhost"

    @abstractmethod
    def validate_path(self, path: str) -> bool:
        """Return True if *path* may be used as a transfer destination."""

    @abstractmethod
    def join(self, *parts: str) -> str: ...

    @abstractmethod
    def ancestors(self, path: str) -> list[str]:
        """Return the folders above *path*, shallowest first."""

    @abstractmethod
    def exists(self, path: str) -> bool: ...

    @abstractmethod
    def is_dir(self, path: str) -> bool: ...

    @abstractmethod
    def size(self, path: str) -> int: ...

    @abstractmethod
    def mkdir(self, path: str) -> None: ...

    @abstractmethod
    def open_read(self, path: str) -> IO[bytes]: ...

    @abstractmethod
    def open_write(self, path: str) -> IO[bytes]:
        """Open *path* for writing, truncating an existing file."""

    @abstractmethod
    def remove(self, path: str) -> None: ...

    @abstractmethod
    def rmdir(self, path: str) -> None:
        """Remove the empty folder *path*."""

    @abstractmethod
    def rename(self, old_path: str, new_path: str) -> None:
        """Rename *old_path* to *new_path*, replacing an existing target."""

    @abstractmethod
    def create_process(self, command: str | Sequence[str]) -> ProcessHandle: ...

    def close(self) -> None:
        """Release channels held by the context."""


class LocalContext(ExecutionContext):
    """The machine we are running on."""

    def __init__(self, cwd: str | None = None, env: dict | None = None) -> None:
        self.cwd = cwd
        self.env = env

    def validate_path(self, path: str) -> bool:
        return bool(path) and "\x00" not in path

    def join(self, *parts: str) -> str:
        return os.path.join(*parts)

    def ancestors(self, path: str) -> list[str]:
        parents = Path(path).absolute().parents
        return [str(p) for p in reversed(parents) if p.parent != p]

    def exists(self, path: str) -> bool:
        return os.path.exists(path)

    def is_dir(self, path: str) -> bool:
        return os.path.isdir(path)

    def size(self, path: str) -> int:
        return os.path.getsize(path)

    def mkdir(self, path: str) -> None:
        os.mkdir(path)

    def open_read(self, path: str) -> IO[bytes]:
        return open(path, "rb")

    def open_write(self, path: str) -> IO[bytes]:
        return open(path, "wb")

    def remove(self, path: str) -> None:
        os.remove(path)

    def rmdir(self, path: str) -> None:
        os.rmdir(path)

    def rename(self, old_path: str, new_path: str) -> None:
        os.replace(old_path, new_path)

    def create_process(self, command: str | Sequence[str]) -> ProcessHandle:
        return LocalProcessHandle(command, cwd=self.cwd, env=self.env)


class RemoteContext(ExecutionContext):
    """A host reachable through a :class:`RemoteSession`.

    The SFTP channel is opened on first use and kept until :meth:`close`.
    """

    def __init__(self, session: RemoteSession) -> None:
        self.session = session
        self.prompt = f"{session.identity.username}@{session.identity.host} $"
        self.host_label = session.identity.host
        self._sftp: paramiko.SFTPClient | None = None
        self._lock = threading.Lock()

    def validate_path(self, path: str) -> bool:
        return validate_remote_path(path)

    def join(self, *parts: str) -> str:
        return posix_join(*parts)

    def ancestors(self, path: str) -> list[str]:
        return parent_folders(path)

    @property
    def sftp(self) -> paramiko.SFTPClient:
        with self._lock:
            if self._sftp is None:
                self._sftp = self.session.open_sftp()
            return self._sftp

    def exists(self, path: str) -> bool:
        try:
            self.sftp.stat(path)
        except FileNotFoundError:
            return False
        return True

    def is_dir(self, path: str) -> bool:
        try:
            attr = self.sftp.stat(path)
        except FileNotFoundError:
            return False
        return isinstance(attr.st_mode, int) and stat.S_ISDIR(attr.st_mode)

    def size(self, path: str) -> int:
        return self.sftp.stat(path).st_size or 0

    def mkdir(self, path: str) -> None:
        self.sftp.mkdir(path)

    def open_read(self, path: str) -> IO[bytes]:
        remote_fh = self.sftp.open(path, "rb")
        # Pipelined read-ahead instead of one round-trip per chunk.
        try:
            remote_fh.prefetch()
        except (OSError, paramiko.SSHException) as exc:
            logger.debug("prefetch() unavailable for %s: %s", path, exc)
        return remote_fh

    def open_write(self, path: str) -> IO[bytes]:
        remote_fh = self.sftp.open(path, "wb")
        # Up to 100 writes in flight; close() still waits for every ACK.
        remote_fh.set_pipelined(True)
        return remote_fh

    def remove(self, path: str) -> None:
        self.sftp.remove(path)

    def rmdir(self, path: str) -> None:
        self.sftp.rmdir(path)

    def rename(self, old_path: str, new_path: str) -> None:
        try:
            self.sftp.rename(old_path, new_path)
        except OSError:
            # rename fails on most SFTP servers if the target exists
            self.sftp.remove(new_path)
            self.sftp.rename(old_path, new_path)

    def create_process(self, command: str | Sequence[str]) -> ProcessHandle:
        return RemoteProcessHandle(self.session, command)

    def close(self) -> None:
        with self._lock:
            sftp, self._sftp = self._sftp, None
        if sftp is not None:
            try:
                sftp.close()
            except (OSError, paramiko.SSHException) as exc:
                logger.debug("Ignoring error while closing SFTP channel: %s", exc)


def make_context(session: RemoteSession | None) -> ExecutionContext:
    """Return a remote context for *session*, or the local one when None."""
    if session is None:
        return LocalContext()
    return RemoteContext(session)
