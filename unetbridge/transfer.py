"""File transfer engine for UNetBridge.

Uploads and downloads single files through an :class:`ExecutionContext`:
- Missing parent folders are created and returned in safe deletion order
- Chunked streaming with progress throttled to whole percent steps
- Cancellation polled between chunks; a cancelled upload is rolled back
- Downloads use a ``.tmp`` file and an atomic rename
"""

from __future__ import annotations

import logging
import os
import shlex
from pathlib import Path
from typing import IO

import paramiko

from unetbridge.context import ExecutionContext
from unetbridge.errors import CancelledError, TransferError
from unetbridge.progress import ProgressSink
from unetbridge.utils.path_helpers import human_readable_size, local_parent_folders

logger = logging.getLogger(__name__)

CHUNK_SIZE = 256 * 1024  # 256 KB per read/write call

_IO_ERRORS = (OSError, paramiko.SSHException)


class _NullSink:
    def report(self, label: str, current: int, total: int) -> None:
        pass

    def interrupted(self) -> bool:
        return False


class TransferManager:
    """Moves files between this machine and a job's execution context.

    In a :class:`LocalContext` "remote" paths are plain local paths and an
    upload is a file copy; return values and errors are the same.
    """

    def __init__(self, context: ExecutionContext, chunk_size: int = CHUNK_SIZE) -> None:
        self.context = context
        self.chunk_size = chunk_size

    # ------------------------------------------------------------------
    # Folders
    # ------------------------------------------------------------------

    def make_folders(self, folder: str, sink: ProgressSink | None = None) -> list[str]:
        """Create *folder* and its missing ancestors; return them deepest first."""
        if not self.context.validate_path(folder):
            raise TransferError(f"Invalid folder path: {folder!r}")
        created: list[str] = []
        try:
            self._create_missing(self.context.ancestors(folder) + [folder], created, sink or _NullSink())
        except _IO_ERRORS as exc:
            raise TransferError(
                f"Could not create folder {self.context.host_label}:{folder}: {exc}",
                created_folders=list(reversed(created)),
            ) from exc
        return list(reversed(created))

    def _create_missing(self, folders: list[str], created: list[str], sink: ProgressSink) -> None:
        """mkdir every folder of *folders* that is missing, appending to *created*."""
        host = self.context.host_label
        for folder in folders:
            if self.context.is_dir(folder):
                continue
            sink.report(f"Creating folder '{folder}' on host '{host}'", 0, 0)
            logger.info("%s mkdir %s", self.context.prompt, shlex.quote(folder))
            self.context.mkdir(folder)
            created.append(folder)

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    def upload(self, local_path: str | os.PathLike[str], remote_path: str, sink: ProgressSink | None = None) -> list[str]:
        """Copy *local_path* to *remote_path*, overwriting an existing file.

        Returns:
            The folders this call created, deepest first, so iterating the
            list forward is a valid deletion order.

        Raises:
            CancelledError: ``sink`` was interrupted; the partial file and all
                created folders have been removed.
            TransferError: Any other I/O failure.  Created folders are kept
                and listed in ``TransferError.created_folders``.
        """
        sink = sink or _NullSink()
        local_path = str(local_path)
        if not self.context.validate_path(remote_path):
            raise TransferError(f"Invalid destination path: {remote_path!r}")

        host = self.context.host_label
        created: list[str] = []
        file_opened = False
        try:
            self._create_missing(self.context.ancestors(remote_path), created, sink)

            size = os.path.getsize(local_path)
            label = f"Copying '{os.path.basename(local_path)}' to host '{host}'"
            logger.info(
                "$ sftp %s %s:%s (%s)",
                shlex.quote(local_path),
                host,
                shlex.quote(remote_path),
                human_readable_size(size),
            )
            with open(local_path, "rb") as local_fh, self.context.open_write(remote_path) as remote_fh:
                file_opened = True
                self._stream(local_fh, remote_fh, size, label, sink)
        except CancelledError:
            self._rollback(remote_path if file_opened else None, created)
            raise
        except _IO_ERRORS as exc:
            raise TransferError(
                f"Upload of '{local_path}' to {host}:{remote_path} failed: {exc}",
                created_folders=list(reversed(created)),
            ) from exc

        logger.info("Upload complete: %s → %s:%s", local_path, host, remote_path)
        return list(reversed(created))

    def _rollback(self, remote_path: str | None, created: list[str]) -> None:
        """Remove a cancelled upload's file and folders, deepest first."""
        if remote_path is not None:
            try:
                self.remove_file(remote_path)
            except TransferError as exc:
                logger.warning("Rollback: %s", exc)
        for folder in reversed(created):
            try:
                self.remove_folder(folder)
            except TransferError as exc:
                logger.warning("Rollback: %s", exc)

    # ------------------------------------------------------------------
    # Download
    # ------------------------------------------------------------------

    def download(self, remote_path: str, local_path: str | os.PathLike[str], sink: ProgressSink | None = None) -> list[str]:
        """Fetch *remote_path* into *local_path*, creating local parent folders.

        Returns:
            The local folders this call created, deepest first.  They are
            the caller's to remove if the result is discarded.

        Raises:
            CancelledError: ``sink`` was interrupted; neither a partial file nor
                the local folders this call created remain.
            TransferError: Any other I/O failure.
        """
        sink = sink or _NullSink()
        local_path = str(local_path)
        tmp_local = local_path + ".tmp"
        host = self.context.host_label
        created: list[str] = []
        try:
            for folder in local_parent_folders(local_path):
                sink.report(f"Creating folder '{folder}'", 0, 0)
                logger.info("$ mkdir %s", shlex.quote(str(folder)))
                folder.mkdir()
                created.append(str(folder))

            size = self.context.size(remote_path)
            label = f"Fetching '{remote_path}' from host '{host}'"
            logger.info(
                "$ sftp %s:%s %s (%s)",
                host,
                shlex.quote(remote_path),
                shlex.quote(local_path),
                human_readable_size(size),
            )
            with self.context.open_read(remote_path) as remote_fh:
                with open(tmp_local, "wb") as local_fh:
                    self._stream(remote_fh, local_fh, size, label, sink)
            os.replace(tmp_local, local_path)
        except CancelledError:
            Path(tmp_local).unlink(missing_ok=True)
            for folder in reversed(created):
                try:
                    os.rmdir(folder)
                except OSError as exc:
                    logger.warning("Rollback: could not remove folder %s: %s", folder, exc)
            raise
        except _IO_ERRORS as exc:
            Path(tmp_local).unlink(missing_ok=True)
            raise TransferError(
                f"Download of {host}:{remote_path} to '{local_path}' failed: {exc}",
                created_folders=list(reversed(created)),
            ) from exc

        logger.info("Download complete: %s:%s → %s", host, remote_path, local_path)
        return list(reversed(created))

    # ------------------------------------------------------------------
    # Removal / rename
    # ------------------------------------------------------------------

    def remove_file(self, path: str) -> None:
        logger.info("%s rm %s", self.context.prompt, shlex.quote(path))
        try:
            self.context.remove(path)
        except _IO_ERRORS as exc:
            raise TransferError(f"Could not remove file {path}: {exc}") from exc

    def remove_folder(self, path: str) -> None:
        """Remove the folder *path*, which must be empty."""
        logger.info("%s rmdir %s", self.context.prompt, shlex.quote(path))
        try:
            self.context.rmdir(path)
        except _IO_ERRORS as exc:
            raise TransferError(f"Could not remove folder {path}: {exc}") from exc

    def rename(self, old_path: str, new_path: str) -> None:
        logger.info("%s mv %s %s", self.context.prompt, shlex.quote(old_path), shlex.quote(new_path))
        try:
            self.context.rename(old_path, new_path)
        except _IO_ERRORS as exc:
            raise TransferError(f"Could not rename {old_path} to {new_path}: {exc}") from exc

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def _stream(self, src: IO[bytes], dst: IO[bytes], total: int, label: str, sink: ProgressSink) -> int:
        """Copy *src* to *dst* in chunks, checking for cancel before each one.

        Progress is forwarded only when it crosses a whole percent.
        """
        transferred = 0
        last_percent = -1
        sink.report(label, 0, total)
        while True:
            if sink.interrupted():
                raise CancelledError(f"Transfer cancelled: {label}")
            chunk = src.read(self.chunk_size)
            if not chunk:
                break
            dst.write(chunk)
            transferred += len(chunk)
            if total > 0:
                percent = min(100, transferred * 100 // total)
                if percent > last_percent:
                    last_percent = percent
                    sink.report(label, min(transferred, total), total)
        return transferred
