"""Exception taxonomy for UNetBridge.

Every error a job can end with derives from :class:`UNetBridgeError` so
callers can catch the whole family in one place.  :class:`CleanupError` is
only ever collected and logged, never raised out of a cleanup pass.
"""

from __future__ import annotations


class UNetBridgeError(Exception):
    """Base class for all UNetBridge errors."""


class ConfigurationError(UNetBridgeError):
    """Raised when job parameters are missing or fail a pre-flight probe."""


class AuthError(UNetBridgeError):
    """Raised when an SSH connection cannot be established or authenticated."""


class TransferError(UNetBridgeError):
    """Raised when an upload or download fails for reasons other than cancel.

    ``created_folders`` lists remote folders the failed upload had already
    created (safe deletion order), so the owner can still clean them up.
    """

    def __init__(self, message: str, created_folders: list[str] | None = None) -> None:
        super().__init__(message)
        self.created_folders = list(created_folders or [])


class ExecutionError(UNetBridgeError):
    """Raised when a worker process exits with a non-zero status."""

    def __init__(self, exit_code: int, stderr: str = "", command: str = "") -> None:
        self.exit_code = exit_code
        self.stderr = stderr
        self.command = command
        message = f"Command exited with status {exit_code}"
        if command:
            message = f"{command!r} exited with status {exit_code}"
        if stderr.strip():
            message += f": {stderr.strip()}"
        super().__init__(message)


class CancelledError(UNetBridgeError):
    """Raised on the job thread when a user or system cancel was observed."""


class CleanupError(UNetBridgeError):
    """Describes one artifact that could not be removed during cleanup."""

    def __init__(self, path: str, cause: BaseException | None = None) -> None:
        self.path = path
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Could not remove {path}{detail}")
