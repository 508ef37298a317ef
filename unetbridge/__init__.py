"""UNetBridge — stage data, run a worker locally or over SSH, fetch results."""

from unetbridge.connection import HostIdentity, KeyFileCredential, PasswordCredential, RemoteSession, SessionPool
from unetbridge.errors import (
    AuthError,
    CancelledError,
    CleanupError,
    ConfigurationError,
    ExecutionError,
    TransferError,
    UNetBridgeError,
)
from unetbridge.job import Job, JobParameters, JobSnapshot, JobState
from unetbridge.registry import JobRegistry

__version__ = "1.0.0"

__all__ = [
    "AuthError",
    "CancelledError",
    "CleanupError",
    "ConfigurationError",
    "ExecutionError",
    "HostIdentity",
    "Job",
    "JobParameters",
    "JobRegistry",
    "JobSnapshot",
    "JobState",
    "KeyFileCredential",
    "PasswordCredential",
    "RemoteSession",
    "SessionPool",
    "TransferError",
    "UNetBridgeError",
]
