"""SSH session lifecycle for remote workers.

A :class:`RemoteSession` owns one authenticated paramiko connection and hands
out exec and SFTP channels.  Opening is atomic: either the session ends up
CONNECTED or the client is torn down and :class:`AuthError` is raised.
:class:`SessionPool` implements the reuse rule between jobs.
"""

from __future__ import annotations

import logging
import socket
import threading
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path
from typing import Callable, Optional, Union

import keyring
import keyring.errors
import paramiko

from unetbridge.errors import AuthError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

StateChangeCallback = Callable[["SessionState", Optional[str]], None]

KEYRING_SERVICE = "UNetBridge"
DEFAULT_TIMEOUT = 15.0  # seconds
DEFAULT_KEEPALIVE_INTERVAL = 30  # seconds


@dataclass(frozen=True)
class HostIdentity:
    """Who we connect to; two sessions are interchangeable iff these match."""

    host: str
    port: int = 22
    username: str = ""

    def __str__(self) -> str:
        return f"{self.username}@{self.host}:{self.port}"

    @property
    def account(self) -> str:
        """Keyring account key for this identity (user@host)."""
        return f"{self.username}@{self.host}"


@dataclass
class PasswordCredential:
    """Password authentication.

    When *password* is None the password is looked up in the OS keyring.
    """

    password: str | None = None

    def connect_kwargs(self, identity: HostIdentity) -> dict:
        password = self.password
        if password is None:
            password = keyring.get_password(KEYRING_SERVICE, identity.account)
            if password is None:
                logger.debug("No keyring password stored for %s", identity.account)
        return {"password": password, "look_for_keys": False}


@dataclass
class KeyFileCredential:
    """Private-key authentication from a key file."""

    key_path: str
    passphrase: str | None = None

    def connect_kwargs(self, identity: HostIdentity) -> dict:
        return {
            "key_filename": str(Path(self.key_path).expanduser()),
            "passphrase": self.passphrase,
            "look_for_keys": False,
        }


Credential = Union[PasswordCredential, KeyFileCredential]


# ---------------------------------------------------------------------------
# Custom exceptions
# ---------------------------------------------------------------------------


class UnknownHostError(AuthError):
    """The worker host presented a key that known_hosts does not list.

    ``fingerprint`` and ``key`` let the CLI ask whether to trust the host;
    :func:`accept_host_key` records the answer.
    """

    def __init__(
        self,
        message: str,
        hostname: str = "",
        key_type: str = "",
        fingerprint: str = "",
        key: paramiko.PKey | None = None,
    ) -> None:
        super().__init__(message)
        self.hostname = hostname
        self.key_type = key_type
        self.fingerprint = fingerprint
        self.key = key


# ---------------------------------------------------------------------------
# Host-key policy
# ---------------------------------------------------------------------------


class _CapturingPolicy(paramiko.MissingHostKeyPolicy):
    """Reject unknown keys, keeping the key for :class:`UnknownHostError`."""

    def missing_host_key(
        self,
        client: paramiko.SSHClient,
        hostname: str,
        key: paramiko.PKey,
    ) -> None:
        raw = key.get_fingerprint()
        fingerprint = ":".join(f"{b:02x}" for b in raw)
        raise UnknownHostError(
            f"Host '{hostname}' is not in known_hosts.\n"
            f"Key type: {key.get_name()}\n"
            f"Fingerprint (MD5): {fingerprint}",
            hostname=hostname,
            key_type=key.get_name(),
            fingerprint=fingerprint,
            key=key,
        )


def _close_client_safely(client: paramiko.SSHClient) -> None:
    """Close *client* without raising."""
    try:
        client.close()
    except Exception as exc:
        logger.debug("Ignoring error while closing SSH client: %s", exc)


def accept_host_key(hostname: str, key: paramiko.PKey, known_hosts: Path | None = None) -> None:
    """Record *key* as trusted for *hostname* in the known_hosts file.

    Missing ``~/.ssh`` and known_hosts are created.
    """
    known_hosts_path = known_hosts or Path.home() / ".ssh" / "known_hosts"
    known_hosts_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    host_keys = paramiko.HostKeys(str(known_hosts_path)) if known_hosts_path.exists() else paramiko.HostKeys()
    host_keys.add(hostname, key.get_name(), key)
    host_keys.save(str(known_hosts_path))
    logger.info("Saved host key for %s to known_hosts", hostname)


# ---------------------------------------------------------------------------
# Credential helpers
# ---------------------------------------------------------------------------


def store_password(identity: HostIdentity, password: str) -> None:
    """Store *password* in the OS keyring for *identity*."""
    keyring.set_password(KEYRING_SERVICE, identity.account, password)
    logger.debug("Password stored in keyring for %s", identity.account)


def delete_password(identity: HostIdentity) -> None:
    """Remove the stored password for *identity* from the OS keyring."""
    try:
        keyring.delete_password(KEYRING_SERVICE, identity.account)
    except keyring.errors.PasswordDeleteError:
        logger.debug("No keyring password to delete for %s", identity.account)
        return
    logger.debug("Password deleted from keyring for %s", identity.account)


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class SessionState(Enum):
    """States for the SSH session lifecycle."""

    DISCONNECTED = auto()
    CONNECTING = auto()
    CONNECTED = auto()
    ERROR = auto()


# ---------------------------------------------------------------------------
# RemoteSession
# ---------------------------------------------------------------------------


class RemoteSession:
    """One authenticated SSH connection to a worker host.

    Thread-safety: ``_lock`` protects all state transitions.  A session is
    owned by a single job at a time; channels it hands out are not shared.
    """

    def __init__(
        self,
        identity: HostIdentity,
        credential: Credential,
        timeout: float = DEFAULT_TIMEOUT,
        keepalive_interval: int = DEFAULT_KEEPALIVE_INTERVAL,
        trust_unknown_hosts: bool = False,
        on_state_change: StateChangeCallback | None = None,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
    ) -> None:
        """Store what is needed to connect; :meth:`open` does the connecting.

        Args:
            identity: Host, port and username to connect to.
            credential: Exactly one means of authentication.
            timeout: Connection timeout in seconds.
            keepalive_interval: SSH keepalive interval in seconds.
            trust_unknown_hosts: Add unknown host keys automatically instead
                of raising :class:`UnknownHostError`.
            on_state_change: Callback invoked on every state transition.
                Called with ``(new_state, optional_message)``.
            client_factory: Creates the underlying ``paramiko.SSHClient``.
        """
        self.identity = identity
        self.credential = credential
        self.timeout = timeout
        self.keepalive_interval = keepalive_interval
        self.trust_unknown_hosts = trust_unknown_hosts
        self._on_state_change = on_state_change
        self._client_factory = client_factory

        self._client: paramiko.SSHClient | None = None
        self._state = SessionState.DISCONNECTED
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # State management
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        """Current session state (thread-safe read)."""
        with self._lock:
            return self._state

    @property
    def connected(self) -> bool:
        with self._lock:
            if self._state != SessionState.CONNECTED or self._client is None:
                return False
            transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    def _set_state(self, new_state: SessionState, message: str | None = None) -> None:
        """Caller holds ``self._lock``; the callback runs inside it."""
        self._state = new_state
        logger.debug(
            "Session %s state → %s%s",
            self.identity,
            new_state.name,
            f" ({message})" if message else "",
        )
        if self._on_state_change:
            try:
                self._on_state_change(new_state, message)
            except Exception:
                logger.exception("Exception in on_state_change callback")

    def matches(self, identity: HostIdentity) -> bool:
        """True if this session is connected to exactly *identity*."""
        return self.identity == identity and self.connected

    # ------------------------------------------------------------------
    # Open / close
    # ------------------------------------------------------------------

    def open(self) -> HostIdentity:
        """Establish the SSH connection.

        Returns the confirmed identity so the caller can remember the host.

        Raises:
            UnknownHostError: Host key is not in known_hosts (carries fingerprint).
            AuthError: Wrong credentials or network-level failure.
        """
        with self._lock:
            if self._state == SessionState.CONNECTED:
                logger.debug("open() called but already connected to %s", self.identity)
                return self.identity
            if self._state == SessionState.ERROR:
                raise AuthError(f"Session to {self.identity} failed before and cannot be reused")
            self._set_state(SessionState.CONNECTING)

        try:
            client = self._do_connect()
        except AuthError as exc:
            with self._lock:
                self._set_state(SessionState.ERROR, str(exc))
            raise

        with self._lock:
            self._client = client
            self._set_state(SessionState.CONNECTED)
        logger.info("Connected to %s", self.identity)
        return self.identity

    def _do_connect(self) -> paramiko.SSHClient:
        """Connect a fresh client; on any failure close it and raise AuthError."""
        identity = self.identity
        logger.info("Connecting to %s@%s:%d", identity.username, identity.host, identity.port)

        client = self._client_factory()
        known_hosts_path = Path.home() / ".ssh" / "known_hosts"
        if known_hosts_path.exists():
            client.load_host_keys(str(known_hosts_path))
        if self.trust_unknown_hosts:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        else:
            client.set_missing_host_key_policy(_CapturingPolicy())

        connect_kwargs: dict = {
            "hostname": identity.host,
            "port": identity.port,
            "username": identity.username,
            "timeout": self.timeout,
            "allow_agent": True,
        }
        connect_kwargs.update(self.credential.connect_kwargs(identity))

        try:
            client.connect(**connect_kwargs)
        except UnknownHostError:
            _close_client_safely(client)
            raise
        except paramiko.BadHostKeyException as exc:
            _close_client_safely(client)
            raise UnknownHostError(
                f"Host key mismatch for {identity.host} — check ~/.ssh/known_hosts",
                hostname=identity.host,
            ) from exc
        except paramiko.AuthenticationException as exc:
            _close_client_safely(client)
            raise AuthError(f"Authentication failed for {identity}: {exc}") from exc
        except (paramiko.SSHException, socket.timeout, OSError) as exc:
            _close_client_safely(client)
            raise AuthError(f"Could not connect to {identity}: {exc}") from exc

        transport = client.get_transport()
        if transport is None or not transport.is_active():
            _close_client_safely(client)
            raise AuthError(f"SSH transport to {identity} unavailable after connect")
        transport.set_keepalive(self.keepalive_interval)
        return client

    def close(self) -> None:
        """Close the SSH connection; safe to call more than once."""
        with self._lock:
            client, self._client = self._client, None
            if self._state == SessionState.DISCONNECTED and client is None:
                return
            self._set_state(SessionState.DISCONNECTED)
        if client is not None:
            _close_client_safely(client)
            logger.info("Disconnected from %s", self.identity)

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------

    def get_transport(self) -> paramiko.Transport:
        """Return the active transport.

        Raises:
            AuthError: If not currently connected.
        """
        with self._lock:
            if self._client is None or self._state != SessionState.CONNECTED:
                raise AuthError(f"Not connected to {self.identity} (state: {self._state.name})")
            transport = self._client.get_transport()
        if transport is None or not transport.is_active():
            raise AuthError(f"SSH transport to {self.identity} is no longer active")
        return transport

    def open_sftp(self) -> paramiko.SFTPClient:
        """Open a new SFTP (transfer) channel."""
        return paramiko.SFTPClient.from_transport(self.get_transport())

    def open_exec(self, command: str) -> paramiko.Channel:
        """Open an exec channel and start *command* on it."""
        channel = self.get_transport().open_session()
        channel.exec_command(command)
        return channel

    def channel(self, kind: str, command: str | None = None) -> paramiko.SFTPClient | paramiko.Channel:
        """Channel factory: ``"transfer"`` for SFTP, ``"exec"`` for a command."""
        if kind == "transfer":
            return self.open_sftp()
        if kind == "exec":
            if command is None:
                raise ValueError("An exec channel needs a command")
            return self.open_exec(command)
        raise ValueError(f"Unknown channel kind: {kind!r}")


def open_session(identity: HostIdentity, credential: Credential, **kwargs) -> RemoteSession:
    """Create and open a :class:`RemoteSession` in one step."""
    session = RemoteSession(identity, credential, **kwargs)
    session.open()
    return session


# ---------------------------------------------------------------------------
# SessionPool
# ---------------------------------------------------------------------------


class SessionPool:
    """Hands connected sessions to jobs, reusing them when identities match.

    A session is lent to one job at a time.  Idle sessions whose identity
    differs from a new request are closed before a new one is opened.
    """

    def __init__(self, session_factory: Callable[..., RemoteSession] = RemoteSession, **session_kwargs) -> None:
        self._session_factory = session_factory
        self._session_kwargs = session_kwargs
        self._idle: list[RemoteSession] = []
        self._busy: list[RemoteSession] = []
        self._lock = threading.Lock()

    def acquire(self, identity: HostIdentity, credential: Credential) -> RemoteSession:
        """Return a connected session for *identity*, opening one if needed."""
        stale: list[RemoteSession] = []
        with self._lock:
            for session in self._idle:
                if session.matches(identity):
                    self._idle.remove(session)
                    self._busy.append(session)
                    logger.debug("Reusing session %s", identity)
                    return session
            stale, self._idle = self._idle, []

        for session in stale:
            session.close()

        session = self._session_factory(identity, credential, **self._session_kwargs)
        session.open()
        with self._lock:
            self._busy.append(session)
        return session

    def release(self, session: RemoteSession) -> None:
        """Give *session* back; connected sessions stay available for reuse."""
        with self._lock:
            if session in self._busy:
                self._busy.remove(session)
            if session.connected:
                self._idle.append(session)
                return
        session.close()

    def close(self) -> None:
        """Close every session the pool knows about."""
        with self._lock:
            sessions = self._idle + self._busy
            self._idle, self._busy = [], []
        for session in sessions:
            session.close()

    @property
    def idle_sessions(self) -> list[RemoteSession]:
        with self._lock:
            return list(self._idle)
