"""Supervised execution of worker processes.

Local child processes and remote exec channels sit behind the same
:class:`ProcessHandle` interface, so :class:`ProcessRunner` drives both with
one polling loop: drain stdout/stderr without blocking, feed complete lines
to a parser, detect exit, and on cancel escalate from a graceful terminate
signal to a kill after a bounded grace window.
"""

from __future__ import annotations

import codecs
import logging
import queue
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum, auto
from typing import TYPE_CHECKING, Callable, Iterator, Optional, Sequence

import paramiko
from paramiko.common import cMSG_CHANNEL_REQUEST
from paramiko.message import Message

from unetbridge.errors import AuthError, CancelledError, ExecutionError
from unetbridge.utils.path_helpers import command_argv, command_string

if TYPE_CHECKING:
    from unetbridge.connection import RemoteSession
    from unetbridge.context import ExecutionContext
    from unetbridge.parsers import LineParser
    from unetbridge.progress import ProgressSink

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.1  # seconds between polls of a running process
GRACE_PERIOD = 10.0  # seconds between terminate and kill
READ_SIZE = 4096
_FLUSH_TIMEOUT = 5.0

StateChangeCallback = Callable[["ProcessState"], None]


class ProcessState(Enum):
    """Lifecycle of one :meth:`ProcessRunner.run` invocation."""

    STARTING = auto()
    RUNNING = auto()
    CANCELLING = auto()
    EXITED = auto()
    KILLED = auto()


@dataclass
class ExitResult:
    """Outcome of a successful run."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""


# ---------------------------------------------------------------------------
# Process handles
# ---------------------------------------------------------------------------


class ProcessHandle(ABC):
    """A running command, local or remote.  Owned by exactly one runner."""

    @abstractmethod
    def start(self) -> None:
        """Spawn the command.  Raises :class:`ExecutionError` on failure."""

    @abstractmethod
    def read_stdout(self) -> bytes:
        """Return whatever stdout bytes are available without blocking."""

    @abstractmethod
    def read_stderr(self) -> bytes:
        """Return whatever stderr bytes are available without blocking."""

    @abstractmethod
    def is_alive(self) -> bool:
        """True while the command has not exited."""

    @property
    @abstractmethod
    def exit_code(self) -> int | None:
        """Exit status once the command has exited, else None."""

    @abstractmethod
    def terminate(self) -> None:
        """Send the graceful terminate signal."""

    @abstractmethod
    def kill(self) -> None:
        """Send the forceful kill signal."""

    def flush(self) -> None:
        """Block until output buffered before exit is readable."""

    @abstractmethod
    def disconnect(self) -> None:
        """Release pipes / channel.  Safe to call more than once."""


class LocalProcessHandle(ProcessHandle):
    """Child process whose pipes are drained by two reader threads."""

    def __init__(self, command: str | Sequence[str], cwd: str | None = None, env: dict | None = None) -> None:
        self.argv = command_argv(command)
        self.cwd = cwd
        self.env = env
        self._popen: subprocess.Popen | None = None
        self._stdout: queue.Queue[bytes] = queue.Queue()
        self._stderr: queue.Queue[bytes] = queue.Queue()
        self._readers: list[threading.Thread] = []

    def start(self) -> None:
        try:
            self._popen = subprocess.Popen(
                self.argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=self.cwd,
                env=self.env,
                bufsize=0,
            )
        except OSError as exc:
            raise ExecutionError(127, str(exc), command_string(self.argv)) from exc

        for name, pipe, target in (
            ("stdout", self._popen.stdout, self._stdout),
            ("stderr", self._popen.stderr, self._stderr),
        ):
            reader = threading.Thread(
                target=self._pump,
                args=(pipe, target),
                name=f"{name}-reader-{self._popen.pid}",
                daemon=True,
            )
            reader.start()
            self._readers.append(reader)

    @staticmethod
    def _pump(pipe, target: queue.Queue[bytes]) -> None:
        try:
            for chunk in iter(lambda: pipe.read(READ_SIZE), b""):
                target.put(chunk)
        except (OSError, ValueError):
            pass  # Pipe closed under us during disconnect
        finally:
            pipe.close()

    @staticmethod
    def _drain(source: queue.Queue[bytes]) -> bytes:
        chunks: list[bytes] = []
        while True:
            try:
                chunks.append(source.get_nowait())
            except queue.Empty:
                return b"".join(chunks)

    def read_stdout(self) -> bytes:
        return self._drain(self._stdout)

    def read_stderr(self) -> bytes:
        return self._drain(self._stderr)

    def is_alive(self) -> bool:
        return self._popen is not None and self._popen.poll() is None

    @property
    def exit_code(self) -> int | None:
        if self._popen is None:
            return None
        return self._popen.poll()

    def terminate(self) -> None:
        if self.is_alive():
            self._popen.terminate()

    def kill(self) -> None:
        if self.is_alive():
            self._popen.kill()

    def flush(self) -> None:
        for reader in self._readers:
            reader.join(timeout=_FLUSH_TIMEOUT)

    def disconnect(self) -> None:
        if self._popen is None:
            return
        try:
            self._popen.wait(timeout=_FLUSH_TIMEOUT)
        except subprocess.TimeoutExpired:
            logger.warning("Process %d still running at disconnect", self._popen.pid)
        self.flush()


def send_channel_signal(channel: paramiko.Channel, signal_name: str) -> None:
    """Send an SSH ``signal`` channel request (RFC 4254 §6.9), e.g. ``TERM``."""
    message = Message()
    message.add_byte(cMSG_CHANNEL_REQUEST)
    message.add_int(channel.remote_chanid)
    message.add_string("signal")
    message.add_boolean(False)
    message.add_string(signal_name)
    channel.transport._send_user_message(message)


class RemoteProcessHandle(ProcessHandle):
    """Command running on an SSH exec channel."""

    def __init__(self, session: RemoteSession, command: str | Sequence[str]) -> None:
        self.session = session
        self.command = command_string(command)
        self._channel: paramiko.Channel | None = None

    def start(self) -> None:
        try:
            self._channel = self.session.open_exec(self.command)
        except (AuthError, paramiko.SSHException, OSError) as exc:
            raise ExecutionError(-1, str(exc), self.command) from exc

    def read_stdout(self) -> bytes:
        chunks: list[bytes] = []
        while self._channel.recv_ready():
            chunk = self._channel.recv(READ_SIZE)
            if not chunk:
                break
            chunks.append(chunk)
        return b"".join(chunks)

    def read_stderr(self) -> bytes:
        chunks: list[bytes] = []
        while self._channel.recv_stderr_ready():
            chunk = self._channel.recv_stderr(READ_SIZE)
            if not chunk:
                break
            chunks.append(chunk)
        return b"".join(chunks)

    def is_alive(self) -> bool:
        return self._channel is not None and not self._channel.exit_status_ready()

    @property
    def exit_code(self) -> int | None:
        if self._channel is None or not self._channel.exit_status_ready():
            return None
        return self._channel.recv_exit_status()

    def terminate(self) -> None:
        send_channel_signal(self._channel, "TERM")

    def kill(self) -> None:
        send_channel_signal(self._channel, "KILL")

    def disconnect(self) -> None:
        if self._channel is not None:
            self._channel.close()


# ---------------------------------------------------------------------------
# Line splitting
# ---------------------------------------------------------------------------


class _LineSplitter:
    """Incrementally decode bytes and yield complete lines."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, data: bytes) -> Iterator[str]:
        self._pending += self._decoder.decode(data)
        *lines, self._pending = self._pending.split("\n")
        for line in lines:
            yield line.rstrip("\r")

    def close(self) -> Iterator[str]:
        self._pending += self._decoder.decode(b"", final=True)
        if self._pending:
            line, self._pending = self._pending, ""
            yield line.rstrip("\r")


class _NullSink:
    def report(self, label: str, current: int, total: int) -> None:
        pass

    def interrupted(self) -> bool:
        return False


# ---------------------------------------------------------------------------
# ProcessRunner
# ---------------------------------------------------------------------------


class ProcessRunner:
    """Runs one command at a time in an :class:`ExecutionContext`."""

    def __init__(
        self,
        context: ExecutionContext,
        poll_interval: float = POLL_INTERVAL,
        grace_period: float = GRACE_PERIOD,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        on_state_change: Optional[StateChangeCallback] = None,
    ) -> None:
        self.context = context
        self.poll_interval = poll_interval
        self.grace_period = grace_period
        self._clock = clock
        self._sleep = sleep
        self._on_state_change = on_state_change
        self._state: ProcessState | None = None

    @property
    def state(self) -> ProcessState | None:
        return self._state

    def _set_state(self, state: ProcessState) -> None:
        self._state = state
        logger.debug("Process state → %s", state.name)
        if self._on_state_change:
            try:
                self._on_state_change(state)
            except Exception:
                logger.exception("Exception in process state callback")

    def run(
        self,
        command: str | Sequence[str],
        line_parser: LineParser | None = None,
        sink: ProgressSink | None = None,
        capture_output: bool = False,
    ) -> ExitResult:
        """Run *command* to completion.

        Raises:
            ExecutionError: The command could not start or exited non-zero.
            CancelledError: ``sink.interrupted()`` became true while running.
        """
        sink = sink if sink is not None else _NullSink()
        text = command_string(command)
        logger.info("%s %s", self.context.prompt, text)

        handle = self.context.create_process(command)
        self._set_state(ProcessState.STARTING)
        handle.start()
        self._set_state(ProcessState.RUNNING)

        out, err = _LineSplitter(), _LineSplitter()
        stdout_lines: list[str] = []
        stderr_lines: list[str] = []

        def _dispatch(lines: Iterator[str], stream: str) -> None:
            for line in lines:
                if stream == "stderr":
                    stderr_lines.append(line)
                elif capture_output:
                    stdout_lines.append(line)
                if line_parser is not None and stream in line_parser.streams:
                    line_parser.feed(line, sink)

        try:
            try:
                while True:
                    _dispatch(out.feed(handle.read_stdout()), "stdout")
                    _dispatch(err.feed(handle.read_stderr()), "stderr")
                    if not handle.is_alive():
                        handle.flush()
                        _dispatch(out.feed(handle.read_stdout()), "stdout")
                        _dispatch(err.feed(handle.read_stderr()), "stderr")
                        _dispatch(out.close(), "stdout")
                        _dispatch(err.close(), "stderr")
                        break
                    if sink.interrupted():
                        raise CancelledError(f"Cancelled while running {text!r}")
                    self._sleep(self.poll_interval)
            except CancelledError:
                self._terminate(handle)
                raise
            except (paramiko.SSHException, OSError) as exc:
                raise ExecutionError(-1, str(exc), text) from exc
            exit_code = handle.exit_code
        finally:
            handle.disconnect()

        self._set_state(ProcessState.EXITED)
        if exit_code is None:
            exit_code = -1
        stderr_text = "\n".join(stderr_lines)
        if exit_code != 0:
            logger.error("%r exited with status %d", text, exit_code)
            if stderr_text:
                logger.error("%s", stderr_text)
            raise ExecutionError(exit_code, stderr_text, text)
        return ExitResult(exit_code, "\n".join(stdout_lines), stderr_text)

    def _terminate(self, handle: ProcessHandle) -> None:
        """Terminate, wait up to the grace window, then kill if still alive."""
        self._set_state(ProcessState.CANCELLING)
        try:
            handle.terminate()
        except Exception as exc:
            logger.warning("Process could not be terminated using SIGTERM: %s", exc)

        deadline = self._clock() + self.grace_period
        while handle.is_alive() and self._clock() < deadline:
            self._sleep(self.poll_interval)

        if not handle.is_alive():
            self._set_state(ProcessState.EXITED)
            return
        logger.warning("Process did not exit within %.1fs — killing it", self.grace_period)
        try:
            handle.kill()
        except Exception as exc:
            logger.warning("Process could not be killed: %s", exc)
        self._set_state(ProcessState.KILLED)
