"""Shared fakes: an in-memory remote file system, scripted processes, a fake clock."""

from __future__ import annotations

import io
import posixpath
from typing import Callable, Sequence

import pytest

from unetbridge.context import ExecutionContext
from unetbridge.process import ProcessHandle
from unetbridge.utils.path_helpers import command_string, parent_folders, posix_join, validate_remote_path


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Monotonic clock advanced only by ``sleep``."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps = 0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps += 1
        self.now += seconds


# ---------------------------------------------------------------------------
# Process handle
# ---------------------------------------------------------------------------


class FakeProcessHandle(ProcessHandle):
    """Scripted process.

    Output chunks are handed out one per read.  The process exits after
    ``alive_polls`` liveness checks (never, if None) or, once terminated,
    ``terminate_delay`` seconds later on *clock* (never, if None).
    """

    def __init__(
        self,
        stdout: Sequence[bytes] = (),
        stderr: Sequence[bytes] = (),
        exit_code: int = 0,
        alive_polls: int | None = 0,
        terminate_delay: float | None = 0.0,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.stdout_chunks = list(stdout)
        self.stderr_chunks = list(stderr)
        self.final_code = exit_code
        self.alive_polls = alive_polls
        self.terminate_delay = terminate_delay
        self.clock = clock or (lambda: 0.0)
        self.started = False
        self.terminated_at: float | None = None
        self.terminate_calls = 0
        self.kill_calls = 0
        self.disconnected = False
        self._code: int | None = None

    def start(self) -> None:
        self.started = True

    def read_stdout(self) -> bytes:
        return self.stdout_chunks.pop(0) if self.stdout_chunks else b""

    def read_stderr(self) -> bytes:
        return self.stderr_chunks.pop(0) if self.stderr_chunks else b""

    def is_alive(self) -> bool:
        if self._code is not None:
            return False
        if self.terminated_at is not None:
            if self.terminate_delay is not None and self.clock() >= self.terminated_at + self.terminate_delay:
                self._code = -15
                return False
            return True
        if self.alive_polls is None:
            return True
        if self.alive_polls <= 0:
            self._code = self.final_code
            return False
        self.alive_polls -= 1
        return True

    @property
    def exit_code(self) -> int | None:
        return self._code

    def terminate(self) -> None:
        self.terminate_calls += 1
        if self.terminated_at is None:
            self.terminated_at = self.clock()

    def kill(self) -> None:
        self.kill_calls += 1
        self._code = -9

    def disconnect(self) -> None:
        self.disconnected = True


# ---------------------------------------------------------------------------
# In-memory remote context
# ---------------------------------------------------------------------------


class _FakeRemoteFile(io.BytesIO):
    def __init__(self, fs: FakeRemoteContext, path: str, fail_write: BaseException | None = None) -> None:
        super().__init__()
        self._fs = fs
        self._path = path
        self._fail_write = fail_write

    def write(self, data) -> int:
        if self._fail_write is not None:
            raise self._fail_write
        written = super().write(data)
        self._fs.files[self._path] = self.getvalue()
        return written


class FakeRemoteContext(ExecutionContext):
    """Remote-looking context backed by dicts; records every mutation."""

    prompt = "alice@gpu01 $"
    host_label = "gpu01"

    def __init__(self, process_factory: Callable[[str], ProcessHandle] | None = None) -> None:
        self.dirs: set[str] = {"/", "/tmp"}
        self.files: dict[str, bytes] = {}
        self.ops: list[tuple[str, str]] = []
        self.failures: dict[tuple[str, str], BaseException] = {}
        self.commands: list[str] = []
        self.closed = False
        self._process_factory = process_factory or (lambda command: FakeProcessHandle())

    def fail(self, op: str, path: str, exc: BaseException) -> None:
        """Make *op* on *path* raise *exc*."""
        self.failures[(op, path)] = exc

    def _check(self, op: str, path: str) -> None:
        exc = self.failures.get((op, path))
        if exc is not None:
            raise exc

    def validate_path(self, path: str) -> bool:
        return validate_remote_path(path)

    def join(self, *parts: str) -> str:
        return posix_join(*parts)

    def ancestors(self, path: str) -> list[str]:
        return parent_folders(path)

    def exists(self, path: str) -> bool:
        return path in self.files or path in self.dirs

    def is_dir(self, path: str) -> bool:
        return path in self.dirs

    def size(self, path: str) -> int:
        if path not in self.files:
            raise FileNotFoundError(path)
        return len(self.files[path])

    def mkdir(self, path: str) -> None:
        self._check("mkdir", path)
        if posixpath.dirname(path) not in self.dirs:
            raise FileNotFoundError(path)
        self.ops.append(("mkdir", path))
        self.dirs.add(path)

    def open_read(self, path: str):
        self._check("open_read", path)
        if path not in self.files:
            raise FileNotFoundError(path)
        return io.BytesIO(self.files[path])

    def open_write(self, path: str):
        self._check("open_write", path)
        if posixpath.dirname(path) not in self.dirs:
            raise FileNotFoundError(path)
        self.ops.append(("open_write", path))
        self.files[path] = b""
        return _FakeRemoteFile(self, path, self.failures.get(("write", path)))

    def remove(self, path: str) -> None:
        self._check("remove", path)
        if path not in self.files:
            raise FileNotFoundError(path)
        self.ops.append(("remove", path))
        del self.files[path]

    def rmdir(self, path: str) -> None:
        self._check("rmdir", path)
        if path not in self.dirs:
            raise FileNotFoundError(path)
        prefix = path.rstrip("/") + "/"
        if any(p.startswith(prefix) for p in list(self.files) + list(self.dirs)):
            raise OSError(f"Directory not empty: {path}")
        self.ops.append(("rmdir", path))
        self.dirs.discard(path)

    def rename(self, old_path: str, new_path: str) -> None:
        self._check("rename", old_path)
        self.ops.append(("rename", old_path))
        self.files[new_path] = self.files.pop(old_path)

    def create_process(self, command) -> ProcessHandle:
        text = command_string(command)
        self.commands.append(text)
        return self._process_factory(text)

    def close(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Progress sink
# ---------------------------------------------------------------------------


class RecordingSink:
    """ProgressSink that records reports and can interrupt after N of them."""

    def __init__(self, interrupt_after: int | None = None) -> None:
        self.reports: list[tuple[str, int, int]] = []
        self.interrupt_after = interrupt_after
        self.cancelled = False

    def report(self, label: str, current: int, total: int) -> None:
        self.reports.append((label, current, total))

    def interrupted(self) -> bool:
        if self.cancelled:
            return True
        return self.interrupt_after is not None and len(self.reports) >= self.interrupt_after


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def remote_fs() -> FakeRemoteContext:
    """Return an empty in-memory remote context (only ``/`` and ``/tmp`` exist)."""
    return FakeRemoteContext()


@pytest.fixture()
def make_handle() -> Callable[..., FakeProcessHandle]:
    return FakeProcessHandle


@pytest.fixture()
def make_remote_fs() -> Callable[..., FakeRemoteContext]:
    return FakeRemoteContext


@pytest.fixture()
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture()
def make_sink() -> Callable[..., RecordingSink]:
    return RecordingSink
