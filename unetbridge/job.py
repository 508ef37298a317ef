"""Cancellable staged-execution jobs.

A :class:`Job` stages input files into its own folder on the worker, runs
the worker executable, fetches the results and removes everything it
created.  Each job runs on its own thread; observers read
:class:`JobSnapshot` objects and may call :meth:`Job.cancel` from any
thread.
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import tempfile
import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import Callable, Optional

import paramiko

from unetbridge.config import DEFAULT_CONFIG
from unetbridge.connection import Credential, HostIdentity, RemoteSession, SessionPool
from unetbridge.context import ExecutionContext, LocalContext, make_context
from unetbridge.errors import (
    AuthError,
    CancelledError,
    CleanupError,
    ConfigurationError,
    ExecutionError,
    TransferError,
    UNetBridgeError,
)
from unetbridge.parsers import LineParser, make_parser
from unetbridge.process import GRACE_PERIOD, POLL_INTERVAL, ExitResult, ProcessRunner
from unetbridge.progress import ProgressMonitor
from unetbridge.transfer import CHUNK_SIZE, TransferManager

logger = logging.getLogger(__name__)

_PROBE_NAME = ".unetbridge-write-probe"


class JobState(Enum):
    """Lifecycle of a :class:`Job`."""

    CREATED = auto()
    PARAMETERIZED = auto()
    STAGING = auto()
    EXECUTING = auto()
    FETCHING = auto()
    READY = auto()
    CANCELLED = auto()
    FAILED = auto()
    CLEANED_UP = auto()


RUNNING_STATES = frozenset({JobState.STAGING, JobState.EXECUTING, JobState.FETCHING})
OUTCOME_STATES = frozenset({JobState.READY, JobState.CANCELLED, JobState.FAILED})
TERMINAL_STATES = OUTCOME_STATES | {JobState.CLEANED_UP}


def _default_ranges() -> dict[str, tuple[float, float]]:
    return {step: tuple(window) for step, window in DEFAULT_CONFIG["progress_ranges"].items()}


@dataclass
class JobParameters:
    """Everything a job needs, fully resolved.

    ``{folder}`` and ``{job_id}`` in *arguments* are replaced with the job's
    staging folder and id.  Upload targets and download sources are names
    relative to that folder.  Without *identity* the job runs locally.
    """

    executable: str
    arguments: list[str] = field(default_factory=list)
    uploads: list[tuple[str, str]] = field(default_factory=list)
    downloads: list[tuple[str, str]] = field(default_factory=list)
    process_folder: str = DEFAULT_CONFIG["process_folder"]
    parser: str = "none"
    parser_options: dict = field(default_factory=dict)
    identity: Optional[HostIdentity] = None
    credential: Optional[Credential] = None
    trust_unknown_hosts: bool = False
    keep_remote_files: bool = False
    progress_ranges: dict[str, tuple[float, float]] = field(default_factory=_default_ranges)

    def command(self, folder: str, job_id: str) -> list[str]:
        """Return the worker argument vector with placeholders filled in."""
        args = [arg.replace("{folder}", folder).replace("{job_id}", job_id) for arg in self.arguments]
        return [self.executable, *args]


@dataclass(frozen=True)
class JobSnapshot:
    """Read-only view of a job for observers."""

    job_id: str
    state: JobState
    label: str
    current: int
    total: int
    progress: float
    host: str
    error: str | None = None


SnapshotCallback = Callable[[JobSnapshot], None]


class Job:
    """One staged-transfer + execution + retrieval unit of work.

    Call :meth:`configure`, then :meth:`start`.  :meth:`cancel` may be called
    at any time from any thread.  Cleanup runs exactly once, automatically,
    when the job reaches READY, CANCELLED or FAILED.

    A *session* handed in is owned by the job and closed at cleanup; a
    session taken from *session_pool* is released back to the pool.
    """

    def __init__(
        self,
        session: RemoteSession | None = None,
        session_pool: SessionPool | None = None,
        grace_period: float = GRACE_PERIOD,
        poll_interval: float = POLL_INTERVAL,
        chunk_size: int = CHUNK_SIZE,
        job_id: str | None = None,
    ) -> None:
        self.job_id = job_id or f"unet-{uuid.uuid4().hex[:12]}"
        self.grace_period = grace_period
        self.poll_interval = poll_interval
        self.chunk_size = chunk_size

        self.params: JobParameters | None = None
        self.session = session
        self._session_pool = session_pool
        self._pooled = False
        self.context: ExecutionContext | None = None
        self.transfer: TransferManager | None = None
        self.folder = ""
        self._parser: LineParser | None = None

        self.created_files: list[str] = []
        self.created_folders: list[str] = []
        self.local_files: list[str] = []
        self.local_folders: list[str] = []
        self.cleanup_errors: list[CleanupError] = []
        self.error: UNetBridgeError | None = None
        self.exit_result: ExitResult | None = None

        self._state = JobState.CREATED
        self._outcome: JobState | None = None
        self._lock = threading.Lock()
        self._cancel_event = threading.Event()
        self._done = threading.Event()
        self._cleaned = False
        self._thread: threading.Thread | None = None
        self._subscribers: list[SnapshotCallback] = []

        self.monitor = ProgressMonitor(self._cancel_event)
        self.monitor.subscribe(lambda status, overall: self._notify())

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> JobState:
        with self._lock:
            return self._state

    @property
    def outcome(self) -> JobState | None:
        """READY, CANCELLED or FAILED once decided; kept after cleanup."""
        with self._lock:
            return self._outcome

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def host(self) -> str:
        if self.context is not None:
            return self.context.host_label
        if self.session is not None:
            return self.session.identity.host
        return "localhost"

    def _set_state(self, new_state: JobState) -> None:
        with self._lock:
            self._state = new_state
            if new_state in OUTCOME_STATES:
                self._outcome = new_state
        logger.debug("Job %s state → %s", self.job_id, new_state.name)
        self._notify()

    def subscribe(self, callback: SnapshotCallback) -> Callable[[], None]:
        """Call *callback* with a fresh snapshot on every state or progress change."""
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def _notify(self) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        if not subscribers:
            return
        snapshot = self.snapshot()
        for callback in subscribers:
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Exception in job %s subscriber", self.job_id)

    def snapshot(self) -> JobSnapshot:
        status = self.monitor.status
        return JobSnapshot(
            job_id=self.job_id,
            state=self.state,
            label=status.label,
            current=status.current,
            total=status.total,
            progress=self.monitor.progress(),
            host=self.host,
            error=str(self.error) if self.error is not None else None,
        )

    # ------------------------------------------------------------------
    # Configure
    # ------------------------------------------------------------------

    def configure(self, params: JobParameters) -> None:
        """Validate *params* and run the pre-flight probes.

        Raises:
            ConfigurationError: Naming the first precondition that failed.
                The job stays CREATED and may be configured again.
        """
        if self.state != JobState.CREATED:
            raise RuntimeError(f"Job {self.job_id} is {self.state.name}, cannot configure")

        parser = self._check_fields(params)
        acquired = self._connect(params)
        try:
            context = make_context(self.session)
            process_folder = params.process_folder
            if isinstance(context, LocalContext):
                process_folder = os.path.abspath(process_folder)
            folder = context.join(process_folder, self.job_id)
            transfer = TransferManager(context, self.chunk_size)
            self._probe_write(transfer, folder)
            self._probe_executable(context, params.executable)
        except ConfigurationError:
            if acquired:
                self._release_session()
            raise

        self.params = params
        self.context = context
        self.transfer = transfer
        self.folder = folder
        self._parser = parser
        self._set_state(JobState.PARAMETERIZED)
        logger.info("Job %s configured for %s in %s", self.job_id, self.host, folder)

    def _check_fields(self, params: JobParameters) -> LineParser:
        if not params.executable:
            raise ConfigurationError("No executable given")
        if not params.process_folder:
            raise ConfigurationError("No process folder given")
        if params.identity is not None:
            if not params.identity.host:
                raise ConfigurationError("No host given")
            if not params.identity.username:
                raise ConfigurationError(f"No username given for {params.identity.host}")
            if params.credential is None and self.session is None:
                raise ConfigurationError(f"No credentials given for {params.identity.account}")
        for local_path, name in params.uploads:
            if not name:
                raise ConfigurationError(f"No destination name for upload of {local_path}")
            if not os.path.isfile(local_path):
                raise ConfigurationError(f"Input file not found: {local_path}")
        for name, local_path in params.downloads:
            if not name or not local_path:
                raise ConfigurationError(f"Incomplete download entry: {name!r} → {local_path!r}")
        for step in ("stage", "execute", "fetch"):
            window = params.progress_ranges.get(step)
            if window is None or not 0.0 <= window[0] <= window[1] <= 1.0:
                raise ConfigurationError(f"Invalid progress range for {step}: {window!r}")
        return make_parser(params.parser, **params.parser_options)

    def _connect(self, params: JobParameters) -> bool:
        """Make ``self.session`` a connected session for *params*.

        Returns True if the session was opened or acquired by this call.
        """
        identity = params.identity
        if identity is None:
            if self.session is not None and not self.session.connected:
                try:
                    self.session.open()
                except AuthError as exc:
                    raise ConfigurationError(f"Cannot connect to {self.session.identity}: {exc}") from exc
            return False
        if self.session is not None:
            if self.session.matches(identity):
                return False
            logger.info("Session %s does not match %s — closing it", self.session.identity, identity)
            if self._pooled:
                self._release_session()
            else:
                self.session.close()
                self.session = None

        try:
            if self._session_pool is not None:
                self.session = self._session_pool.acquire(identity, params.credential)
                self._pooled = True
            else:
                session = RemoteSession(identity, params.credential, trust_unknown_hosts=params.trust_unknown_hosts)
                session.open()
                self.session = session
        except AuthError as exc:
            raise ConfigurationError(f"Cannot connect to {identity}: {exc}") from exc
        return True

    def _probe_write(self, transfer: TransferManager, folder: str) -> None:
        """Upload an empty file into *folder*, then remove it and its folders."""
        target = transfer.context.join(folder, _PROBE_NAME)
        with tempfile.TemporaryDirectory() as tmp:
            probe = Path(tmp) / _PROBE_NAME
            probe.touch()
            try:
                created = transfer.upload(probe, target)
            except TransferError as exc:
                self._remove_probe_folders(transfer, exc.created_folders)
                raise ConfigurationError(f"Process folder is not writable on {self.host}: {exc}") from exc
            except AuthError as exc:
                raise ConfigurationError(f"Lost connection to {self.host}: {exc}") from exc
        try:
            transfer.remove_file(target)
        except UNetBridgeError as exc:
            raise ConfigurationError(f"Cannot remove files in process folder on {self.host}: {exc}") from exc
        self._remove_probe_folders(transfer, created)

    @staticmethod
    def _remove_probe_folders(transfer: TransferManager, folders: list[str]) -> None:
        for folder in folders:
            try:
                transfer.remove_folder(folder)
            except UNetBridgeError as exc:
                logger.warning("Could not remove probe folder: %s", exc)

    def _probe_executable(self, context: ExecutionContext, executable: str) -> None:
        if isinstance(context, LocalContext):
            if shutil.which(executable) is None:
                raise ConfigurationError(f"Executable not found or not executable: {executable}")
            return
        runner = ProcessRunner(context, self.poll_interval, self.grace_period)
        try:
            runner.run(f"command -v {shlex.quote(executable)}")
        except ExecutionError as exc:
            raise ConfigurationError(f"Executable not found on {context.host_label}: {executable}") from exc

    # ------------------------------------------------------------------
    # Start / cancel / wait
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Run the job on its own thread.  May be called once."""
        with self._lock:
            if self._thread is not None:
                raise RuntimeError(f"Job {self.job_id} was already started")
            if self._state != JobState.PARAMETERIZED:
                raise RuntimeError(f"Job {self.job_id} is {self._state.name}, cannot start")
            self._thread = threading.Thread(target=self._run, name=f"job-{self.job_id}", daemon=True)
        self._thread.start()

    def cancel(self) -> None:
        """Request cancellation.  Idempotent; safe from any thread."""
        with self._lock:
            if self._cancel_event.is_set() or self._state in TERMINAL_STATES:
                return
            self._cancel_event.set()
            not_started = self._thread is None
            if not_started:
                # Decided under the lock so a concurrent start() is refused.
                self._state = self._outcome = JobState.CANCELLED
        logger.info("Cancel requested for job %s", self.job_id)
        if not_started:
            self._notify()
            self._finish(JobState.CANCELLED)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cleanup finished; returns False on timeout."""
        return self._done.wait(timeout)

    # ------------------------------------------------------------------
    # Execution thread
    # ------------------------------------------------------------------

    def _run(self) -> None:
        outcome = JobState.FAILED
        try:
            self._stage()
            self._execute()
            self._fetch()
            outcome = JobState.READY
        except CancelledError:
            logger.info("Job %s cancelled", self.job_id)
            outcome = JobState.CANCELLED
        except UNetBridgeError as exc:
            logger.error("Job %s failed: %s", self.job_id, exc)
            self.error = exc
        except Exception as exc:
            logger.exception("Unexpected error in job %s", self.job_id)
            self.error = UNetBridgeError(f"Unexpected error: {exc}")
        finally:
            self._finish(outcome)

    def _check_cancelled(self) -> None:
        if self._cancel_event.is_set():
            raise CancelledError(f"Job {self.job_id} cancelled")

    def _stage(self) -> None:
        self._check_cancelled()
        self._set_state(JobState.STAGING)
        lo, hi = self.params.progress_ranges["stage"]
        self.monitor.begin_task(f"Staging input on host '{self.host}'", lo, hi)

        try:
            created = self.transfer.make_folders(self.folder, self.monitor)
        except TransferError as exc:
            self._add_folders(exc.created_folders)
            raise
        self._add_folders(created)

        uploads = self.params.uploads
        for i, (local_path, name) in enumerate(uploads):
            target = self.context.join(self.folder, name)
            self.monitor.push(i / len(uploads), (i + 1) / len(uploads))
            try:
                created = self.transfer.upload(local_path, target, self.monitor)
            except TransferError as exc:
                self._add_folders(exc.created_folders)
                self._add_file_if_exists(target)
                raise
            self._add_folders(created)
            self.created_files.append(target)
            self.monitor.pop()
        self.monitor.end()

    def _execute(self) -> None:
        self._check_cancelled()
        self._set_state(JobState.EXECUTING)
        lo, hi = self.params.progress_ranges["execute"]
        self.monitor.begin_task(f"Running {os.path.basename(self.params.executable)}", lo, hi)

        runner = ProcessRunner(self.context, self.poll_interval, self.grace_period)
        try:
            self.exit_result = runner.run(
                self.params.command(self.folder, self.job_id),
                self._parser,
                self.monitor,
            )
        finally:
            for name, _ in self.params.downloads:
                self._add_file_if_exists(self.context.join(self.folder, name))
        self.monitor.end()

    def _fetch(self) -> None:
        self._check_cancelled()
        self._set_state(JobState.FETCHING)
        lo, hi = self.params.progress_ranges["fetch"]
        self.monitor.begin_task(f"Fetching results from host '{self.host}'", lo, hi)

        downloads = self.params.downloads
        for i, (name, local_path) in enumerate(downloads):
            source = self.context.join(self.folder, name)
            self.monitor.push(i / len(downloads), (i + 1) / len(downloads))
            try:
                created = self.transfer.download(source, local_path, self.monitor)
            except TransferError as exc:
                self.local_folders[:0] = exc.created_folders
                raise
            self.local_folders[:0] = created
            self.local_files.append(str(local_path))
            self.monitor.pop()
        self.monitor.end()

    def _add_folders(self, folders: list[str]) -> None:
        # Later batches are nested deeper, so prepending keeps deepest-first order.
        self.created_folders[:0] = folders

    def _add_file_if_exists(self, path: str) -> None:
        if path in self.created_files:
            return
        try:
            if self.context.exists(path):
                self.created_files.append(path)
        except (UNetBridgeError, OSError, paramiko.SSHException) as exc:
            logger.warning("Could not check for %s: %s", path, exc)

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def _finish(self, outcome: JobState) -> None:
        with self._lock:
            decided = self._cleaned or self._state == outcome
        if not decided:
            self._set_state(outcome)
        try:
            self.cleanup()
        finally:
            self._done.set()

    def cleanup(self) -> list[CleanupError]:
        """Remove every file and folder this job created, then release the session.

        Runs once; later calls return the collected errors.  Failures are
        logged and collected in :attr:`cleanup_errors`, never raised.
        """
        with self._lock:
            if self._cleaned:
                return list(self.cleanup_errors)
            if self._state not in OUTCOME_STATES:
                raise RuntimeError(f"Job {self.job_id} is {self._state.name}, cannot clean up yet")
            self._cleaned = True
            outcome = self._outcome

        keep = outcome == JobState.READY and self.params is not None and self.params.keep_remote_files
        if self.transfer is not None and not keep:
            for path in self.created_files:
                self._remove(self.transfer.remove_file, path)
            for folder in self.created_folders:
                self._remove(self.transfer.remove_folder, folder)
        elif keep:
            logger.info("Keeping %d staged files in %s", len(self.created_files), self.folder)

        if outcome != JobState.READY and (self.local_files or self.local_folders):
            local = TransferManager(LocalContext())
            for path in self.local_files:
                self._remove(local.remove_file, path)
            for folder in self.local_folders:
                self._remove(local.remove_folder, folder)

        if self.context is not None:
            self.context.close()
        self._release_session()
        self._set_state(JobState.CLEANED_UP)
        return list(self.cleanup_errors)

    def _remove(self, remove: Callable[[str], None], path: str) -> None:
        try:
            remove(path)
        except UNetBridgeError as exc:
            error = CleanupError(path, exc)
            logger.warning("%s", error)
            self.cleanup_errors.append(error)

    def _release_session(self) -> None:
        session, self.session = self.session, None
        if session is None:
            return
        if self._pooled and self._session_pool is not None:
            self._session_pool.release(session)
        else:
            session.close()
        self._pooled = False
