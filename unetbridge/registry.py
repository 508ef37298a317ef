"""Registry of active jobs.

A :class:`JobRegistry` is created by whatever owns the UI or CLI and shared
with it explicitly.  All mutations are serialised by one lock; callbacks run
outside it.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable

from unetbridge.job import TERMINAL_STATES, Job, JobSnapshot

logger = logging.getLogger(__name__)

RemovedCallback = Callable[[Job], None]


class JobRegistry:
    """Thread-safe collection of jobs keyed by ``job_id``.

    Removing a job that is still running cancels it first; the entry goes
    away only once the job is terminal.
    """

    def __init__(self) -> None:
        self._jobs: dict[str, Job] = {}
        self._pending_removal: set[str] = set()
        self._on_removed: list[RemovedCallback] = []
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._jobs

    def add(self, job: Job) -> None:
        """Register *job*.  Raises ValueError if its id is already taken."""
        with self._lock:
            if job.job_id in self._jobs:
                raise ValueError(f"Job {job.job_id} is already registered")
            self._jobs[job.job_id] = job
        job.subscribe(self._on_job_update)
        logger.debug("Job %s registered", job.job_id)

    def find(self, job_id: str) -> Job | None:
        with self._lock:
            return self._jobs.get(job_id)

    def jobs(self) -> list[Job]:
        with self._lock:
            return list(self._jobs.values())

    def snapshots(self) -> list[JobSnapshot]:
        return [job.snapshot() for job in self.jobs()]

    def cancel(self, job_id: str) -> bool:
        """Request cancellation of *job_id*; returns False if unknown."""
        job = self.find(job_id)
        if job is None:
            logger.warning("cancel: job not found: %s", job_id)
            return False
        job.cancel()
        return True

    def remove(self, job_id: str, timeout: float | None = 0) -> bool:
        """Remove *job_id*, cancelling it first if it is still running.

        With *timeout* 0 a live job is only marked and drops out of the
        registry when it becomes terminal; otherwise this waits up to
        *timeout* seconds (None: forever) for that to happen.

        Returns True if the job is gone when this call returns.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return False
            if job.is_terminal:
                del self._jobs[job_id]
                self._pending_removal.discard(job_id)
                removed = job
            else:
                self._pending_removal.add(job_id)
                removed = None

        if removed is not None:
            self._fire_removed(removed)
            return True

        job.cancel()
        if timeout != 0:
            job.wait(timeout)
        return self._complete_removal(job)

    def on_removed(self, callback: RemovedCallback) -> None:
        """Call *callback* with every job that leaves the registry."""
        with self._lock:
            self._on_removed.append(callback)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _on_job_update(self, snapshot: JobSnapshot) -> None:
        if snapshot.state not in TERMINAL_STATES:
            return
        job = self.find(snapshot.job_id)
        if job is not None:
            self._complete_removal(job)

    def _complete_removal(self, job: Job) -> bool:
        """Drop *job* if removal was requested and it is terminal."""
        with self._lock:
            if job.job_id not in self._pending_removal:
                return job.job_id not in self._jobs
            if not job.is_terminal:
                return False
            self._pending_removal.discard(job.job_id)
            if self._jobs.get(job.job_id) is not job:
                return True
            del self._jobs[job.job_id]
        self._fire_removed(job)
        return True

    def _fire_removed(self, job: Job) -> None:
        logger.debug("Job %s removed", job.job_id)
        with self._lock:
            callbacks = list(self._on_removed)
        for callback in callbacks:
            try:
                callback(job)
            except Exception:
                logger.exception("Exception in on_removed callback")
