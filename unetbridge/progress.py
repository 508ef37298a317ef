"""Progress reporting for long-running job steps.

A :class:`ProgressMonitor` is a stack of :class:`TaskMonitor` levels.  Each
level maps its own 0–1 fraction into a window of its parent, so a job can
allot e.g. 10–90 % to the worker process and let the worker's own progress
markers fill exactly that slice.  Monitors double as the cancellation
channel: long operations poll :meth:`ProgressMonitor.interrupted` between
units of work.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Protocol

logger = logging.getLogger(__name__)

_PER_MILLE = 1000


@dataclass
class TaskStatus:
    """Last reported state of the running task (last write wins)."""

    label: str = ""
    current: int = 0
    total: int = 0

    @property
    def indeterminate(self) -> bool:
        """True while the task has no known total."""
        return self.total == 0

    @property
    def fraction(self) -> float:
        """Fraction of the task completed (0.0 – 1.0)."""
        if self.total <= 0:
            return 0.0
        return min(1.0, self.current / self.total)


class ProgressSink(Protocol):
    """What a long operation needs from whoever watches it."""

    def report(self, label: str, current: int, total: int) -> None:
        """Record that *current* of *total* units of *label* are done."""

    def interrupted(self) -> bool:
        """Return True once the operation should stop."""


ProgressListener = Callable[[TaskStatus, float], None]


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


class TaskMonitor:
    """One level of the progress stack."""

    def __init__(
        self,
        parent: TaskMonitor | None = None,
        p_min: float = 0.0,
        p_max: float = 1.0,
        label: str | None = None,
    ) -> None:
        self.parent = parent
        if parent is None:
            self.lo, self.hi = _clamp(p_min), _clamp(p_max)
        else:
            self.lo, self.hi = parent.absolute(p_min), parent.absolute(p_max)
        self._label = label
        self.current = 0
        self.total = 0

    @property
    def label(self) -> str:
        if self._label is not None:
            return self._label
        return self.parent.label if self.parent is not None else ""

    @label.setter
    def label(self, value: str) -> None:
        self._label = value

    def fraction(self) -> float:
        if self.total <= 0:
            return 0.0
        return _clamp(self.current / self.total)

    def absolute(self, fraction: float) -> float:
        """Map a local *fraction* into the overall 0–1 range."""
        return self.lo + _clamp(fraction) * (self.hi - self.lo)

    def progress(self) -> float:
        return self.absolute(self.fraction())


class ProgressMonitor:
    """Nested, throttled progress tracker implementing :class:`ProgressSink`.

    Updates are forwarded to listeners only when the label changes or the
    per-mille of the current task grows, which keeps chatty transfers from
    flooding observers.  The overall progress never decreases.
    """

    def __init__(self, cancel_event: threading.Event | None = None) -> None:
        self._cancel_event = cancel_event or threading.Event()
        self._listeners: list[ProgressListener] = []
        self._listeners_lock = threading.Lock()
        self.reset()

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def interrupted(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        self._cancel_event.set()

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def subscribe(self, listener: ProgressListener) -> Callable[[], None]:
        """Register *listener*; returns a callable that unregisters it."""
        with self._listeners_lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._listeners_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    # ------------------------------------------------------------------
    # Task stack
    # ------------------------------------------------------------------

    def reset(self) -> None:
        self._root = TaskMonitor()
        self._current = self._root
        self._reported_label: str | None = None
        self._reported_per_mille = -1
        self._high_water = 0.0

    def begin_task(self, label: str, p_min: float, p_max: float) -> None:
        """Start a new top-level step occupying ``[p_min, p_max]`` overall."""
        self._current = TaskMonitor(self._root, p_min, p_max, label)
        self._update(force=True)

    def push(self, p_min: float, p_max: float, label: str | None = None) -> None:
        """Open a sub-task occupying ``[p_min, p_max]`` of the current task."""
        self._current = TaskMonitor(self._current, p_min, p_max, label)
        self._update(force=True)

    def pop(self) -> None:
        """Close the current sub-task and mark its window as done."""
        finished = self._current
        if finished.parent is None:
            return
        self._high_water = max(self._high_water, finished.hi)
        self._current = finished.parent

    # ------------------------------------------------------------------
    # Counting
    # ------------------------------------------------------------------

    def report(self, label: str, current: int, total: int) -> None:
        task = self._current
        total = max(0, int(total))
        current = max(0, int(current))
        if total > 0:
            current = min(current, total)
        force = label != task.label or total != task.total
        task.label = label
        task.total = total
        task.current = current
        self._update(force=force)

    def init(self, total: int, label: str | None = None) -> None:
        """Reset the current task to zero of *total* units."""
        self.report(self._current.label if label is None else label, 0, total)

    def count(self, amount: int = 1, label: str | None = None) -> None:
        task = self._current
        self.report(task.label if label is None else label, task.current + amount, task.total)

    def end(self) -> None:
        task = self._current
        if task.total == 0:
            task.total = 1
        task.current = task.total
        self._update(force=True)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    @property
    def status(self) -> TaskStatus:
        task = self._current
        return TaskStatus(task.label, task.current, task.total)

    def task_progress(self) -> float:
        """Fraction of the current (innermost) task."""
        return self._current.fraction()

    def progress(self) -> float:
        """Overall progress (0.0 – 1.0), monotonically non-decreasing."""
        self._high_water = max(self._high_water, self._current.progress())
        return self._high_water

    def _update(self, force: bool = False) -> None:
        task = self._current
        per_mille = int(_PER_MILLE * task.fraction())
        if not force and task.label == self._reported_label and per_mille <= self._reported_per_mille:
            return
        self._reported_label = task.label
        self._reported_per_mille = per_mille

        status = self.status
        overall = self.progress()
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(status, overall)
            except Exception:
                logger.exception("Exception in progress listener")
