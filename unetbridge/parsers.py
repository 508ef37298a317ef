"""Progress-marker parsers for worker output.

A parser is handed every complete line of the streams it lists in
``streams`` and turns recognised markers into :class:`ProgressSink`
reports.  The runner knows nothing about any worker's log format.
"""

from __future__ import annotations

import logging
import re

from unetbridge.errors import ConfigurationError
from unetbridge.progress import ProgressSink

logger = logging.getLogger(__name__)


class LineParser:
    """Base parser: ignores every line."""

    #: Which of "stdout" / "stderr" are fed to :meth:`feed`.
    streams: frozenset[str] = frozenset({"stdout"})

    def feed(self, line: str, sink: ProgressSink) -> None:
        pass


class NullParser(LineParser):
    """Parser for workers without progress markers."""


class SegmentationParser(LineParser):
    """Counts ``Processing batch b/B, tile t/T`` lines.

    The first marker fixes the total at ``B * T``; each marker counts one
    tile.
    """

    _MARKER = re.compile(r"^Processing batch (\d+)/(\d+), tile (\d+)/(\d+)")

    def __init__(self) -> None:
        self.total = 0
        self.done = 0

    def feed(self, line: str, sink: ProgressSink) -> None:
        match = self._MARKER.match(line)
        if match is None:
            return
        batch, n_batches, tile, n_tiles = (int(g) for g in match.groups())
        if not self.total:
            self.total = n_batches * n_tiles
        self.done = min(self.done + 1, self.total)
        sink.report(
            f"Segmenting batch {batch}/{n_batches}, tile {tile}/{n_tiles}",
            self.done,
            self.total,
        )


class FinetuneParser(LineParser):
    """Tracks training iterations and losses of a finetuning run.

    Caffe-style solvers log to stderr, so both streams are parsed.
    """

    streams = frozenset({"stdout", "stderr"})

    _TRAIN = re.compile(r"Iteration (\d+)\b.*\bloss = ([-+0-9.eE]+|nan|inf)")
    _TEST = re.compile(r"Iteration (\d+), Testing net")
    _VALID = re.compile(r"Test net output #\d+: loss_valid = ([-+0-9.eE]+|nan|inf)")

    def __init__(self, iterations: int) -> None:
        if iterations <= 0:
            raise ConfigurationError(f"Finetuning needs a positive iteration count, got {iterations}")
        self.iterations = iterations
        self.train_losses: dict[int, float] = {}
        self.validation_losses: dict[int, float] = {}
        self._test_iteration = 0

    def feed(self, line: str, sink: ProgressSink) -> None:
        match = self._TEST.search(line)
        if match is not None:
            self._test_iteration = int(match.group(1))
            return

        match = self._VALID.search(line)
        if match is not None:
            self.validation_losses[self._test_iteration] = float(match.group(1))
            return

        match = self._TRAIN.search(line)
        if match is None:
            return
        iteration, loss = int(match.group(1)), float(match.group(2))
        self.train_losses[iteration] = loss
        sink.report(
            f"Finetuning iteration {iteration}/{self.iterations} loss = {loss:g}",
            min(iteration, self.iterations),
            self.iterations,
        )


def make_parser(kind: str, **options) -> LineParser:
    """Return the parser for worker *kind* ("segmentation", "finetune", "none")."""
    if kind == "segmentation":
        return SegmentationParser()
    if kind == "finetune":
        return FinetuneParser(int(options.get("iterations", 0)))
    if kind in ("none", ""):
        return NullParser()
    raise ConfigurationError(f"Unknown parser kind: {kind!r}")
