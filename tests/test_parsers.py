"""Tests for unetbridge/parsers.py — worker output parsers."""

from __future__ import annotations

import pytest

from unetbridge.errors import ConfigurationError
from unetbridge.parsers import FinetuneParser, NullParser, SegmentationParser, make_parser


class TestSegmentationParser:
    def test_counts_tiles(self, sink) -> None:
        parser = SegmentationParser()
        for batch in (1, 2):
            for tile in (1, 2, 3):
                parser.feed(f"Processing batch {batch}/2, tile {tile}/3", sink)
        assert len(sink.reports) == 6
        assert sink.reports[0] == ("Segmenting batch 1/2, tile 1/3", 1, 6)
        assert sink.reports[-1] == ("Segmenting batch 2/2, tile 3/3", 6, 6)

    def test_ignores_other_lines(self, sink) -> None:
        parser = SegmentationParser()
        parser.feed("Loading model /tmp/unet.h5", sink)
        parser.feed("  Processing batch 1/2, tile 1/3", sink)
        assert sink.reports == []

    def test_never_counts_past_total(self, sink) -> None:
        parser = SegmentationParser()
        for _ in range(3):
            parser.feed("Processing batch 1/1, tile 1/2", sink)
        assert sink.reports[-1][1:] == (2, 2)


class TestFinetuneParser:
    def test_training_loss(self, sink) -> None:
        parser = FinetuneParser(iterations=1000)
        parser.feed("I0301 12:00:00 solver.cpp:228] Iteration 20, loss = 0.693", sink)
        assert sink.reports == [("Finetuning iteration 20/1000 loss = 0.693", 20, 1000)]
        assert parser.train_losses == {20: pytest.approx(0.693)}

    def test_validation_loss_uses_last_test_iteration(self, sink) -> None:
        parser = FinetuneParser(iterations=100)
        parser.feed("I0301 solver.cpp:341] Iteration 50, Testing net (#0)", sink)
        parser.feed("I0301 solver.cpp:409]     Test net output #0: loss_valid = 0.25 (* 1 = 0.25 loss)", sink)
        assert parser.validation_losses == {50: pytest.approx(0.25)}
        assert sink.reports == []

    def test_reads_stderr(self) -> None:
        assert "stderr" in FinetuneParser(10).streams

    def test_requires_positive_iterations(self) -> None:
        with pytest.raises(ConfigurationError):
            FinetuneParser(0)


class TestMakeParser:
    def test_kinds(self) -> None:
        assert isinstance(make_parser("segmentation"), SegmentationParser)
        assert isinstance(make_parser("finetune", iterations=5), FinetuneParser)
        assert isinstance(make_parser("none"), NullParser)

    def test_unknown_kind(self) -> None:
        with pytest.raises(ConfigurationError, match="detection"):
            make_parser("detection")

    def test_null_parser_reports_nothing(self, sink) -> None:
        make_parser("none").feed("Processing batch 1/1, tile 1/1", sink)
        assert sink.reports == []
