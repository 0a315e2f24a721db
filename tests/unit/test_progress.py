# ============================================================================
# tests/unit/test_progress.py
# ============================================================================
"""
Tests for phase-weighted progress aggregation
"""

import pytest

from src.bloodgas_ingestion.core.progress import PhaseProgressAggregator, ProgressReporter


class TestPhaseProgressAggregator:

    def test_weights_split_the_bar(self):
        agg = PhaseProgressAggregator({"extraction": 50, "interpretation": 50})
        assert agg.update("extraction", 0.5) == 25
        assert agg.update("extraction", 1.0) == 50
        assert agg.update("interpretation", 0.5) == 75
        assert agg.update("interpretation", 1.0) == 100

    def test_unequal_weights(self):
        agg = PhaseProgressAggregator({"a": 1, "b": 3})
        assert agg.update("a", 1.0) == 25
        assert agg.update("b", 0.2) == 40

    def test_never_goes_backwards(self):
        agg = PhaseProgressAggregator({"extraction": 50, "interpretation": 50})
        agg.update("interpretation", 0.2)
        assert agg.update("extraction", 0.1) == 60

    def test_fraction_clamped(self):
        agg = PhaseProgressAggregator({"only": 1})
        assert agg.update("only", 7.0) == 100

    def test_unknown_phase(self):
        agg = PhaseProgressAggregator({"only": 1})
        with pytest.raises(KeyError):
            agg.update("other", 0.5)

    @pytest.mark.parametrize("weights", [{}, {"a": 0}, {"a": -1}])
    def test_invalid_weights(self, weights):
        with pytest.raises(ValueError):
            PhaseProgressAggregator(weights)


class TestProgressReporter:

    def test_forwards_to_callback(self):
        calls = []
        reporter = ProgressReporter(
            PhaseProgressAggregator({"extraction": 50, "interpretation": 50}),
            lambda phase, stage, pct: calls.append((phase, stage, pct)),
        )
        reporter.report("extraction", "OCR", 0.5)
        reporter.finish("interpretation", "Done")

        assert calls == [("extraction", "OCR", 25), ("interpretation", "Done", 100)]

    def test_sub_reporter_maps_into_range(self):
        calls = []
        reporter = ProgressReporter(
            PhaseProgressAggregator({"extraction": 50, "interpretation": 50}),
            lambda phase, stage, pct: calls.append(pct),
        )
        ocr = reporter.sub_reporter("extraction", 0.0, 0.5)
        ocr("processing", 1.0)
        assert calls == [25]

    def test_no_callbacks_after_close(self):
        calls = []
        reporter = ProgressReporter(
            PhaseProgressAggregator({"only": 1}),
            lambda phase, stage, pct: calls.append(pct),
        )
        reporter.report("only", "start", 0.1)
        reporter.close()

        assert reporter.report("only", "late", 0.9) is None
        reporter.finish("only")
        assert calls == [10]
