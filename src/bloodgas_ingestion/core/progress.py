# ============================================================================
# src/bloodgas_ingestion/core/progress.py
# ============================================================================
"""
Phase-weighted progress.

An analysis run is split into named phases with declared weights
(extraction 50 / interpretation 50 by default). Each phase reports its own
0-1 fraction; the aggregator turns that into one monotonic 0-100 figure.
"""

import logging
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, str, int], None]


class PhaseProgressAggregator:
    """Maps per-phase fractions onto an overall percentage."""

    def __init__(self, weights: Dict[str, float]):
        if not weights:
            raise ValueError("At least one phase weight is required")
        if any(w <= 0 for w in weights.values()):
            raise ValueError("Phase weights must be positive")

        total = float(sum(weights.values()))
        self._phases = list(weights)
        self._spans: Dict[str, tuple] = {}
        start = 0.0
        for name in self._phases:
            span = weights[name] / total * 100.0
            self._spans[name] = (start, span)
            start += span

        self._overall = 0

    @property
    def phases(self):
        return list(self._phases)

    @property
    def overall(self) -> int:
        return self._overall

    def update(self, phase: str, fraction: float) -> int:
        """
        Record progress inside ``phase`` and return the overall percentage.

        Fractions are clamped to [0, 1]. The result never goes backwards.
        """
        if phase not in self._spans:
            raise KeyError(f"Unknown phase: {phase}")

        fraction = max(0.0, min(1.0, fraction))
        start, span = self._spans[phase]
        value = int(round(start + span * fraction))
        self._overall = max(self._overall, min(100, value))
        return self._overall

    def complete(self) -> int:
        self._overall = 100
        return self._overall


class ProgressReporter:
    """
    Forwards aggregated progress to ``on_progress(phase, stage, percentage)``.

    Once closed, further reports are dropped, so callers never see a
    callback after the operation that owned the reporter returned.
    """

    def __init__(
        self,
        aggregator: PhaseProgressAggregator,
        callback: Optional[ProgressCallback] = None,
    ):
        self.aggregator = aggregator
        self._callback = callback
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def report(self, phase: str, stage: str, fraction: float) -> Optional[int]:
        if self._closed:
            logger.debug(f"Dropping late progress report for {phase}: {stage}")
            return None

        percentage = self.aggregator.update(phase, fraction)
        if self._callback is not None:
            self._callback(phase, stage, percentage)
        return percentage

    def sub_reporter(self, phase: str, start: float = 0.0, end: float = 1.0) -> Callable[[str, float], None]:
        """
        Callback for a component that knows only its own 0-1 progress.

        The component's fraction is mapped into ``[start, end]`` of ``phase``.
        """
        def report(stage: str, fraction: float) -> None:
            fraction = max(0.0, min(1.0, fraction))
            self.report(phase, stage, start + (end - start) * fraction)

        return report

    def finish(self, phase: str, stage: str = "Complete") -> None:
        if self._closed:
            return
        percentage = self.aggregator.complete()
        if self._callback is not None:
            self._callback(phase, stage, percentage)

    def close(self) -> None:
        self._closed = True
