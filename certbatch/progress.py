"""
Progress Reporting Module

The orchestrator pushes a BatchProgress snapshot after every unit of work to a
passive sink. ProgressTracker keeps the reported percent non-decreasing and
holds back 100 until the run is complete.
"""

import logging
from typing import Callable, List, Optional

from .models import BatchProgress
from .utils import scaled_percent

logger = logging.getLogger(__name__)


ProgressReporter = Callable[[BatchProgress], None]


class ProgressTracker:
    """Computes and forwards progress snapshots for one run"""

    def __init__(self, total_count: int, reporter: Optional[ProgressReporter] = None):
        self.total_count = total_count
        self._reporter = reporter
        self._latest = BatchProgress(completed_count=0, total_count=total_count, percent=0)

    @property
    def latest(self) -> BatchProgress:
        return self._latest

    @property
    def percent(self) -> int:
        return self._latest.percent

    def update(
        self,
        completed: int,
        total: int,
        scale: int = 100,
        offset: int = 0,
        phase: str = "generation",
    ) -> BatchProgress:
        """
        Record progress within the current phase

        Args:
            completed: Units finished in this phase
            total: Units in this phase
            scale: Share of the bar owned by the phase
            offset: Share finished by earlier phases
            phase: Label for the phase ("generation" or "archive")

        Returns:
            The snapshot that was reported
        """
        percent = scaled_percent(completed, total, scale=scale, offset=offset)
        # 100 is reserved for complete()
        percent = min(percent, 99)
        return self._emit(BatchProgress(
            completed_count=completed,
            total_count=total,
            percent=max(percent, self._latest.percent),
            phase=phase,
        ))

    def complete(self) -> BatchProgress:
        return self._emit(BatchProgress(
            completed_count=self._latest.completed_count,
            total_count=self._latest.total_count,
            percent=100,
            phase="complete",
        ))

    def _emit(self, progress: BatchProgress) -> BatchProgress:
        self._latest = progress
        logger.debug(f"Progress {progress.percent}% ({progress.completed_count}/{progress.total_count}, {progress.phase})")
        if self._reporter:
            self._reporter(progress)
        return progress


class ProgressHistory:
    """Reporter that keeps every snapshot, handy for polling and tests"""

    def __init__(self):
        self.snapshots: List[BatchProgress] = []

    def __call__(self, progress: BatchProgress) -> None:
        self.snapshots.append(progress)

    @property
    def percents(self) -> List[int]:
        return [snapshot.percent for snapshot in self.snapshots]

    @property
    def latest(self) -> Optional[BatchProgress]:
        return self.snapshots[-1] if self.snapshots else None
