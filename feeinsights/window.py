"""Bounded window of recent fee samples."""

from collections import deque
from datetime import datetime, timedelta
from typing import Deque, List, Optional, Tuple

from .calculator import RollingAverageCalculator
from .errors import ConfigError
from .tracker import ExtremesTracker
from .types import FeeDataPoint


class FeeWindow:
    """
    Arrival-ordered window bounded by point count and/or point age.

    Every point entering or leaving the window is mirrored into the
    calculator and tracker, so their state always describes exactly the
    points held here. The age bound is relative to the newest timestamp
    ingested so far; a late point already older than the bound is folded in
    and evicted in the same call.
    """

    def __init__(
        self,
        calculator: RollingAverageCalculator,
        tracker: ExtremesTracker,
        max_points: Optional[int] = None,
        max_age_secs: Optional[float] = None,
    ):
        """
        Initialize window.

        Args:
            calculator: Rolling average kept in step with the window
            tracker: Extremes tracker kept in step with the window
            max_points: Maximum number of points held (None for unbounded)
            max_age_secs: Maximum age relative to the newest point (None for unbounded)

        Raises:
            ConfigError: If neither bound is set or a bound is not positive
        """
        if max_points is None and max_age_secs is None:
            raise ConfigError("window needs a max_points or max_age_secs bound")
        if max_points is not None and max_points < 1:
            raise ConfigError(f"window max_points must be >= 1, got {max_points}")
        if max_age_secs is not None and max_age_secs <= 0:
            raise ConfigError(f"window max_age_secs must be > 0, got {max_age_secs}")

        self.calculator = calculator
        self.tracker = tracker
        self.max_points = max_points
        self.max_age = timedelta(seconds=max_age_secs) if max_age_secs is not None else None
        self._entries: Deque[Tuple[int, FeeDataPoint]] = deque()
        self._next_seq = 0
        self._latest: Optional[datetime] = None
        self._disordered = False

    def __len__(self) -> int:
        return len(self._entries)

    def points(self) -> List[FeeDataPoint]:
        """Points currently in the window, oldest arrival first."""
        return [point for _, point in self._entries]

    @property
    def latest_timestamp(self) -> Optional[datetime]:
        return self._latest

    def ingest(self, points: List[FeeDataPoint]) -> List[FeeDataPoint]:
        """
        Add points in arrival order, then enforce the bounds.

        Returns:
            Points evicted by this call, oldest arrival first
        """
        for point in points:
            if self._entries and point.timestamp < self._entries[-1][1].timestamp:
                self._disordered = True
            seq = self._next_seq
            self._next_seq += 1
            self._entries.append((seq, point))
            self.calculator.add(point.fee_amount)
            self.tracker.push(seq, point.fee_amount)
            if self._latest is None or point.timestamp > self._latest:
                self._latest = point.timestamp

        evicted = self._evict_over_count()
        evicted.extend(self._evict_stale())
        return evicted

    def _pop_oldest(self) -> FeeDataPoint:
        seq, point = self._entries.popleft()
        self.calculator.remove(point.fee_amount)
        self.tracker.evict(seq)
        return point

    def _evict_over_count(self) -> List[FeeDataPoint]:
        evicted = []
        if self.max_points is not None:
            while len(self._entries) > self.max_points:
                evicted.append(self._pop_oldest())
        return evicted

    def _evict_stale(self) -> List[FeeDataPoint]:
        if self.max_age is None or self._latest is None:
            return []
        cutoff = self._latest - self.max_age

        evicted = []
        while self._entries and self._entries[0][1].timestamp < cutoff:
            evicted.append(self._pop_oldest())

        if not self._disordered:
            return evicted

        # Out-of-order arrivals can leave stale points behind newer ones
        kept: Deque[Tuple[int, FeeDataPoint]] = deque()
        stale = []
        for seq, point in self._entries:
            if point.timestamp < cutoff:
                stale.append(point)
            else:
                kept.append((seq, point))
        if stale:
            for point in stale:
                self.calculator.remove(point.fee_amount)
            self._entries = kept
            self.tracker.rebuild((seq, point.fee_amount) for seq, point in kept)
            evicted.extend(stale)

        self._disordered = any(
            later.timestamp < earlier.timestamp
            for (_, earlier), (_, later) in zip(self._entries, list(self._entries)[1:])
        )
        return evicted

    def clear(self):
        self._entries.clear()
        self.calculator.reset()
        self.tracker.reset()
        self._latest = None
        self._disordered = False
