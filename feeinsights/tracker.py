"""Rolling min/max tracking with eviction."""

from collections import deque
from typing import Deque, Iterable, Tuple

# (arrival sequence, fee)
Entry = Tuple[int, int]


class ExtremesTracker:
    """
    Track the minimum and maximum fee of the window.

    Two monotonic deques keyed by arrival sequence give O(1) queries and
    amortized O(1) oldest-first eviction. The min deque holds strictly
    increasing fees, the max deque strictly decreasing ones; an entry is
    dropped once a newer entry dominates it, since it can never again be the
    extreme of any suffix of the window. When a point leaves the window out
    of arrival order the deques are rebuilt from the remaining entries.

    An empty tracker reports 0 for both extremes.
    """

    def __init__(self):
        self._mins: Deque[Entry] = deque()
        self._maxs: Deque[Entry] = deque()

    def push(self, seq: int, fee: int):
        while self._mins and self._mins[-1][1] >= fee:
            self._mins.pop()
        self._mins.append((seq, fee))

        while self._maxs and self._maxs[-1][1] <= fee:
            self._maxs.pop()
        self._maxs.append((seq, fee))

    def evict(self, seq: int):
        """Evict the oldest live entry, identified by its sequence number."""
        if self._mins and self._mins[0][0] == seq:
            self._mins.popleft()
        if self._maxs and self._maxs[0][0] == seq:
            self._maxs.popleft()

    def rebuild(self, entries: Iterable[Entry]):
        """Reset state to exactly ``entries`` (in arrival order)."""
        self._mins.clear()
        self._maxs.clear()
        for seq, fee in entries:
            self.push(seq, fee)

    def min(self) -> int:
        return self._mins[0][1] if self._mins else 0

    def max(self) -> int:
        return self._maxs[0][1] if self._maxs else 0

    def reset(self):
        self._mins.clear()
        self._maxs.clear()
