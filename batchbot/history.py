# batchbot/history.py
from collections import deque
from typing import List, Optional


def window_length(minutes: float, interval_ms: float) -> int:
    """Number of decision ticks that fit in `minutes` at the given interval (at least 1)."""
    return max(1, int((60000 * minutes) // interval_ms))


class PriceHistory:
    """
    Capped FIFO of observed prices for one instrument.
    Pushing past capacity silently evicts the oldest entry.
    """
    def __init__(self, capacity: int, prices: Optional[List[float]] = None):
        self.capacity = max(1, int(capacity))
        self._prices = deque(prices or [], maxlen=self.capacity)

    def push(self, price: float):
        self._prices.append(price)

    def last_n(self, n: int) -> List[float]:
        if n <= 0:
            return []
        return list(self._prices)[-n:]

    def at(self, offset: int) -> Optional[float]:
        """Price `offset` steps back from the most recent entry (0 = most recent)."""
        if offset < 0 or offset >= len(self._prices):
            return None
        return self._prices[-1 - offset]

    def values(self) -> List[float]:
        return list(self._prices)

    def clear(self):
        self._prices.clear()

    def __len__(self) -> int:
        return len(self._prices)
