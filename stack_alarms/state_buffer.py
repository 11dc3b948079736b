"""Fixed-size window of recent service states used for hysteresis."""

from __future__ import annotations

from collections import deque


class StateRingBuffer:
    """Keeps the last ``capacity`` observed states of one service.

    ``all_equal(x)`` only becomes true once the window is full, so a fresh
    buffer never satisfies a threshold with fewer samples than it needs.
    """

    def __init__(self, capacity: int) -> None:
        capacity = int(capacity)
        if capacity < 1:
            raise ValueError(f"StateRingBuffer capacity must be >= 1, got {capacity}")
        self._items: deque[str] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return int(self._items.maxlen or 0)

    def __len__(self) -> int:
        return len(self._items)

    def push(self, state: str) -> None:
        self._items.append(state)

    def all_equal(self, state: str) -> bool:
        if len(self._items) < self.capacity:
            return False
        return all(item == state for item in self._items)
