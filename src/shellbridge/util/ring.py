from __future__ import annotations

from collections import deque
from typing import Deque, Generic, Iterator, List, TypeVar

T = TypeVar("T")


class RingBuffer(Generic[T]):
    """Bounded FIFO that drops the oldest entry on overflow."""

    def __init__(self, capacity: int) -> None:
        self._capacity = max(1, int(capacity))
        self._items: Deque[T] = deque(maxlen=self._capacity)
        self._dropped = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def dropped(self) -> int:
        return self._dropped

    def push(self, item: T) -> None:
        if len(self._items) >= self._capacity:
            self._dropped += 1
        self._items.append(item)

    def snapshot(self) -> List[T]:
        return list(self._items)

    def drain(self) -> List[T]:
        items = list(self._items)
        self._items.clear()
        return items

    def clear(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(list(self._items))
