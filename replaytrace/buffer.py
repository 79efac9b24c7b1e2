from __future__ import annotations

from collections import deque
from typing import Callable, Generic, Iterable, Iterator, TypeVar

T = TypeVar("T")


class BoundedQueue(Generic[T]):
    """Ordered, capacity-bounded buffer.

    Appending to a full queue evicts the oldest item. Items handed back after a
    failed delivery go to the front in their original order; if that overflows
    the capacity, the newest items at the back are dropped instead.
    """

    def __init__(self, maxlen: int) -> None:
        if maxlen < 1:
            raise ValueError("maxlen must be at least 1")
        self.maxlen = maxlen
        self._items: deque[T] = deque()

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(list(self._items))

    def __bool__(self) -> bool:
        return bool(self._items)

    def append(self, item: T) -> T | None:
        evicted = None
        if len(self._items) >= self.maxlen:
            evicted = self._items.popleft()
        self._items.append(item)
        return evicted

    def take(
        self,
        limit: int,
        key: Callable[[T], object] | None = None,
        weight: Callable[[T], int] | None = None,
    ) -> list[T]:
        """Remove items from the front until their total weight reaches `limit`.

        Every item weighs 1 unless `weight` says otherwise. With `key`, stop
        before the first item whose key differs from the key of the first item
        taken.
        """
        taken: list[T] = []
        total = 0
        marker: object = None
        while self._items and total < limit:
            if key is not None:
                current = key(self._items[0])
                if taken and current != marker:
                    break
                marker = current
            item = self._items.popleft()
            taken.append(item)
            total += weight(item) if weight is not None else 1
        return taken

    def requeue(self, items: Iterable[T]) -> list[T]:
        """Put items back at the front; return whatever overflowed off the back."""
        self._items.extendleft(reversed(list(items)))
        dropped: list[T] = []
        while len(self._items) > self.maxlen:
            dropped.append(self._items.pop())
        dropped.reverse()
        return dropped

    def drain(self) -> list[T]:
        items = list(self._items)
        self._items.clear()
        return items
