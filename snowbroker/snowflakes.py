"""Pending snowflake proxies, kept in a heap ordered by client load."""

from __future__ import annotations

import queue
from dataclasses import dataclass, field


@dataclass(eq=False)
class Snowflake:
    """A proxy waiting for a client offer, and the channels used to reach it."""

    id: str
    proxy_type: str
    nat_type: str
    clients: int = 0
    index: int = -1
    offer_channel: queue.Queue = field(default_factory=queue.Queue, repr=False)
    answer_channel: queue.Queue = field(default_factory=queue.Queue, repr=False)


class SnowflakeHeap:
    """Min-heap of snowflakes; those serving fewer clients come out first.

    Each snowflake's ``index`` tracks its position, and is -1 once it has
    left the heap.
    """

    def __init__(self) -> None:
        self._items: list[Snowflake] = []

    def __len__(self) -> int:
        return len(self._items)

    def _less(self, i: int, j: int) -> bool:
        return self._items[i].clients < self._items[j].clients

    def _swap(self, i: int, j: int) -> None:
        items = self._items
        items[i], items[j] = items[j], items[i]
        items[i].index = i
        items[j].index = j

    def _up(self, j: int) -> None:
        while j > 0:
            parent = (j - 1) // 2
            if not self._less(j, parent):
                break
            self._swap(parent, j)
            j = parent

    def _down(self, start: int, n: int) -> bool:
        i = start
        while True:
            left = 2 * i + 1
            if left >= n:
                break
            j = left
            right = left + 1
            if right < n and self._less(right, left):
                j = right
            if not self._less(j, i):
                break
            self._swap(i, j)
            i = j
        return i > start

    def _take_last(self) -> Snowflake:
        snowflake = self._items.pop()
        snowflake.index = -1
        return snowflake

    def push(self, snowflake: Snowflake) -> None:
        """Add a snowflake to the heap."""
        snowflake.index = len(self._items)
        self._items.append(snowflake)
        self._up(snowflake.index)

    def pop(self) -> Snowflake:
        """Remove and return the snowflake serving the fewest clients."""
        if not self._items:
            raise IndexError("pop from an empty snowflake heap")
        last = len(self._items) - 1
        self._swap(0, last)
        self._down(0, last)
        return self._take_last()

    def remove(self, snowflake: Snowflake) -> Snowflake:
        """Remove a particular snowflake from the heap."""
        i = snowflake.index
        if not (0 <= i < len(self._items)) or self._items[i] is not snowflake:
            raise ValueError(f"snowflake {snowflake.id!r} is not in the heap")
        last = len(self._items) - 1
        if last != i:
            self._swap(i, last)
            if not self._down(i, last):
                self._up(i)
        return self._take_last()