"""Breadth-first crawl frontier with visited-set bookkeeping."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass


@dataclass(frozen=True)
class FrontierItem:
    url: str
    depth: int


class Frontier:
    def __init__(self, max_depth: int) -> None:
        self.max_depth = max_depth
        self._queue: deque[FrontierItem] = deque()
        self._queued: set[str] = set()
        self._visited: set[str] = set()

    def push(self, url: str, depth: int) -> bool:
        if depth > self.max_depth or url in self._visited or url in self._queued:
            return False
        self._queue.append(FrontierItem(url, depth))
        self._queued.add(url)
        return True

    def pop(self) -> FrontierItem:
        item = self._queue.popleft()
        self._queued.discard(item.url)
        return item

    def mark_visited(self, url: str) -> None:
        self._visited.add(url)

    def is_visited(self, url: str) -> bool:
        return url in self._visited

    @property
    def visited_count(self) -> int:
        return len(self._visited)

    def __contains__(self, url: object) -> bool:
        return url in self._queued

    def __len__(self) -> int:
        return len(self._queue)
