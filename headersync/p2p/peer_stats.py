"""Peer statistics and a queue handing out the best-scoring peer first."""

from __future__ import annotations

import heapq
import itertools
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional, Tuple


@dataclass
class PeerStat:
    """A peer's average statistics."""

    peer_id: str = ""
    # Average speed of a single request, in bytes per millisecond.
    peer_score: float = 0.0
    # When a disconnected peer is dropped unless it comes back online.
    prune_deadline: Optional[datetime] = None
    _lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    def update_stats(self, amount: int, duration: int) -> None:
        """Average the speed of a request (bytes over milliseconds) into the score."""
        with self._lock:
            speed = float(amount)
            if duration != 0:
                speed /= duration
            if self.peer_score == 0.0:
                self.peer_score = speed
            else:
                self.peer_score = (self.peer_score + speed) / 2

    def decrease_score(self) -> None:
        """Lower the score by 20% after a failed request."""
        with self._lock:
            self.peer_score -= self.peer_score / 100 * 20

    def score(self) -> float:
        """Return the current score."""
        with self._lock:
            return self.peer_score


class PeerQueue:
    """A thread-safe queue of peers ordered by decreasing score."""

    def __init__(self, stats: Iterable[PeerStat] = ()) -> None:
        self._cond = threading.Condition()
        self._heap: List[Tuple[float, int, PeerStat]] = []
        self._counter = itertools.count()
        self._closed = False
        for stat in stats:
            self.push(stat)

    def __len__(self) -> int:
        with self._cond:
            return len(self._heap)

    def push(self, stat: PeerStat) -> None:
        """Add a peer and wake one waiter."""
        with self._cond:
            heapq.heappush(self._heap, (-stat.score(), next(self._counter), stat))
            self._cond.notify()

    def pop(self) -> PeerStat:
        """Remove and return the best peer; raise IndexError when empty."""
        with self._cond:
            if not self._heap:
                raise IndexError("pop from empty peer queue")
            return heapq.heappop(self._heap)[2]

    def wait_pop(self, timeout: Optional[float] = None) -> Optional[PeerStat]:
        """Wait for a peer and return the best one.

        Returns None if the queue is closed or the timeout passes first.
        """
        with self._cond:
            ready = self._cond.wait_for(lambda: self._heap or self._closed, timeout)
            if not ready or self._closed:
                return None
            return heapq.heappop(self._heap)[2]

    def close(self) -> None:
        """Close the queue, releasing every waiter."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()