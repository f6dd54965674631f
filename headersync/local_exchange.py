"""An exchange that reads headers from a local store without networking."""

from __future__ import annotations

from typing import List

from .hash import Hash
from .header import Getter, Header, Store


class LocalExchange(Getter):
    """Serves header requests straight from a store."""

    def __init__(self, store: Store) -> None:
        self._store = store
        self.running = False

    def start(self) -> None:
        """Mark the exchange as running."""
        self.running = True

    def stop(self) -> None:
        """Mark the exchange as stopped."""
        self.running = False

    def head(self, *args) -> Header:
        return self._store.head()

    def get_by_height(self, height: int) -> Header:
        return self._store.get_by_height(height)

    def get_range_by_height(self, origin: int, amount: int) -> List[Header]:
        if amount == 0:
            return []
        return self._store.get_range_by_height(origin, origin + amount)

    def get_verified_range(self, start: Header, amount: int) -> List[Header]:
        return self._store.get_verified_range(start, start.height() + amount + 1)

    def get(self, hash: Hash) -> Header:
        return self._store.get(hash)