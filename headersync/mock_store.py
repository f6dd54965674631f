"""In-memory header store and subscriber for exercising header sync."""

from __future__ import annotations

from concurrent.futures import CancelledError
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol

from .dummy import DummyHeader, DummySuite
from .hash import Hash
from .header import Header, NotFoundError, Store, Subscriber, Subscription


class _Generator(Protocol):
    def next_header(self) -> Header: ...


class MockStore(Store):
    """A store keeping headers in a dictionary keyed by height."""

    def __init__(self, generator: _Generator, num_headers: int) -> None:
        self.headers: Dict[int, Header] = {}
        self.head_height = 0
        self.initial_head: Optional[Header] = None
        for _ in range(num_headers):
            header = generator.next_header()
            self.headers[header.height()] = header
            self.head_height = max(self.head_height, header.height())

    def init(self, head: Header) -> None:
        """Remember the header the store was initialized with; stored headers are unchanged."""
        self.initial_head = head

    def height(self) -> int:
        return self.head_height

    def head(self, *args) -> Optional[Header]:
        return self.headers.get(self.head_height)

    def get(self, hash: Hash) -> Header:
        for header in self.headers.values():
            if header.hash() == hash:
                return header
        raise NotFoundError()

    def get_by_height(self, height: int) -> Optional[Header]:
        return self.headers.get(height)

    def get_range_by_height(self, start: int, end: int) -> List[Optional[Header]]:
        """Return the headers at heights [start, end)."""
        if end < start:
            raise ValueError(f"invalid range: from {start} to {end}")
        if end == 0 or end - 1 > self.height():
            raise NotFoundError()
        return [self.headers.get(height) for height in range(start, end)]

    def get_verified_range(self, start: Header, end: int) -> List[Optional[Header]]:
        return self.get_range_by_height(start.height() + 1, end)

    def has(self, hash: Hash) -> bool:
        """Report whether a header with the given hash is stored."""
        return any(header.hash() == hash for header in self.headers.values())

    def has_at(self, height: int) -> bool:
        return height != 0 and self.head_height >= height

    def append(self, *args: Header) -> None:
        for header in args:
            self.headers[header.height()] = header
            self.head_height = max(self.head_height, header.height())


def new_dummy_store() -> MockStore:
    """Return a store holding a fresh chain of ten dummy headers."""
    return MockStore(DummySuite(), 10)


@dataclass
class MockSubscriber(Subscriber, Subscription):
    """A subscriber that hands out queued headers in order."""

    headers: List[DummyHeader] = field(default_factory=list)
    verifier: Optional[Callable[[Header], None]] = field(default=None, repr=False)
    _closed: bool = field(default=False, init=False, repr=False)

    def set_verifier(self, verifier: Callable[[Header], None]) -> None:
        """Keep the verifier; queued headers are still handed out unverified."""
        self.verifier = verifier

    def subscribe(self) -> "MockSubscriber":
        return self

    def next_header(self) -> DummyHeader:
        """Return and remove the first queued header; raise CancelledError when empty or cancelled."""
        if self._closed or not self.headers:
            raise CancelledError()
        return self.headers.pop(0)

    def cancel(self) -> None:
        """Cancel the subscription so no further headers are handed out."""
        self._closed = True

    def stop(self) -> None:
        """Stop the subscriber, cancelling its subscription."""
        self.cancel()