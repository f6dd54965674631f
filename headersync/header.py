"""Header abstractions, storage and subscription interfaces, errors and head options."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from .hash import Hash

# The maximum amount of headers that can be handled or requested at once.
MAX_RANGE_REQUEST_SIZE = 512


class Header(ABC):
    """Everything a header must provide for header sync."""

    @abstractmethod
    def new(self) -> "Header":
        """Return a new, empty instance of the same header type."""

    @abstractmethod
    def is_zero(self) -> bool:
        """Report whether this header is the zero value of its type."""

    @abstractmethod
    def chain_id(self) -> str:
        """Return the identifier of the chain."""

    @abstractmethod
    def hash(self) -> Hash:
        """Return the hash of the header."""

    @abstractmethod
    def height(self) -> int:
        """Return the height of the header."""

    @abstractmethod
    def last_header(self) -> Hash:
        """Return the hash of the previous header."""

    @abstractmethod
    def time(self) -> datetime:
        """Return the time the header was created."""

    @abstractmethod
    def verify(self, other: "Header") -> None:
        """Validate an untrusted header against this trusted one; raise on failure."""

    @abstractmethod
    def validate(self) -> None:
        """Perform stateless validation of the fields; raise on failure."""

    @abstractmethod
    def marshal_binary(self) -> bytes:
        """Serialize the header to bytes."""

    @classmethod
    @abstractmethod
    def unmarshal_binary(cls, data: bytes) -> "Header":
        """Deserialize a header from bytes."""


class HeaderError(Exception):
    """Base class of header errors."""


class NotFoundError(HeaderError):
    """The requested header does not exist."""

    def __init__(self, message: str = "header: not found") -> None:
        super().__init__(message)


class NoHeadError(HeaderError):
    """The store is empty and knows no header."""

    def __init__(self, message: str = "header/store: no chain head") -> None:
        super().__init__(message)


class HeadersLimitExceededError(HeaderError):
    """A request asked for more headers than allowed at once."""

    def __init__(self, message: str = "header/p2p: header limit per 1 request exceeded") -> None:
        super().__init__(message)


class NonAdjacentError(HeaderError):
    """A header appended to a store is not adjacent to the stored head."""

    def __init__(self, head: int, attempted: int) -> None:
        self.head = head
        self.attempted = attempted
        super().__init__(f"header/store: non-adjacent: head {head}, attempted {attempted}")


@dataclass
class HeadParams:
    """Options used by head requests."""

    trusted_head: Optional[Header] = None


HeadOption = Callable[[HeadParams], None]


def with_trusted_head(verified: Header) -> HeadOption:
    """Return an option that sets the trusted head to verify against."""

    def option(params: HeadParams) -> None:
        params.trusted_head = verified

    return option


def apply_head_options(options: Iterable[HeadOption]) -> HeadParams:
    """Build HeadParams from the given options, applied in order."""
    params = HeadParams()
    for option in options:
        option(params)
    return params


class Getter(ABC):
    """Retrieval of headers that were processed during sync."""

    @abstractmethod
    def head(self, *options: HeadOption) -> Header:
        """Return the latest known header."""

    @abstractmethod
    def get(self, hash: Hash) -> Header:
        """Return the header with the given hash."""

    @abstractmethod
    def get_by_height(self, height: int) -> Header:
        """Return the header at the given height."""

    @abstractmethod
    def get_range_by_height(self, start: int, amount: int) -> List[Header]:
        """Return `amount` headers beginning at height `start`."""

    @abstractmethod
    def get_verified_range(self, start: Header, amount: int) -> List[Header]:
        """Return headers following `start`, verified to be adjacent."""


class Store(Getter):
    """Local storage of headers."""

    @abstractmethod
    def init(self, head: Header) -> None:
        """Initialize the store with the given genesis header."""

    @abstractmethod
    def height(self) -> int:
        """Return the height of the chain head."""

    @abstractmethod
    def has(self, hash: Hash) -> bool:
        """Report whether a header with the hash is stored."""

    @abstractmethod
    def has_at(self, height: int) -> bool:
        """Report whether a header at the height is stored."""

    @abstractmethod
    def append(self, *headers: Header) -> None:
        """Store adjacent headers in ascending order on top of the head."""

    @abstractmethod
    def get_range_by_height(self, start: int, end: int) -> List[Header]:
        """Return the headers in the height range [start, end)."""

    @abstractmethod
    def get_verified_range(self, start: Header, end: int) -> List[Header]:
        """Return the headers from start's height + 1 up to, not including, end."""


class Subscription(ABC):
    """A stream of new headers."""

    @abstractmethod
    def next_header(self) -> Header:
        """Return the newest verified header from the network."""

    @abstractmethod
    def cancel(self) -> None:
        """Cancel the subscription."""


class Subscriber(ABC):
    """Creation of subscriptions to new headers."""

    @abstractmethod
    def subscribe(self) -> Subscription:
        """Create a long-living subscription for validated headers."""

    @abstractmethod
    def set_verifier(self, verifier: Callable[[Header], None]) -> None:
        """Register the function that screens incoming headers."""