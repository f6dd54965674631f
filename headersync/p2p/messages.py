"""Request and response messages of the header exchange protocol, and helpers."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional

from ..hash import Hash
from ..header import HeaderError, NotFoundError


class StatusCode(enum.IntEnum):
    """Status of a header response."""

    INVALID = 0
    OK = 1
    NOT_FOUND = 2


@dataclass(frozen=True)
class HeaderRequest:
    """A request for `amount` headers starting at `origin`, or for one header by hash."""

    origin: int = 0
    hash: Optional[Hash] = None
    amount: int = 0

    def __post_init__(self) -> None:
        if self.amount < 0:
            raise ValueError(f"request amount must not be negative: {self.amount}")
        if self.origin < 0:
            raise ValueError(f"request origin must not be negative: {self.origin}")
        if self.hash is not None:
            if self.origin != 0:
                raise ValueError("a request holds either an origin or a hash, not both")
            if not isinstance(self.hash, Hash):
                object.__setattr__(self, "hash", Hash(self.hash))

    @property
    def by_hash(self) -> bool:
        """Report whether the request asks for a header by hash."""
        return self.hash is not None


@dataclass(frozen=True)
class HeaderResponse:
    """One header of a response, serialized, with the response status."""

    body: bytes = b""
    status_code: StatusCode = StatusCode.INVALID


def protocol_id(network_id: str) -> str:
    """Return the exchange protocol ID for the network."""
    return f"/{network_id}/header-ex/v0.0.3"


def pubsub_topic_id(network_id: str) -> str:
    """Return the header gossip topic ID for the network."""
    return f"/{network_id}/header-sub/v0.0.1"


def validate_chain_id(want: str, have: str) -> None:
    """Raise ValueError if want is set and differs from have, ignoring case."""
    if want and want.casefold() != have.casefold():
        raise ValueError(f"header with different chainID received.want={want},have={have}")


def status_code_to_error(code: int) -> Optional[HeaderError]:
    """Return the error a status code stands for, or None for OK."""
    if code == StatusCode.OK:
        return None
    if code == StatusCode.NOT_FOUND:
        return NotFoundError()
    return HeaderError(f"unknown status code {int(code)}")