"""Client and server parameters for the header exchange, and their options."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Callable, Iterable, List, Optional, TypeVar, Union

_GREATER_THAN_ZERO = "should be greater than 0"
_PROVIDED_SUFFIX = "Provided value"


class PeerIDStore(ABC):
    """Persists the IDs of good peers."""

    @abstractmethod
    def put(self, peers: List[str]) -> None:
        """Store the given peer IDs."""

    @abstractmethod
    def load(self) -> List[str]:
        """Load the stored peer IDs."""


@dataclass
class ServerParameters:
    """Parameters of the exchange server."""

    # Timeout for sending messages to the stream.
    write_deadline: timedelta = timedelta(0)
    # Timeout for reading messages from the stream.
    read_deadline: timedelta = timedelta(0)
    # Timeout after which a range request is tried with another peer.
    range_request_timeout: timedelta = timedelta(0)
    # Network used to build the protocol ID; empty by default.
    network_id: str = ""

    def validate(self) -> None:
        """Raise ValueError if any parameter is unset."""
        if self.write_deadline == timedelta(0):
            raise ValueError(f"invalid write time duration: {self.write_deadline}")
        if self.read_deadline == timedelta(0):
            raise ValueError(f"invalid read time duration: {self.read_deadline}")
        if self.range_request_timeout == timedelta(0):
            raise ValueError(
                f"invalid request timeout for session: {_GREATER_THAN_ZERO}. "
                f"{_PROVIDED_SUFFIX}: {self.range_request_timeout}"
            )


@dataclass
class ClientParameters:
    """Parameters of the exchange client."""

    # The most headers that can be requested from one peer in one request.
    max_headers_per_range_request: int = 0
    # Timeout after which a range request is tried with another peer.
    range_request_timeout: timedelta = timedelta(0)
    # Network used to build the protocol ID.
    network_id: str = ""
    # Identifier of the chain that received headers must belong to.
    chain_id: str = ""
    pidstore: Optional[PeerIDStore] = None

    def validate(self) -> None:
        """Raise ValueError if any required parameter is unset."""
        if self.max_headers_per_range_request == 0:
            raise ValueError(
                f"invalid MaxHeadersPerRangeRequest:{_GREATER_THAN_ZERO}. "
                f"{_PROVIDED_SUFFIX}: {self.max_headers_per_range_request}"
            )
        if self.range_request_timeout == timedelta(0):
            raise ValueError(
                f"invalid request timeout for session: {_GREATER_THAN_ZERO}. "
                f"{_PROVIDED_SUFFIX}: {self.range_request_timeout}"
            )


Parameters = Union[ServerParameters, ClientParameters]
P = TypeVar("P", ServerParameters, ClientParameters)
Option = Callable[[P], P]


def default_server_parameters() -> ServerParameters:
    """Return the default server parameters."""
    return ServerParameters(
        write_deadline=timedelta(seconds=8),
        read_deadline=timedelta(minutes=1),
        range_request_timeout=timedelta(seconds=10),
    )


def default_client_parameters() -> ClientParameters:
    """Return the default client parameters."""
    return ClientParameters(
        max_headers_per_range_request=64,
        range_request_timeout=timedelta(seconds=8),
    )


def _setter(kinds: tuple, name: str, value: object) -> Callable:
    def option(params):
        if isinstance(params, kinds):
            return replace(params, **{name: value})
        return params

    return option


def with_write_deadline(deadline: timedelta) -> Callable:
    """Set the server's write deadline."""
    return _setter((ServerParameters,), "write_deadline", deadline)


def with_read_deadline(deadline: timedelta) -> Callable:
    """Set the server's read deadline."""
    return _setter((ServerParameters,), "read_deadline", deadline)


def with_range_request_timeout(duration: timedelta) -> Callable:
    """Set the range request timeout of a client or server."""
    return _setter((ServerParameters, ClientParameters), "range_request_timeout", duration)


def with_network_id(network_id: str) -> Callable:
    """Set the network ID of a client or server."""
    return _setter((ServerParameters, ClientParameters), "network_id", network_id)


def with_max_headers_per_range_request(amount: int) -> Callable:
    """Set the client's maximum headers per range request."""
    return _setter((ClientParameters,), "max_headers_per_range_request", amount)


def with_chain_id(chain_id: str) -> Callable:
    """Set the client's chain ID."""
    return _setter((ClientParameters,), "chain_id", chain_id)


def with_peer_id_store(pidstore: PeerIDStore) -> Callable:
    """Set the store the client's peer tracker persists peers to."""
    return _setter((ClientParameters,), "pidstore", pidstore)


def with_params(params: Parameters) -> Callable:
    """Replace the parameters wholesale with a copy of params."""

    def option(current):
        if type(current) is not type(params):
            raise TypeError(
                f"cannot apply {type(params).__name__} to {type(current).__name__}"
            )
        return replace(params)

    return option


def apply_options(params: P, options: Iterable[Callable]) -> P:
    """Return params with the options applied in order."""
    for option in options:
        params = option(params)
    return params