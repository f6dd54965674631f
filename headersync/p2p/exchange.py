"""Client side of the header exchange: requests headers from peers."""

from __future__ import annotations

import logging
import random
import threading
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, List, Optional, Protocol, Sequence, Tuple, Type

from ..hash import Hash
from ..header import (
    MAX_RANGE_REQUEST_SIZE,
    Getter,
    Header,
    HeaderError,
    HeadersLimitExceededError,
    NotFoundError,
    apply_head_options,
)
from .messages import HeaderRequest, HeaderResponse, protocol_id, validate_chain_id
from .options import apply_options, default_client_parameters
from .peer_tracker import PeerTracker
from .session import Session, process_responses

logger = logging.getLogger("headersync.p2p")

# Least number of peers that must report the same head for it to be preferred.
MIN_HEAD_RESPONSES = 2
# Number of tracked peers asked for their head when a trusted head is given.
MAX_UNTRUSTED_HEAD_REQUESTS = 4
# Number of passes over the trusted peers for a single request.
REQUEST_RETRY = 3


class Transport(Protocol):
    """Delivers requests to peers."""

    def send(
        self, peer_id: str, protocol: str, request: HeaderRequest, timeout: float
    ) -> Tuple[List[HeaderResponse], int, int]:
        """Send a request; return the responses, their size in bytes and the duration in ms."""

    def connect(self, peer_id: str) -> None:
        """Connect to a peer; raise if that fails."""


def shuffle_peers(peers: Iterable[str]) -> List[str]:
    """Return the peers in random order, leaving the input untouched."""
    shuffled = list(peers)
    random.shuffle(shuffled)
    return shuffled


def best_head(headers: Sequence[Header]) -> Header:
    """Choose the highest header reported by at least two peers.

    If no header was reported twice, the highest header is returned.
    """
    if not headers:
        raise NotFoundError()
    counts = Counter(str(header.hash()) for header in headers)
    ordered = sorted(headers, key=lambda header: header.height(), reverse=True)
    for header in ordered:
        if counts[str(header.hash())] >= MIN_HEAD_RESPONSES:
            return header
    logger.debug("no head was received from at least two peers, returning the highest")
    return ordered[0]


class Exchange(Getter):
    """Requests headers from trusted and tracked peers."""

    def __init__(
        self,
        header_type: Type[Header],
        transport: Transport,
        trusted_peers: Iterable[str],
        tracker: Optional[PeerTracker],
        *args: Callable,
    ) -> None:
        params = apply_options(default_client_parameters(), args)
        params.validate()
        self.params = params
        self.protocol_id = protocol_id(params.network_id)
        self.tracker = tracker if tracker is not None else PeerTracker("", params.pidstore)
        self._header_type = header_type
        self._transport = transport
        self._trusted = list(trusted_peers)
        self._closed = threading.Event()
        self._lock = threading.Lock()
        self._sessions: set = set()

    def _trusted_peers(self) -> List[str]:
        return shuffle_peers(self._trusted)

    def _timeout(self) -> float:
        return self.params.range_request_timeout.total_seconds()

    def _check_open(self) -> None:
        if self._closed.is_set():
            raise HeaderError("header/p2p: exchange is closed")

    def start(self) -> None:
        """Connect to the trusted peers and to previously seen ones."""
        logger.info("client: starting client on %s", self.protocol_id)
        self._closed.clear()
        self.tracker.bootstrap(self._trusted_peers(), self._transport.connect)

    def stop(self) -> None:
        """Abort running requests and persist the tracked peers."""
        self._closed.set()
        with self._lock:
            sessions = list(self._sessions)
        for session in sessions:
            session.close()
        self.tracker.stop()

    def head(self, *args) -> Header:
        """Ask peers for their head in parallel and return the best answer.

        Without a trusted head the trusted peers are asked; with one, tracked
        peers are asked and their answers verified against it.
        """
        self._check_open()
        params = apply_head_options(args)
        peers = self._trusted_peers()
        use_tracked = params.trusted_head is not None
        if use_tracked:
            tracked = self.tracker.get_peers(MAX_UNTRUSTED_HEAD_REQUESTS)
            if tracked:
                peers = tracked
                logger.debug("requesting head from %d tracked peers", len(peers))

        request = HeaderRequest(origin=0, amount=1)

        def ask(peer_id: str) -> Optional[Header]:
            try:
                headers = self.request(peer_id, request)
            except Exception as exc:
                logger.error("head request to peer %s failed: %s", peer_id, exc)
                return None
            head = headers[0]
            if use_tracked:
                try:
                    params.trusted_head.verify(head)
                except Exception as exc:
                    logger.error("verifying head from tracked peer %s: %s", peer_id, exc)
                    self.tracker.block_peer(peer_id, HeaderError(f"returned bad head: {exc}"))
                    return None
            return head

        results: List[Optional[Header]] = []
        if peers:
            with ThreadPoolExecutor(max_workers=len(peers)) as pool:
                results = list(pool.map(ask, peers))
        self._check_open()
        return best_head([h for h in results if h is not None and not h.is_zero()])

    def get_by_height(self, height: int) -> Header:
        """Request the header at the given height from the trusted peers."""
        if height == 0:
            raise ValueError("specified request height must be greater than 0")
        return self._perform_request(HeaderRequest(origin=height, amount=1))[0]

    def get_range_by_height(self, start: int, amount: int) -> List[Header]:
        """Request `amount` headers from height `start`, spread over tracked peers."""
        if amount == 0:
            return []
        if amount > MAX_RANGE_REQUEST_SIZE:
            raise HeadersLimitExceededError()
        return self._run_session(None, start, amount)

    def get_verified_range(self, start: Header, amount: int) -> List[Header]:
        """Request `amount` headers following `start`, verified against it."""
        if amount == 0:
            return []
        return self._run_session(start, start.height() + 1, amount)

    def get(self, hash: Hash) -> Header:
        """Request the header with the given hash from the trusted peers."""
        hash = Hash(hash)
        header = self._perform_request(HeaderRequest(hash=hash, amount=1))[0]
        if header.hash() != hash:
            raise HeaderError(
                f"incorrect hash in header: expected {hash.hex()}, got {header.hash().hex()}"
            )
        return header

    def request(self, peer_id: str, request: HeaderRequest) -> List[Header]:
        """Send a request to one peer and return the decoded, validated headers."""
        logger.debug("requesting peer %s", peer_id)
        responses, _size, _duration = self._transport.send(
            peer_id, self.protocol_id, request, self._timeout()
        )
        headers = process_responses(self._header_type, responses)
        for header in headers:
            validate_chain_id(self.params.chain_id, header.chain_id())
        return headers

    def _send(self, peer_id: str, request: HeaderRequest, timeout: float):
        return self._transport.send(peer_id, self.protocol_id, request, timeout)

    def _run_session(self, start: Optional[Header], height: int, amount: int) -> List[Header]:
        self._check_open()
        session = Session(
            self._header_type, self.tracker, self._send, self.params.range_request_timeout, start
        )
        with self._lock:
            self._sessions.add(session)
        try:
            with session:
                if self._closed.is_set():
                    session.close()
                return session.get_range_by_height(
                    height, amount, self.params.max_headers_per_range_request
                )
        finally:
            with self._lock:
                self._sessions.discard(session)

    def _perform_request(self, request: HeaderRequest) -> List[Header]:
        if request.amount == 0:
            return []
        peers = self._trusted_peers()
        if not peers:
            raise HeaderError("no trusted peers")
        last_error: Optional[Exception] = None
        for attempt in range(REQUEST_RETRY):
            for peer_id in peers:
                self._check_open()
                try:
                    return self.request(peer_id, request)
                except Exception as exc:
                    last_error = exc
                    logger.debug(
                        "request to trusted peer %s failed (try %d): %s", peer_id, attempt, exc
                    )
        raise last_error