"""Sessions that split a header range into requests spread over peers."""

from __future__ import annotations

import logging
import queue
import threading
from datetime import timedelta
from typing import Callable, List, Optional, Sequence, Tuple, Type, Union

from ..header import Header, HeaderError, NotFoundError
from .messages import HeaderRequest, HeaderResponse, status_code_to_error
from .peer_stats import PeerQueue, PeerStat
from .peer_tracker import PeerTracker

logger = logging.getLogger("headersync.p2p")

_POLL_INTERVAL = 0.05

# Sends a request to a peer with a timeout in seconds; returns the responses,
# their total size in bytes and the request duration in milliseconds.
SendFunc = Callable[[str, HeaderRequest, float], Tuple[List[HeaderResponse], int, int]]


class EmptyResponseError(HeaderError):
    """The peer closed the stream without sending a single response."""

    def __init__(self, message: str = "empty response") -> None:
        super().__init__(message)


def prepare_requests(start: int, amount: int, headers_per_peer: int) -> List[HeaderRequest]:
    """Split a range into requests of at most headers_per_peer headers each."""
    if headers_per_peer <= 0:
        raise ValueError(f"headers per peer must be greater than 0: {headers_per_peer}")
    requests = []
    while amount > 0:
        size = min(amount, headers_per_peer)
        requests.append(HeaderRequest(origin=start, amount=size))
        start += size
        amount -= size
    return requests


def process_responses(header_type: Type[Header], responses: Sequence[HeaderResponse]) -> List[Header]:
    """Decode and validate the headers of a response."""
    if not responses:
        raise EmptyResponseError()
    headers = []
    for response in responses:
        error = status_code_to_error(response.status_code)
        if error is not None:
            raise error
        header = header_type.unmarshal_binary(response.body)
        header.validate()
        headers.append(header)
    return headers


class Session:
    """Fetches a range of headers by requesting parts of it from the best peers."""

    def __init__(
        self,
        header_type: Type[Header],
        tracker: PeerTracker,
        send: SendFunc,
        request_timeout: Union[timedelta, float],
        start: Optional[Header] = None,
    ) -> None:
        self._header_type = header_type
        self._tracker = tracker
        self._send = send
        if isinstance(request_timeout, timedelta):
            self._timeout = request_timeout.total_seconds()
        else:
            self._timeout = float(request_timeout)
        # When set, every received range is verified against this header.
        self._start = start
        self._queue = PeerQueue(tracker.peers())
        self._closed = threading.Event()

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def get_range_by_height(self, start: int, amount: int, headers_per_peer: int) -> List[Header]:
        """Return `amount` headers from height `start`, sorted by height."""
        if amount == 0:
            return []
        if self._closed.is_set():
            raise HeaderError("header/p2p: exchange is closed")
        logger.debug("requesting headers from %d to %d", start, start + amount - 1)

        requests: "queue.Queue[HeaderRequest]" = queue.Queue()
        results: "queue.Queue[List[Header]]" = queue.Queue()
        done = threading.Event()
        for request in prepare_requests(start, amount, headers_per_peer):
            requests.put(request)
        threading.Thread(
            target=self._dispatch, args=(requests, results, done), daemon=True
        ).start()

        headers: List[Header] = []
        try:
            while len(headers) < amount:
                if self._closed.is_set():
                    raise HeaderError("header/p2p: exchange is closed")
                try:
                    headers.extend(results.get(timeout=_POLL_INTERVAL))
                except queue.Empty:
                    continue
        finally:
            done.set()

        headers.sort(key=lambda header: header.height())
        logger.debug("received headers range %d to %d", headers[0].height(), headers[-1].height())
        return headers

    def _stopped(self, done: threading.Event) -> bool:
        return done.is_set() or self._closed.is_set()

    def _dispatch(self, requests: queue.Queue, results: queue.Queue, done: threading.Event) -> None:
        while not self._stopped(done):
            try:
                request = requests.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            stat = None
            while stat is None and not self._stopped(done):
                stat = self._queue.wait_pop(_POLL_INTERVAL)
            if stat is None:
                return
            threading.Thread(
                target=self._do_request,
                args=(stat, request, requests, results, done),
                daemon=True,
            ).start()

    def _retry(self, request: HeaderRequest, requests: queue.Queue, done: threading.Event) -> None:
        if not self._stopped(done):
            requests.put(request)

    def _do_request(
        self,
        stat: PeerStat,
        request: HeaderRequest,
        requests: queue.Queue,
        results: queue.Queue,
        done: threading.Event,
    ) -> None:
        try:
            responses, size, duration = self._send(stat.peer_id, request, self._timeout)
        except Exception as exc:  # treated as an empty response below
            logger.debug("requesting headers from peer %s failed: %s", stat.peer_id, exc)
            responses, size, duration = [], 0, 0

        try:
            headers = self._process_responses(responses)
        except (NotFoundError, EmptyResponseError) as exc:
            logger.debug("processing response from peer %s: %s", stat.peer_id, exc)
            stat.decrease_score()
            self._retry(request, requests, done)
            return
        except Exception as exc:
            logger.error("processing response from peer %s: %s", stat.peer_id, exc)
            self._tracker.block_peer(stat.peer_id, exc)
            self._retry(request, requests, done)
            return

        stat.update_stats(size, duration)
        received = len(headers)
        if received < request.amount:
            last = headers[-1].height()
            requests.put(prepare_requests(last + 1, request.amount - received, request.amount)[0])
        results.put(headers)
        self._queue.push(stat)

    def _process_responses(self, responses: Sequence[HeaderResponse]) -> List[Header]:
        headers = process_responses(self._header_type, responses)
        self.verify(headers)
        return headers

    def verify(self, headers: Sequence[Header]) -> None:
        """Check that headers verify against the start header and are adjacent."""
        if self._start is None or self._start.is_zero():
            return
        trusted = self._start
        for untrusted in headers:
            trusted.verify(untrusted)
            # Ranges arrive out of order, so adjacency to the start header is not checked.
            if trusted.height() != self._start.height() and trusted.height() + 1 != untrusted.height():
                raise HeaderError(
                    "peer sent valid but non-adjacent header. "
                    f"expected:{trusted.height() + 1}, received:{untrusted.height()}"
                )
            trusted = untrusted

    def close(self) -> None:
        """Stop the session, aborting any range being fetched."""
        self._closed.set()
        self._queue.close()