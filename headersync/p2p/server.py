"""Server side of the header exchange: answers inbound header requests from a store."""

from __future__ import annotations

import logging
from typing import Callable, List, Optional

from ..hash import Hash
from ..header import (
    MAX_RANGE_REQUEST_SIZE,
    Header,
    HeaderError,
    HeadersLimitExceededError,
    NoHeadError,
    NotFoundError,
    Store,
)
from .messages import HeaderRequest, HeaderResponse, StatusCode, protocol_id
from .options import apply_options, default_server_parameters

logger = logging.getLogger("headersync.p2p")


class ExchangeServer:
    """Responds to inbound header requests with headers from a store."""

    def __init__(self, store: Store, *args: Callable) -> None:
        params = apply_options(default_server_parameters(), args)
        params.validate()
        self.params = params
        self.store = store
        self.protocol_id = protocol_id(params.network_id)
        self._running = False

    def start(self) -> None:
        """Begin answering requests."""
        logger.info("server: listening for inbound header requests on %s", self.protocol_id)
        self._running = True

    def stop(self) -> None:
        """Stop answering requests."""
        logger.info("server: stopping server")
        self._running = False

    @property
    def running(self) -> bool:
        """Report whether the server answers requests."""
        return self._running

    def handle(self, request: HeaderRequest) -> List[HeaderResponse]:
        """Answer a request with one response per header.

        A missing header is answered with a single NOT_FOUND response; any
        other failure is raised, as the request cannot be answered at all.
        """
        if not self._running:
            raise HeaderError("server: not started")
        try:
            if request.by_hash:
                headers = self.handle_request_by_hash(request.hash)
            else:
                headers = self.handle_request(request.origin, request.origin + request.amount)
        except NotFoundError:
            return [HeaderResponse(body=b"", status_code=StatusCode.NOT_FOUND)]
        return [
            HeaderResponse(body=self._encode(header), status_code=StatusCode.OK)
            for header in headers
        ]

    @staticmethod
    def _encode(header: Optional[Header]) -> bytes:
        if header is None or header.is_zero():
            return b""
        return header.marshal_binary()

    def handle_request_by_hash(self, hash: bytes) -> List[Header]:
        """Return the header with the given hash."""
        hash = Hash(hash)
        logger.debug("server: handling header request for hash %s", hash)
        try:
            header = self.store.get(hash)
        except Exception as exc:
            logger.error("server: getting header by hash %s: %s", hash, exc)
            raise
        return [header]

    def handle_request(self, start: int, end: int) -> List[Optional[Header]]:
        """Return the stored headers in [start, end), or the head if start is 0.

        When the store holds only part of the range, the part it holds is returned.
        """
        if start == 0:
            return self.handle_head_request()
        if end - start > MAX_RANGE_REQUEST_SIZE:
            logger.error("server: skip request for too many headers: %d", end - start)
            raise HeadersLimitExceededError()

        logger.debug("server: handling headers request from %d to %d", start, end)
        if not self.store.has_at(end - 1):
            head = self.store.head()
            if head is None:
                raise NoHeadError()
            if head.height() < start:
                logger.debug(
                    "server: requested headers %d to %d not stored, head is %d",
                    start, end, head.height(),
                )
                raise NotFoundError()
            logger.debug("server: serving partial range up to %d", head.height() + 1)
            end = head.height() + 1

        try:
            return list(self.store.get_range_by_height(start, end))
        except TimeoutError as exc:
            logger.warning("server: requested headers %d to %d not found", start, end)
            raise NotFoundError() from exc

    def handle_head_request(self) -> List[Header]:
        """Return the latest stored header."""
        logger.debug("server: handling head request")
        head = self.store.head()
        if head is None:
            raise NoHeadError()
        return [head]