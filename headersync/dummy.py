"""A simple header type and chain generator for exercising header sync."""

from __future__ import annotations

import hashlib
import json
import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from .hash import Hash
from .header import Header

_ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)
_MAX_HEIGHT = 2**64
_TIME_RE = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2}):(\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})$"
)
_JSON_ESCAPES = {"<": "\\u003c", ">": "\\u003e", "&": "\\u0026", "\u2028": "\\u2028", "\u2029": "\\u2029"}


class DummyVerifyError(Exception):
    """Verification of a dummy header was forced to fail."""

    def __init__(self, message: str = "dummy verify error") -> None:
        super().__init__(message)


def _format_time(value: datetime) -> str:
    utc = value.astimezone(timezone.utc)
    base = (
        f"{utc.year:04d}-{utc.month:02d}-{utc.day:02d}"
        f"T{utc.hour:02d}:{utc.minute:02d}:{utc.second:02d}"
    )
    fraction = f"{utc.microsecond:06d}".rstrip("0")
    return f"{base}.{fraction}Z" if fraction else f"{base}Z"


def _parse_time(text: object) -> datetime:
    if not isinstance(text, str):
        raise ValueError(f"invalid timestamp: {text!r}")
    match = _TIME_RE.match(text)
    if match is None:
        raise ValueError(f"invalid timestamp: {text!r}")
    year, month, day, hour, minute, second, fraction, zone = match.groups()
    micro = int((fraction or "")[:6].ljust(6, "0"))
    if zone == "Z":
        tz = timezone.utc
    else:
        sign = -1 if zone[0] == "-" else 1
        tz = timezone(sign * timedelta(hours=int(zone[1:3]), minutes=int(zone[4:6])))
    return datetime(int(year), int(month), int(day), int(hour), int(minute), int(second), micro, tzinfo=tz)


def rand_bytes(n: int) -> bytes:
    """Return n cryptographically random bytes."""
    return secrets.token_bytes(n)


def _rand_uint63() -> int:
    return int.from_bytes(secrets.token_bytes(8), "big") & (2**63 - 1)


@dataclass
class DummyHeader(Header):
    """A header carrying only the fields header sync needs."""

    chainid: str = ""
    previous_hash: Hash = field(default_factory=Hash)
    height_i: int = 0
    timestamp: datetime = _ZERO_TIME
    # Forces verification of this header to fail when set.
    verify_failure: bool = False
    _hash: Optional[Hash] = field(default=None, init=False, repr=False, compare=False)

    def new(self) -> "DummyHeader":
        return DummyHeader()

    def is_zero(self) -> bool:
        """An existing header is never the zero header; absence is None."""
        return False

    def chain_id(self) -> str:
        return self.chainid

    def hash(self) -> Hash:
        """Return the header's hash, computing it on first use."""
        if not self._hash:
            self._rehash()
        return self._hash

    def _rehash(self) -> None:
        self._hash = Hash(hashlib.sha3_512(self.marshal_binary()).digest())

    def height(self) -> int:
        return self.height_i

    def last_header(self) -> Hash:
        return self.previous_hash

    def time(self) -> datetime:
        return self.timestamp

    def is_recent(self, block_time: timedelta) -> bool:
        """Report whether the header is no older than block_time."""
        return datetime.now(timezone.utc) - self.timestamp <= block_time

    def is_expired(self, period: timedelta) -> bool:
        """Report whether more than period has passed since the header time."""
        return self.timestamp + period < datetime.now(timezone.utc)

    def verify(self, other: "DummyHeader") -> None:
        if other.verify_failure:
            raise DummyVerifyError()

    def validate(self) -> None:
        """Check that the height fits an unsigned 64-bit integer."""
        height = self.height_i
        if isinstance(height, bool) or not isinstance(height, int) or not 0 <= height < _MAX_HEIGHT:
            raise ValueError(f"invalid height: {height!r}")

    def marshal_binary(self) -> bytes:
        text = json.dumps(
            {
                "Chainid": self.chainid,
                "PreviousHash": str(Hash(self.previous_hash)),
                "HeightI": self.height_i,
                "Timestamp": _format_time(self.timestamp),
                "VerifyFailure": self.verify_failure,
            },
            separators=(",", ":"),
            ensure_ascii=False,
        )
        for char, escaped in _JSON_ESCAPES.items():
            text = text.replace(char, escaped)
        return text.encode("utf-8")

    @classmethod
    def unmarshal_binary(cls, data: bytes) -> "DummyHeader":
        """Decode a header from its JSON encoding; raise ValueError if malformed."""
        decoded = json.loads(data)
        if not isinstance(decoded, dict):
            raise ValueError("dummy header must be a JSON object")
        header = cls()
        if "Chainid" in decoded:
            if not isinstance(decoded["Chainid"], str):
                raise ValueError("Chainid must be a string")
            header.chainid = decoded["Chainid"]
        if "PreviousHash" in decoded:
            header.previous_hash = Hash.from_json(json.dumps(decoded["PreviousHash"]))
        if "HeightI" in decoded:
            height = decoded["HeightI"]
            if isinstance(height, bool) or not isinstance(height, int) or not 0 <= height < _MAX_HEIGHT:
                raise ValueError(f"invalid HeightI: {height!r}")
            header.height_i = height
        if "Timestamp" in decoded:
            header.timestamp = _parse_time(decoded["Timestamp"])
        if "VerifyFailure" in decoded:
            if not isinstance(decoded["VerifyFailure"], bool):
                raise ValueError("VerifyFailure must be a boolean")
            header.verify_failure = decoded["VerifyFailure"]
        return header


def rand_dummy_header() -> DummyHeader:
    """Return a header with random previous hash and height, stamped now."""
    header = DummyHeader(
        previous_hash=Hash(rand_bytes(32)),
        height_i=_rand_uint63(),
        timestamp=datetime.now(timezone.utc),
    )
    header._rehash()
    return header


class DummySuite:
    """Generates a chain of adjacent dummy headers."""

    def __init__(self) -> None:
        self._head: Optional[DummyHeader] = None

    def head(self) -> DummyHeader:
        """Return the current head, creating the genesis header if needed."""
        if self._head is None:
            self._head = self._genesis()
        return self._head

    def gen_dummy_headers(self, num: int) -> List[DummyHeader]:
        """Generate the next num headers of the chain."""
        return [self.next_header() for _ in range(num)]

    def next_header(self) -> DummyHeader:
        """Extend the chain by one header and return it."""
        if self._head is None:
            self._head = self._genesis()
            return self._head

        header = rand_dummy_header()
        header.timestamp = self._head.time() + timedelta(microseconds=1)
        header.height_i = self._head.height() + 1
        header.previous_hash = self._head.hash()
        header.chainid = self._head.chain_id()
        header._rehash()
        self._head = header
        return header

    @staticmethod
    def _genesis() -> DummyHeader:
        return DummyHeader(
            height_i=1,
            timestamp=datetime.now(timezone.utc) - timedelta(seconds=10),
            chainid="test",
        )