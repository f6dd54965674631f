"""Cryptographic hash value with hex and JSON serialization."""

from __future__ import annotations

import binascii
from typing import Union


class Hash(bytes):
    """A cryptographic hash, rendered as upper-case hex."""

    def __str__(self) -> str:
        return self.hex().upper()

    def __repr__(self) -> str:
        return f"Hash({self.hex().upper()!r})"

    def to_json(self) -> str:
        """Return the JSON representation: a quoted upper-case hex string."""
        return f'"{self.hex().upper()}"'

    @classmethod
    def from_json(cls, data: Union[str, bytes, bytearray]) -> "Hash":
        """Parse a quoted hex string into a Hash.

        Raises ValueError if the data is not a quoted, valid hex string.
        """
        text = data.decode("utf-8", errors="replace") if isinstance(data, (bytes, bytearray)) else data
        if len(text) < 2 or text[0] != '"' or text[-1] != '"':
            raise ValueError(f"invalid hex string: {text}")
        try:
            return cls(binascii.unhexlify(text[1:-1]))
        except (binascii.Error, ValueError) as exc:
            raise ValueError(f"invalid hex string: {text}") from exc