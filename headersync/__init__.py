"""Header hashing, interfaces, test headers, in-memory store and local exchange."""

__version__ = "0.1.0"