"""Backing store implementations."""

from .base import STREAM_START, Lease, Store, StreamEntry, Versioned, parse_entry_id
from .memory import MemoryStore
from .redis import RedisStore

__all__ = [
    "STREAM_START",
    "Lease",
    "MemoryStore",
    "RedisStore",
    "Store",
    "StreamEntry",
    "Versioned",
    "parse_entry_id",
]
