"""
Session table - concurrent token -> SessionRecord mapping held in memory.

The table is split into shards, each guarded by its own lock, so concurrent
mutations of the same token are serialized while unrelated tokens only
contend when they hash to the same shard. Records are only ever mutated in
place through get_mut()/tap(); nothing copies a record out to write it back.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional, Tuple, TypeVar

from ..errors import RecordMissing
from .record import SessionRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_SHARDS = 16


class SessionTable:
    """Sharded in-memory session table, safe for threads and asyncio tasks."""

    def __init__(self, shards: int = DEFAULT_SHARDS):
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self._shards: List[Tuple[threading.RLock, Dict[str, SessionRecord]]] = [
            (threading.RLock(), {}) for _ in range(shards)
        ]

    def _shard(self, token: str) -> Tuple[threading.RLock, Dict[str, SessionRecord]]:
        return self._shards[hash(token) % len(self._shards)]

    @contextmanager
    def get_mut(self, token: str) -> Iterator[Optional[SessionRecord]]:
        """
        Exclusive, scoped access to the record for `token`.

        Yields None when the token is not loaded. The shard lock is held for
        the whole block, so the block must not await.
        """
        lock, records = self._shard(token)
        with lock:
            yield records.get(token)

    def tap(self, token: str, func: Callable[[SessionRecord], T]) -> T:
        """
        Apply `func` to the exclusively locked record and return its result.

        Raises:
            RecordMissing: If no record is loaded for `token`
        """
        with self.get_mut(token) as record:
            if record is None:
                raise RecordMissing(token)
            return func(record)

    def insert(self, token: str, record: SessionRecord) -> None:
        lock, records = self._shard(token)
        with lock:
            records[token] = record

    def insert_if_absent(self, token: str, record: SessionRecord) -> bool:
        """Insert unless the token is already loaded. Returns True if inserted."""
        lock, records = self._shard(token)
        with lock:
            if token in records:
                return False
            records[token] = record
            return True

    def setdefault(self, token: str, record: SessionRecord) -> SessionRecord:
        """Insert `record` unless the token is loaded; return the loaded record."""
        lock, records = self._shard(token)
        with lock:
            return records.setdefault(token, record)

    def remove(self, token: str) -> Optional[SessionRecord]:
        lock, records = self._shard(token)
        with lock:
            return records.pop(token, None)

    def remove_if(self, token: str, predicate: Callable[[SessionRecord], bool]) -> bool:
        """Remove the record only if `predicate` holds while the lock is held."""
        lock, records = self._shard(token)
        with lock:
            record = records.get(token)
            if record is None or not predicate(record):
                return False
            del records[token]
            return True

    def contains(self, token: str) -> bool:
        lock, records = self._shard(token)
        with lock:
            return token in records

    def tokens(self) -> List[str]:
        """Snapshot of loaded tokens."""
        result: List[str] = []
        for lock, records in self._shards:
            with lock:
                result.extend(records.keys())
        return result

    def clear(self) -> None:
        for lock, records in self._shards:
            with lock:
                records.clear()

    def __len__(self) -> int:
        total = 0
        for lock, records in self._shards:
            with lock:
                total += len(records)
        return total

    def __contains__(self, token: str) -> bool:
        return self.contains(token)
