"""
Shared pytest fixtures for sessionbox tests.

This module provides common fixtures including:
- FakeBackend: dict-backed PersistenceBackend with failure injection
- Redis mocks for the Redis backend tests
- Session store fixtures with and without persistence
"""

import fnmatch
import json
import os
import sys
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Set
from unittest.mock import AsyncMock

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sessionbox.modules.config import SessionConfig
from sessionbox.modules.errors import BackendError
from sessionbox.modules.session import SessionRecord, SessionStore
from sessionbox.modules.session.record import utcnow


# =============================================================================
# Fake Persistence Backend
# =============================================================================


class FakeBackend:
    """
    In-memory PersistenceBackend for store tests.

    Rows are kept as JSON strings, like a real backend would, so loads
    return fresh record objects. Operations listed in `fail` raise
    BackendError; `on_save` runs before each save is applied.
    """

    def __init__(self):
        self.rows: Dict[str, str] = {}
        self.fail: Set[str] = set()
        self.calls: List[str] = []
        self.on_save: Optional[Callable[[SessionRecord], object]] = None
        self.initiated = False
        self.closed = False

    def _check(self, operation: str) -> None:
        self.calls.append(operation)
        if operation in self.fail:
            raise BackendError(operation, "simulated outage")

    def put(self, record: SessionRecord) -> None:
        """Seed a stored row directly."""
        self.rows[record.token] = json.dumps(record.to_dict())

    async def initiate(self) -> None:
        self._check("initiate")
        self.initiated = True

    async def load(self, token: str) -> Optional[SessionRecord]:
        self._check("load")
        payload = self.rows.get(token)
        return SessionRecord.from_dict(json.loads(payload)) if payload else None

    async def save(self, record: SessionRecord) -> None:
        self._check("save")
        if self.on_save is not None:
            result = self.on_save(record)
            if hasattr(result, "__await__"):
                await result
        self.rows[record.token] = json.dumps(record.to_dict())

    async def delete(self, token: str) -> None:
        self._check("delete")
        self.rows.pop(token, None)

    async def delete_all(self) -> None:
        self._check("delete_all")
        self.rows.clear()

    async def delete_expired(self) -> int:
        self._check("delete_expired")
        now = utcnow()
        expired = [
            token
            for token, payload in self.rows.items()
            if SessionRecord.from_dict(json.loads(payload)).is_expired(now)
        ]
        for token in expired:
            del self.rows[token]
        return len(expired)

    async def count(self) -> int:
        self._check("count")
        return len(self.rows)

    async def close(self) -> None:
        self.calls.append("close")
        self.closed = True


def stored_record(token: str, lifespan: timedelta = timedelta(hours=1), **data) -> SessionRecord:
    """Build a record as it would come back from a backend."""
    record = SessionRecord.new(token, lifespan)
    record.data = {key: json.dumps(value) for key, value in data.items()}
    return record


# =============================================================================
# Session Store Fixtures
# =============================================================================


@pytest.fixture
def session_config():
    """Config with per-request reconciliation off so tests drive passes explicitly."""
    return SessionConfig(reconcile_on_release=False)


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def memory_store(session_config):
    """Store without persistence."""
    return SessionStore(session_config)


@pytest.fixture
def persistent_store(session_config, fake_backend):
    """Store persisting to the fake backend."""
    return SessionStore(session_config, backend=fake_backend)


# =============================================================================
# Redis Mocking Infrastructure
# =============================================================================


@pytest.fixture
def mock_redis_with_data():
    """
    Redis mock with in-memory data storage for more realistic tests.

    This allows testing code that reads back what it writes.
    """
    storage = {}
    ttls = {}

    redis = AsyncMock()

    async def mock_set(key, value, ex=None, **kwargs):
        storage[key] = value
        if ex is not None:
            ttls[key] = ex
        return True

    async def mock_get(key):
        return storage.get(key)

    async def mock_delete(*keys):
        count = 0
        for key in keys:
            if key in storage:
                del storage[key]
                ttls.pop(key, None)
                count += 1
        return count

    async def mock_scan_iter(match="*", count=None):
        for key in list(storage.keys()):
            if fnmatch.fnmatch(key, match):
                yield key

    redis.set = mock_set
    redis.get = mock_get
    redis.delete = mock_delete
    redis.scan_iter = mock_scan_iter
    redis.ping = AsyncMock(return_value=True)
    redis._storage = storage  # Expose for test assertions
    redis._ttls = ttls

    return redis


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: Integration tests requiring infrastructure"
    )
