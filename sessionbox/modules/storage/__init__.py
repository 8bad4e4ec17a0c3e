"""
Storage Module - Black Box Interface

Purpose: Abstract durable session persistence
Interface: PersistenceBackend, create_backend(), load(), save(), delete(), count()
Hidden: Redis/SQLite specifics, connection pooling, serialization

Can be replaced with any storage backend without affecting other modules.
"""

import logging
from typing import Optional

from ..config import BackendKind, SessionConfig
from .interfaces import PersistenceBackend
from .redis_backend import RedisBackend
from .sqlite_backend import SqliteBackend

logger = logging.getLogger(__name__)


def create_backend(config: SessionConfig) -> Optional[PersistenceBackend]:
    """
    Build the backend selected by configuration.

    Returns:
        A backend instance, or None when persistence is disabled
    """
    if not config.persistence_enabled or config.backend == BackendKind.NONE:
        logger.info("Session persistence disabled; sessions live in memory only")
        return None

    if config.backend == BackendKind.REDIS:
        return RedisBackend(
            url=config.redis_url,
            password=config.redis_password,
            key_prefix=config.key_prefix,
        )

    return SqliteBackend(db_path=config.sqlite_path, table_name=config.table_name)


__all__ = ["PersistenceBackend", "RedisBackend", "SqliteBackend", "create_backend"]
