"""
Redis persistence backend.

Each session is one string key holding the JSON record, written with an
expiry so Redis drops stale sessions on its own.
"""

import json
import logging
import math
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from ..errors import BackendError
from ..session.record import SessionRecord, utcnow

logger = logging.getLogger(__name__)


class RedisBackend:
    """Session persistence on top of a pooled async Redis client."""

    def __init__(
        self,
        redis_client: Optional[redis.Redis] = None,
        url: str = "redis://localhost:6379/0",
        password: Optional[str] = None,
        key_prefix: str = "session:",
        scan_count: int = 500,
    ):
        """
        Initialize Redis backend.

        Args:
            redis_client: Existing async Redis client (created from `url` if None)
            url: Connection URL used when no client is given
            password: Optional Redis password
            key_prefix: Prefix for every session key
            scan_count: COUNT hint for SCAN when iterating sessions
        """
        self.url = url
        self.password = password
        self.key_prefix = key_prefix
        self.scan_count = scan_count
        self._client = redis_client
        self._owns_client = redis_client is None

    def _key(self, token: str) -> str:
        return f"{self.key_prefix}{token}"

    @property
    def redis(self) -> redis.Redis:
        if self._client is None:
            raise BackendError("connect", "Redis backend not initiated")
        return self._client

    async def initiate(self) -> None:
        if self._client is None:
            self._client = redis.from_url(
                self.url,
                password=self.password,
                encoding="utf-8",
                decode_responses=True,
            )
        try:
            await self.redis.ping()
        except RedisError as e:
            raise BackendError("connect", str(e), e) from e
        logger.info(f"Redis session backend ready (prefix={self.key_prefix!r})")

    async def load(self, token: str) -> Optional[SessionRecord]:
        try:
            payload = await self.redis.get(self._key(token))
        except RedisError as e:
            raise BackendError("load", str(e), e) from e

        if not payload:
            return None

        try:
            return SessionRecord.from_dict(json.loads(payload))
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise BackendError("load", f"corrupt session payload for {token}", e) from e

    async def save(self, record: SessionRecord) -> None:
        ttl = math.ceil((record.expires - utcnow()).total_seconds())
        if ttl <= 0:
            await self.delete(record.token)
            return

        try:
            await self.redis.set(self._key(record.token), json.dumps(record.to_dict()), ex=ttl)
        except RedisError as e:
            raise BackendError("save", str(e), e) from e

    async def delete(self, token: str) -> None:
        try:
            await self.redis.delete(self._key(token))
        except RedisError as e:
            raise BackendError("delete", str(e), e) from e

    async def delete_all(self) -> None:
        try:
            batch = []
            async for key in self.redis.scan_iter(match=f"{self.key_prefix}*", count=self.scan_count):
                batch.append(key)
                if len(batch) >= self.scan_count:
                    await self.redis.delete(*batch)
                    batch = []
            if batch:
                await self.redis.delete(*batch)
        except RedisError as e:
            raise BackendError("delete_all", str(e), e) from e

    async def delete_expired(self) -> int:
        # Keys carry their own TTL
        return 0

    async def count(self) -> int:
        try:
            total = 0
            async for _ in self.redis.scan_iter(match=f"{self.key_prefix}*", count=self.scan_count):
                total += 1
            return total
        except RedisError as e:
            raise BackendError("count", str(e), e) from e

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
