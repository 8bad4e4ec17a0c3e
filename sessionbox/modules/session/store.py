"""
Session store - owns the in-memory session table and the optional
persistence backend, mints tokens, and reconciles memory with the backend.
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, AsyncIterator, List, Optional, Tuple

from ..config import SessionConfig, SessionMode
from ..errors import BackendError, RecordMissing, TokenGenerationError
from .handle import SessionHandle
from .record import SessionRecord, utcnow
from .table import SessionTable

if TYPE_CHECKING:
    from ..storage.interfaces import PersistenceBackend

logger = logging.getLogger(__name__)

RECONCILE_LOCK_SHARDS = 16


def parse_token(value: Optional[str]) -> Optional[str]:
    """
    Canonicalize a client-presented token.

    Returns:
        The canonical UUID string, or None if `value` is not a well-formed UUID
    """
    if not value:
        return None
    try:
        return str(uuid.UUID(value))
    except (ValueError, TypeError, AttributeError):
        return None


class _Action(Enum):
    KEEP = "keep"
    DESTROY = "destroy"
    EXPIRE = "expire"
    SAVE = "save"
    UNSTORE = "unstore"
    EVICT = "evict"


@dataclass
class ReconcileStats:
    """Outcome of a reconciliation pass."""

    destroyed: int = 0
    expired: int = 0
    saved: int = 0
    unstored: int = 0
    evicted: int = 0
    failed: int = 0
    purged: int = 0


class SessionStore:
    """
    Process-wide session state.

    Created once at startup and passed to the request pipeline (middleware)
    and to the background reconciliation task. Persistence is active only
    when a backend is given and `persistence_enabled` is set.

    Usage:
        store = SessionStore(config, backend=RedisBackend(...))
        await store.initiate()
        store.start()

        async with store.session(cookie_value) as session:
            await session.set("user-id", 42)

        await store.close()
    """

    def __init__(
        self,
        config: Optional[SessionConfig] = None,
        backend: Optional["PersistenceBackend"] = None,
        table: Optional[SessionTable] = None,
    ):
        self.config = config or SessionConfig()
        self.backend = backend
        self.table = table or SessionTable()
        self._reconcile_locks = [asyncio.Lock() for _ in range(RECONCILE_LOCK_SHARDS)]
        self._task: Optional[asyncio.Task] = None
        self._last_expiry_sweep: Optional[datetime] = None

    def is_persistent(self) -> bool:
        return self.backend is not None and self.config.persistence_enabled

    async def initiate(self) -> None:
        """Prepare the backend (connections, schema)."""
        if self.is_persistent():
            await self.backend.initiate()

    async def close(self) -> None:
        """Stop reconciliation, flush pending writes and release the backend."""
        await self.stop()
        if self.backend is not None:
            await self.backend.close()

    # Administrative operations

    async def count(self) -> int:
        """
        Number of sessions.

        Returns:
            Stored sessions when persistent, else sessions loaded in memory

        Raises:
            BackendError: If the backend count fails
        """
        if self.is_persistent():
            return await self.backend.count()
        return len(self.table)

    async def clear_store(self) -> None:
        """
        Delete every session in the backend.

        Raises:
            BackendError: If the backend call fails
        """
        if not self.is_persistent():
            return
        await self.backend.delete_all()
        logger.info("Cleared all sessions from persistence backend")

    # Token minting and resolution

    def _new_record(self, token: str) -> SessionRecord:
        storable = self.config.session_mode == SessionMode.PERSISTENT
        return SessionRecord.new(token, self.config.lifespan, storable=storable)

    def mint_token(self) -> str:
        """
        Generate an unused token and load a fresh record for it.

        Raises:
            TokenGenerationError: After `token_retry_limit` collisions
        """
        limit = self.config.token_retry_limit
        for attempt in range(1, limit + 1):
            token = str(uuid.uuid4())
            if self.table.insert_if_absent(token, self._new_record(token)):
                return token
            logger.warning(f"Session token collision on attempt {attempt}/{limit}")

        raise TokenGenerationError(limit)

    async def _ensure_loaded(self, token: str) -> bool:
        """Make sure an unexpired record for `token` is in the table."""
        if self.table.remove_if(token, lambda record: record.is_expired() and record.handles == 0):
            logger.debug(f"Dropped expired session {token}")
            return False
        with self.table.get_mut(token) as record:
            if record is not None:
                # Destroyed but not yet reconciled; never reload from the backend
                return not record.destroy
        if not self.is_persistent():
            return False

        try:
            record = await self.backend.load(token)
        except BackendError as e:
            logger.warning(f"Session load failed, treating as new session: {e}")
            return False

        if record is None or record.is_expired():
            return False

        record.accessed = utcnow()
        self.table.setdefault(token, record)
        return True

    async def load_or_create(self, token: str) -> SessionRecord:
        """
        Return the record for `token`, loading or creating it as needed.

        Order: in-memory record, then backend (when persistent), then a
        freshly initialized record under the same token.

        Returns:
            A detached snapshot of the loaded record. Mutations go through
            SessionHandle or SessionTable.tap, never through this copy.

        Raises:
            ValueError: If `token` is not a well-formed token
        """
        canonical = parse_token(token)
        if canonical is None:
            raise ValueError(f"Malformed session token: {token!r}")

        if not await self._ensure_loaded(canonical):
            self.table.setdefault(canonical, self._new_record(canonical))
        return self.table.tap(canonical, lambda record: record.snapshot())

    async def resolve(self, cookie_value: Optional[str]) -> str:
        """
        Map a client-presented cookie value to a loaded session token.

        Client-supplied tokens are only accepted if they resolve to an
        existing session; anything else gets a newly minted token.
        """
        token = parse_token(cookie_value)
        if token is not None and await self._ensure_loaded(token):
            return token

        if cookie_value:
            logger.debug("Client presented an unknown or malformed session token; minting a new one")
        return self.mint_token()

    @asynccontextmanager
    async def session(self, cookie_value: Optional[str] = None) -> AsyncIterator[SessionHandle]:
        """
        Bind a handle to the session for one request.

        The record's expiry is refreshed on entry. On exit the handle is
        released and, if configured, the session is reconciled.
        """
        token = await self.resolve(cookie_value)

        def _open(record: SessionRecord) -> None:
            record.touch(self.config.expiry_for(record.longterm))
            record.handles += 1

        try:
            self.table.tap(token, _open)
        except RecordMissing:
            # Evicted between resolve and open
            token = self.mint_token()
            self.table.tap(token, _open)

        handle = SessionHandle(self, token)
        try:
            yield handle
        finally:
            await self.release(handle)

    async def release(self, handle: SessionHandle) -> None:
        """Drop a handle's reference to its record."""

        def _close(record: SessionRecord) -> None:
            record.handles = max(0, record.handles - 1)
            expires = record.accessed + self.config.expiry_for(record.longterm)
            if record.expires != expires:
                record.expires = expires
                record.mark_dirty()

        try:
            self.table.tap(handle.token, _close)
        except RecordMissing:
            logger.debug(f"Released handle for unloaded session {handle.token}")
            return

        if self.config.reconcile_on_release:
            await self.reconcile_one(handle.token)

    # Reconciliation

    def _plan(self, record: SessionRecord, now: datetime) -> Tuple[_Action, Optional[SessionRecord], int]:
        if record.destroy:
            return _Action.DESTROY, None, record.version
        if record.handles == 0 and record.is_expired(now):
            return _Action.EXPIRE, None, record.version
        if not self.is_persistent():
            return _Action.KEEP, None, record.version

        idle = record.handles == 0 and now - record.accessed > self.config.memory_lifespan
        if not record.storable:
            if record.persisted:
                return _Action.UNSTORE, None, record.version
            return (_Action.EVICT if idle else _Action.KEEP), None, record.version
        if record.dirty:
            return _Action.SAVE, record.snapshot(), record.version
        if idle:
            return _Action.EVICT, None, record.version
        return _Action.KEEP, None, record.version

    async def _reconcile_token(self, token: str, now: datetime, stats: ReconcileStats) -> None:
        async with self._reconcile_locks[hash(token) % RECONCILE_LOCK_SHARDS]:
            try:
                action, snapshot, version = self.table.tap(token, lambda record: self._plan(record, now))
            except RecordMissing:
                return

            try:
                if action == _Action.DESTROY:
                    # Stored copy goes first so a failed delete is retried next pass
                    if self.is_persistent():
                        await self.backend.delete(token)
                    if self.table.remove_if(token, lambda record: record.destroy):
                        stats.destroyed += 1

                elif action == _Action.EXPIRE:
                    if self.table.remove_if(
                        token, lambda record: record.handles == 0 and record.is_expired(now)
                    ):
                        stats.expired += 1

                elif action == _Action.SAVE:
                    await self.backend.save(snapshot)
                    stats.saved += 1

                    def _clean(record: SessionRecord) -> None:
                        record.persisted = True
                        if record.version == version:
                            record.dirty = False

                    with suppress(RecordMissing):
                        self.table.tap(token, _clean)

                elif action == _Action.UNSTORE:
                    await self.backend.delete(token)
                    stats.unstored += 1

                    def _forget(record: SessionRecord) -> None:
                        if not record.storable:
                            record.persisted = False

                    with suppress(RecordMissing):
                        self.table.tap(token, _forget)

                elif action == _Action.EVICT:
                    if self.table.remove_if(
                        token,
                        lambda record: record.handles == 0
                        and not record.destroy
                        and (not record.storable or record.version == version),
                    ):
                        stats.evicted += 1

            except BackendError as e:
                stats.failed += 1
                logger.error(f"Reconciliation of session {token} ({action.value}) failed: {e}")

    async def reconcile_one(self, token: str) -> ReconcileStats:
        """Reconcile a single session with the backend."""
        stats = ReconcileStats()
        await self._reconcile_token(token, utcnow(), stats)
        return stats

    async def reconcile(self) -> ReconcileStats:
        """
        Run a full reconciliation pass.

        Logic:
        1. Destroyed sessions leave memory and the backend
        2. Expired, unreferenced sessions leave memory
        3. Dirty storable sessions are written through (persistent mode)
        4. Non-storable sessions lose their stored copy (persistent mode)
        5. Idle sessions are evicted from memory (persistent mode)
        6. Expired rows are purged from the backend, at most once per memory_lifespan
        """
        stats = ReconcileStats()
        now = utcnow()

        tokens: List[str] = self.table.tokens()
        for token in tokens:
            await self._reconcile_token(token, now, stats)

        if self.is_persistent() and (
            self._last_expiry_sweep is None
            or now - self._last_expiry_sweep >= self.config.memory_lifespan
        ):
            try:
                stats.purged = await self.backend.delete_expired()
                self._last_expiry_sweep = now
            except BackendError as e:
                stats.failed += 1
                logger.error(f"Expired session purge failed: {e}")

        logger.debug(f"Reconciled {len(tokens)} sessions: {stats}")
        return stats

    # Background task

    async def _run(self) -> None:
        interval = self.config.reconcile_interval
        while True:
            await asyncio.sleep(interval)
            try:
                await self.reconcile()
            except Exception as e:
                logger.error(f"Session reconciliation pass failed: {e}")

    def start(self) -> None:
        """Start periodic reconciliation on the running event loop."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())
            logger.info(f"Session reconciliation every {self.config.reconcile_interval}s")

    async def stop(self) -> None:
        """Stop periodic reconciliation and run a final pass."""
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        await self.reconcile()
