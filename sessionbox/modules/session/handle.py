"""
Session handle - per-request facade bound to one session token.

Every data operation is a read-modify-write against the single record for
the handle's token, performed through SessionTable.tap() so concurrent
requests for the same session are serialized. Data operations never fail the
request: a missing record or an undecodable value degrades to a no-op or None.
"""

import json
import logging
from functools import lru_cache
from typing import TYPE_CHECKING, Any, Callable, List, Optional, Type, TypeVar

from pydantic import TypeAdapter, ValidationError
from pydantic_core import PydanticSerializationError, to_json

from ..errors import BackendError, DeserializationMismatch, RecordMissing
from .record import SessionRecord

if TYPE_CHECKING:
    from .store import SessionStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


@lru_cache(maxsize=256)
def _adapter(type_: Any) -> TypeAdapter:
    return TypeAdapter(type_)


def encode_value(value: Any) -> str:
    """Serialize a value to the JSON string stored in the session."""
    return to_json(value).decode("utf-8")


def decode_value(raw: str, type_: Optional[Any] = None) -> Any:
    """
    Deserialize a stored JSON string, optionally into `type_`.

    Validation is strict, so a stored "42" string is not turned into 42.

    Raises:
        DeserializationMismatch: If the value is not valid JSON or not a `type_`
    """
    try:
        if type_ is None:
            return json.loads(raw)
        return _adapter(type_).validate_json(raw, strict=True)
    except (ValueError, ValidationError) as e:
        raise DeserializationMismatch(str(e)) from e


class SessionHandle:
    """
    Access to one session's data for the duration of a request.

    The handle only holds the token and a reference to the shared store; it
    never owns the record.
    """

    __slots__ = ("_store", "_token")

    def __init__(self, store: "SessionStore", token: str):
        self._store = store
        self._token = token

    @property
    def token(self) -> str:
        """Canonical session token, as sent in the cookie."""
        return self._token

    def __repr__(self) -> str:
        return f"SessionHandle(token={self._token!r})"

    def _tap(self, func: Callable[[SessionRecord], T]) -> Optional[T]:
        try:
            return self._store.table.tap(self._token, func)
        except RecordMissing:
            logger.warning(f"Session data unexpectedly missing for {self._token}")
            return None

    async def get(self, key: str, type_: Optional[Type[T]] = None) -> Optional[T]:
        """
        Get data from the session.

        Args:
            key: Data key
            type_: Optional type to validate the stored value into

        Returns:
            The stored value, or None if the key is absent or the stored
            value does not match `type_`

        Example:
            >>> user_id = await session.get("user-id", int) or 0
        """
        raw = self._tap(lambda record: record.data.get(key))
        if raw is None:
            return None

        try:
            return decode_value(raw, type_)
        except DeserializationMismatch as e:
            logger.debug(f"Session value {key!r} does not match {type_}: {e}")
            return None

    async def set(self, key: str, value: Any) -> None:
        """
        Set data in the session.

        The record is only marked modified when the serialized value differs
        from what is already stored.
        """
        try:
            encoded = encode_value(value)
        except PydanticSerializationError as e:
            logger.warning(f"Session value {key!r} is not serializable: {e}")
            return

        def _set(record: SessionRecord) -> None:
            if record.data.get(key) != encoded:
                record.data[key] = encoded
                record.mark_dirty()

        self._tap(_set)

    async def remove(self, key: str) -> None:
        """Remove a key from the session. Absent keys are ignored."""

        def _remove(record: SessionRecord) -> None:
            if record.data.pop(key, None) is not None:
                record.mark_dirty()

        self._tap(_remove)

    async def clear(self) -> None:
        """Remove every key from this session only."""

        def _clear(record: SessionRecord) -> None:
            if record.data:
                record.data.clear()
                record.mark_dirty()

        self._tap(_clear)

    async def clear_all(self) -> None:
        """
        Clear this session's data and, when persistent, the WHOLE backend.

        This is store-wide: every session stored in the persistence backend
        is deleted, not just this one. Use clear() for session-scoped
        clearing.

        Raises:
            BackendError: If the backend clear fails
        """
        await self.clear()

        if self._store.is_persistent():
            logger.warning(f"clear_all() from session {self._token} is deleting every stored session")
            await self._store.clear_store()

    async def destroy(self) -> None:
        """
        Mark the session for destruction.

        The record is removed by the next reconciliation pass; until then
        reads and writes still see the current data.
        """

        def _destroy(record: SessionRecord) -> None:
            if not record.destroy:
                record.destroy = True
                record.mark_dirty()

        self._tap(_destroy)

    async def set_longterm(self, longterm: bool) -> None:
        """Use the long-term expiration policy. Useful for Remember Me setups."""

        def _longterm(record: SessionRecord) -> None:
            if record.longterm != longterm:
                record.longterm = longterm
                record.mark_dirty()

        self._tap(_longterm)

    async def set_store(self, storable: bool) -> None:
        """
        Allow or forbid persisting this session.

        Setting False removes any stored copy on the next reconciliation and
        lets the in-memory record be evicted once unreferenced.
        """

        def _storable(record: SessionRecord) -> None:
            if record.storable != storable:
                record.storable = storable
                record.mark_dirty()

        self._tap(_storable)

    async def count(self) -> int:
        """
        Number of sessions.

        Counts every session in the backend when persistent, otherwise the
        sessions loaded in memory. Backend failures are logged and yield 0.
        """
        try:
            return await self._store.count()
        except BackendError as e:
            logger.error(f"Session count failed: {e}")
            return 0

    async def keys(self) -> List[str]:
        return self._tap(lambda record: list(record.data.keys())) or []

    async def is_destroyed(self) -> bool:
        return bool(self._tap(lambda record: record.destroy))

    async def is_longterm(self) -> bool:
        return bool(self._tap(lambda record: record.longterm))

    async def is_storable(self) -> bool:
        return bool(self._tap(lambda record: record.storable))
