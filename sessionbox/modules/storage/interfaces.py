"""Persistence interfaces following Black Box Design principles."""
from typing import Optional, Protocol, runtime_checkable

from ..session.record import SessionRecord


@runtime_checkable
class PersistenceBackend(Protocol):
    """
    Protocol for durable session stores - allows swappable implementations.

    Every method raises BackendError when the store is unreachable or
    rejects the query. Implementations must tolerate concurrent calls.
    """

    async def initiate(self) -> None:
        """Connect and create any schema the backend needs."""
        ...

    async def load(self, token: str) -> Optional[SessionRecord]:
        """
        Load a stored session.

        Args:
            token: Canonical session token

        Returns:
            The stored record, or None if not found
        """
        ...

    async def save(self, record: SessionRecord) -> None:
        """Idempotent whole-record upsert."""
        ...

    async def delete(self, token: str) -> None:
        """Delete one session. Deleting an unknown token is not an error."""
        ...

    async def delete_all(self) -> None:
        """Delete every stored session."""
        ...

    async def delete_expired(self) -> int:
        """Delete sessions past their expiry. Returns the number removed."""
        ...

    async def count(self) -> int:
        """Number of stored sessions."""
        ...

    async def close(self) -> None:
        """Release connections."""
        ...
