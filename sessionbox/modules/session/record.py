"""
Session record - the per-token data bag and its lifecycle flags.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class SessionRecord:
    """
    Data and lifecycle state for one session.

    Only `token`, `data`, `expires`, `longterm` and `storable` are written to
    a persistence backend. The remaining fields describe the in-memory copy.
    """

    token: str
    data: Dict[str, str] = field(default_factory=dict)
    expires: datetime = field(default_factory=utcnow)
    longterm: bool = False
    storable: bool = True
    destroy: bool = False

    # In-memory bookkeeping
    version: int = 0
    dirty: bool = False
    accessed: datetime = field(default_factory=utcnow)
    handles: int = 0
    persisted: bool = False

    @classmethod
    def new(cls, token: str, lifespan: timedelta, storable: bool = True) -> "SessionRecord":
        """Create a fresh record that expires `lifespan` from now."""
        now = utcnow()
        record = cls(token=token, expires=now + lifespan, storable=storable, accessed=now)
        record.mark_dirty()
        return record

    def mark_dirty(self) -> None:
        """Record an effective mutation."""
        self.version += 1
        self.dirty = True

    def touch(self, lifespan: timedelta) -> None:
        """Extend expiry on access."""
        now = utcnow()
        self.accessed = now
        self.expires = now + lifespan
        self.mark_dirty()

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires

    def snapshot(self) -> "SessionRecord":
        """Detached copy of the persisted fields, safe to hand to a backend."""
        return SessionRecord(
            token=self.token,
            data=dict(self.data),
            expires=self.expires,
            longterm=self.longterm,
            storable=self.storable,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "token": self.token,
            "data": dict(self.data),
            "expires": self.expires.isoformat(),
            "longterm": self.longterm,
            "storable": self.storable,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionRecord":
        """Create from dictionary (e.g., from JSON)."""
        expires = datetime.fromisoformat(data["expires"])
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=UTC)

        return cls(
            token=data["token"],
            data={str(k): str(v) for k, v in data.get("data", {}).items()},
            expires=expires,
            longterm=bool(data.get("longterm", False)),
            storable=bool(data.get("storable", True)),
            persisted=True,
        )
