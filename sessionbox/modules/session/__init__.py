"""
Session Module - Black Box Interface

Purpose: Map session tokens to per-session data and manage their lifecycle
Interface: SessionStore.session(), SessionHandle.get()/set()/remove()/destroy()
Hidden: Sharded in-memory table, token minting, backend reconciliation

Works with any PersistenceBackend from the storage module, or none at all.
"""

from .handle import SessionHandle
from .record import SessionRecord
from .store import ReconcileStats, SessionStore, parse_token
from .table import SessionTable

__all__ = [
    "ReconcileStats",
    "SessionHandle",
    "SessionRecord",
    "SessionStore",
    "SessionTable",
    "parse_token",
]
