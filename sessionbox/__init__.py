"""
sessionbox - Server-side session management

Maps a client-presented session token to a mutable bag of key/value data,
keeps an in-memory table consistent with an optional durable backend, and
provides lifecycle controls safe under concurrent per-request access.

Architecture:
- Each module is self-contained with clear interfaces
- Modules are completely replaceable
- No module knows the internals of another
- All communication through defined interfaces

Modules:
- config: Environment configuration and validated session settings
- errors: Typed failures shared across modules
- session: Session table, store, handle and reconciliation
- storage: Persistence backends (Redis, SQLite)
- middleware: Cookie transport for FastAPI apps
"""

__version__ = "1.0.0"
