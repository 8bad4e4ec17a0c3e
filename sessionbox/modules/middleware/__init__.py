"""
Session Middleware Module - Black Box Interface

Purpose: Carry the session token between client and server in a cookie
Interface: SessionMiddleware, create_session_middleware(), get_session()
Hidden: Cookie parsing, signing, expiry attributes

Can be used by any FastAPI app or sub-app that needs server-side sessions.
The session module only ever sees the validated plaintext token.
"""

import logging
from typing import Iterable, Optional

from fastapi import HTTPException, Request, Response
from itsdangerous import BadSignature, URLSafeSerializer

from ..config import SessionConfig
from ..session import SessionHandle, SessionStore

logger = logging.getLogger(__name__)

SIGNING_SALT = "sessionbox.cookie"


class SessionMiddleware:
    """
    Cookie-based session middleware for FastAPI applications.

    For every request it resolves (or mints) the session token, exposes a
    SessionHandle as `request.state.session`, and writes the cookie back on
    the response.
    """

    def __init__(
        self,
        store: SessionStore,
        config: Optional[SessionConfig] = None,
        skip_paths: Optional[Iterable[str]] = None,
    ):
        """
        Initialize session middleware.

        Args:
            store: Shared session store
            config: Cookie settings (defaults to the store's config)
            skip_paths: Paths served without a session (e.g. health checks)
        """
        self.store = store
        self.config = config or store.config
        self.skip_paths = set(skip_paths or ())
        self._serializer = (
            URLSafeSerializer(self.config.key, salt=SIGNING_SALT) if self.config.key else None
        )

    def decode_cookie(self, value: Optional[str]) -> Optional[str]:
        """Return the plaintext token from a cookie value, or None if invalid."""
        if not value:
            return None
        if self._serializer is None:
            return value

        try:
            token = self._serializer.loads(value)
        except BadSignature:
            logger.warning("Session cookie failed signature check")
            return None
        return token if isinstance(token, str) else None

    def encode_cookie(self, token: str) -> str:
        if self._serializer is None:
            return token
        return self._serializer.dumps(token)

    def write_cookie(self, response: Response, token: str, destroyed: bool, longterm: bool) -> None:
        """Set or delete the session cookie on the outgoing response."""
        cfg = self.config
        if destroyed:
            response.delete_cookie(
                cfg.cookie_name,
                path=cfg.cookie_path,
                domain=cfg.cookie_domain,
                secure=cfg.cookie_secure,
                httponly=cfg.cookie_http_only,
                samesite=cfg.cookie_same_site,
            )
            return

        response.set_cookie(
            cfg.cookie_name,
            self.encode_cookie(token),
            max_age=int(cfg.expiry_for(longterm).total_seconds()),
            path=cfg.cookie_path,
            domain=cfg.cookie_domain,
            secure=cfg.cookie_secure,
            httponly=cfg.cookie_http_only,
            samesite=cfg.cookie_same_site,
        )

    async def __call__(self, request: Request, call_next):
        """Process the request with a session bound to it."""
        if request.url.path in self.skip_paths:
            return await call_next(request)

        cookie_value = self.decode_cookie(request.cookies.get(self.config.cookie_name))

        async with self.store.session(cookie_value) as session:
            request.state.session = session
            response = await call_next(request)

            # Read flags before release; reconciliation may drop a destroyed record
            destroyed = await session.is_destroyed()
            longterm = await session.is_longterm()

        self.write_cookie(response, session.token, destroyed, longterm)
        return response


def create_session_middleware(
    store: SessionStore,
    skip_paths: Optional[Iterable[str]] = None,
) -> SessionMiddleware:
    """
    Factory function to create session middleware.

    Args:
        store: Shared session store
        skip_paths: Paths served without a session

    Usage:
        session_middleware = create_session_middleware(store, skip_paths=["/health"])
        app.middleware("http")(session_middleware)
    """
    return SessionMiddleware(store, skip_paths=skip_paths)


def get_session(request: Request) -> SessionHandle:
    """
    FastAPI dependency returning the request's session handle.

    Raises:
        HTTPException: 500 if the session middleware is not installed
    """
    session = getattr(request.state, "session", None)
    if session is None:
        raise HTTPException(500, "Can't extract session. Is SessionMiddleware installed?")
    return session


__all__ = [
    "SessionMiddleware",
    "create_session_middleware",
    "get_session",
]
