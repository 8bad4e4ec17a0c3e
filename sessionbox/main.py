#!/usr/bin/env python3
"""
sessionbox - Main Entry Point

This is the thin orchestration layer that:
1. Loads configuration
2. Initializes modules
3. Runs a FastAPI host with session middleware installed

All session logic is in the modules, following black box principles.
"""

import logging
import logging.config as log_config
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from sessionbox.logging_config import get_logging_config

# Import modules through their black box interfaces
from sessionbox.modules.config import SessionConfig, get_config
from sessionbox.modules.errors import BackendError
from sessionbox.modules.middleware import create_session_middleware
from sessionbox.modules.session import SessionStore
from sessionbox.modules.storage import PersistenceBackend, create_backend

# Get configuration
config = get_config()

log_config.dictConfig(get_logging_config(config.get("log_level")))
logger = logging.getLogger(__name__)


def create_app(
    session_config: Optional[SessionConfig] = None,
    backend: Optional[PersistenceBackend] = None,
    store: Optional[SessionStore] = None,
) -> FastAPI:
    """
    Build the host application.

    Args:
        session_config: Session settings (defaults to environment configuration)
        backend: Persistence backend (defaults to the configured one)
        store: Pre-built store, overriding `session_config` and `backend`

    Returns:
        FastAPI app with the session middleware installed
    """
    if store is None:
        session_config = session_config or config.session_config()
        if backend is None:
            backend = create_backend(session_config)
        store = SessionStore(session_config, backend=backend)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifecycle - initialize and cleanup resources."""
        logger.info("Starting sessionbox...")
        await store.initiate()
        store.start()
        logger.info(f"sessionbox started (persistent={store.is_persistent()})")

        yield

        logger.info("Shutting down sessionbox...")
        await store.close()
        logger.info("sessionbox shutdown complete")

    app = FastAPI(
        title="sessionbox",
        description="Server-side session management",
        version="1.0.0",
        debug=config.get("debug", False),
        lifespan=lifespan,
    )
    app.state.session_store = store
    app.middleware("http")(create_session_middleware(store, skip_paths=["/health"]))

    @app.get("/health")
    async def health_check():
        """
        Health check endpoint.

        Returns:
            200: Service healthy
            503: Persistence backend unreachable
        """
        status = {
            "status": "healthy",
            "persistent": store.is_persistent(),
            "loaded_sessions": len(store.table),
        }
        if store.is_persistent():
            try:
                status["stored_sessions"] = await store.count()
            except BackendError as e:
                logger.error(f"Health check failed: {e}")
                return JSONResponse(
                    status_code=503,
                    content={"status": "unhealthy", "error": str(e)},
                )
        return status

    @app.get("/sessions/count")
    async def session_count():
        """Number of sessions (stored sessions when persistent)."""
        return {"count": await store.count(), "persistent": store.is_persistent()}

    @app.exception_handler(BackendError)
    async def backend_error_handler(request: Request, exc: BackendError):
        """Handle persistence backend errors."""
        logger.error(f"Session backend error: {exc}")
        return JSONResponse(status_code=503, content={"error": "Session store unavailable"})

    @app.exception_handler(ValueError)
    async def validation_error_handler(request: Request, exc: ValueError):
        """Handle validation errors."""
        logger.error(f"Validation error: {exc}")
        return JSONResponse(status_code=400, content={"error": str(exc)})

    return app


if __name__ == "__main__":
    uvicorn.run(
        create_app(),
        host=config.get("host"),
        port=config.get("port"),
        log_level=config.get("log_level").lower(),
        log_config=get_logging_config(config.get("log_level")),
    )
