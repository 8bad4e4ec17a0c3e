"""
Config Module - Black Box Interface

Purpose: Application and session configuration management
Interface: get_config(), ConfigModule.session_config(), SessionConfig
Hidden: Config sources, validation logic, environment parsing

Can be replaced with different config systems (Consul, etcd, AWS Parameter Store).
"""

import os
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator


# Configuration Contract: Required and Optional Keys
# This defines the black box interface - what the config module guarantees to provide

REQUIRED_CONFIG_KEYS = {
    "cookie_name": "Name of the cookie carrying the session token",
    "lifespan": "Default session lifetime in seconds",
    "max_lifespan": "Long-term (remember me) session lifetime in seconds",
    "memory_lifespan": "Seconds an idle persisted session stays loaded in memory",
    "reconcile_interval": "Seconds between background reconciliation passes",
    "backend": "Persistence backend (none, redis, sqlite)",
    "host": "API server bind address",
    "port": "API server port",
    "log_level": "Logging level (DEBUG, INFO, WARNING, ERROR)",
}

OPTIONAL_CONFIG_KEYS = {
    "key": {
        "description": "Secret used to sign the session cookie",
        "default": None,
    },
    "redis_password": {
        "description": "Redis authentication password",
        "default": None,
    },
    "cookie_domain": {
        "description": "Domain attribute for the session cookie",
        "default": None,
    },
    "debug": {
        "description": "Enable debug mode",
        "default": False,
    },
}


class SessionMode(str, Enum):
    """Whether new sessions are persisted by default."""

    PERSISTENT = "persistent"
    OPT_IN = "opt_in"


class BackendKind(str, Enum):
    """Durable store used behind the session table."""

    NONE = "none"
    REDIS = "redis"
    SQLITE = "sqlite"


class SessionConfig(BaseModel):
    """Validated settings consumed by the session, storage and middleware modules."""

    cookie_name: str = Field(default="sessionbox", min_length=1)
    cookie_path: str = "/"
    cookie_domain: Optional[str] = None
    cookie_secure: bool = False
    cookie_http_only: bool = True
    cookie_same_site: str = Field(default="lax", pattern="^(lax|strict|none)$")
    key: Optional[str] = Field(default=None, description="Cookie signing secret")

    lifespan: timedelta = timedelta(hours=6)
    max_lifespan: timedelta = timedelta(days=60)
    memory_lifespan: timedelta = timedelta(hours=1)
    reconcile_interval: float = Field(default=60.0, gt=0)
    reconcile_on_release: bool = True

    persistence_enabled: bool = True
    session_mode: SessionMode = SessionMode.PERSISTENT
    token_retry_limit: int = Field(default=16, ge=1, le=1024)

    backend: BackendKind = BackendKind.NONE
    redis_url: str = "redis://localhost:6379/0"
    redis_password: Optional[str] = None
    key_prefix: str = "session:"
    sqlite_path: str = "sessions.db"
    table_name: str = Field(default="sessions", pattern="^[A-Za-z_][A-Za-z0-9_]*$")

    @field_validator("lifespan", "max_lifespan", "memory_lifespan")
    @classmethod
    def _positive_duration(cls, value: timedelta) -> timedelta:
        if value.total_seconds() <= 0:
            raise ValueError("durations must be positive")
        return value

    def expiry_for(self, longterm: bool) -> timedelta:
        """Lifetime applied to a session on each access."""
        return self.max_lifespan if longterm else self.lifespan


class ConfigModule:
    """Configuration management module."""

    def __init__(self):
        """Initialize with environment variables."""
        self._config = self._load_from_env()
        self._validate_required_keys()

    def _validate_required_keys(self) -> None:
        """
        Validate that all required configuration keys are present.

        Raises:
            ValueError: If required keys are missing
        """
        missing_keys = []
        for key in REQUIRED_CONFIG_KEYS:
            if key not in self._config or self._config[key] is None:
                missing_keys.append(key)

        if missing_keys:
            raise ValueError(
                f"Missing required configuration keys: {', '.join(missing_keys)}. "
                f"Check environment variables and deployment configuration."
            )

    def _load_from_env(self) -> Dict[str, Any]:
        """Load configuration from environment."""
        # Parse Redis port (might be in tcp://host:port format from K8s)
        redis_port_env = os.getenv("REDIS_PORT", "6379")
        if redis_port_env.startswith("tcp://"):
            redis_port = int(redis_port_env.split(":")[-1])
        else:
            redis_port = int(redis_port_env)

        return {
            # Cookie settings
            "cookie_name": os.getenv("SESSION_COOKIE_NAME", "sessionbox"),
            "cookie_path": os.getenv("SESSION_COOKIE_PATH", "/"),
            "cookie_domain": os.getenv("SESSION_COOKIE_DOMAIN"),
            "cookie_secure": _env_flag("SESSION_COOKIE_SECURE", False),
            "cookie_http_only": _env_flag("SESSION_COOKIE_HTTP_ONLY", True),
            "cookie_same_site": os.getenv("SESSION_COOKIE_SAME_SITE", "lax").lower(),
            "key": os.getenv("SESSION_KEY"),
            # Session lifecycle
            "lifespan": int(os.getenv("SESSION_LIFESPAN", str(6 * 3600))),
            "max_lifespan": int(os.getenv("SESSION_MAX_LIFESPAN", str(60 * 86400))),
            "memory_lifespan": int(os.getenv("SESSION_MEMORY_LIFESPAN", "3600")),
            "reconcile_interval": float(os.getenv("SESSION_RECONCILE_INTERVAL", "60")),
            "reconcile_on_release": _env_flag("SESSION_RECONCILE_ON_RELEASE", True),
            "persistence_enabled": _env_flag("SESSION_PERSISTENCE", True),
            "session_mode": os.getenv("SESSION_MODE", "persistent").lower(),
            "token_retry_limit": int(os.getenv("SESSION_TOKEN_RETRIES", "16")),
            # Backend settings
            "backend": os.getenv("SESSION_BACKEND", "none").lower(),
            "redis_host": os.getenv("REDIS_HOST", "localhost"),
            "redis_port": redis_port,
            "redis_db": int(os.getenv("REDIS_DB", "0")),
            "redis_password": os.getenv("REDIS_PASSWORD"),  # Optional: for authenticated Redis
            "key_prefix": os.getenv("SESSION_KEY_PREFIX", "session:"),
            "sqlite_path": os.getenv("SESSION_SQLITE_PATH", "sessions.db"),
            "table_name": os.getenv("SESSION_TABLE", "sessions"),
            # API settings
            "host": os.getenv("API_HOST", "0.0.0.0"),
            "port": int(os.getenv("API_PORT", "8080")),
            "log_level": os.getenv("LOG_LEVEL", "INFO"),
            "debug": os.getenv("DEBUG", "false").lower() == "true",
        }

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value."""
        return self._config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set configuration value."""
        self._config[key] = value

    def get_all(self) -> Dict[str, Any]:
        """Get all configuration values."""
        return self._config.copy()

    def session_config(self) -> SessionConfig:
        """
        Build the validated session settings from the loaded values.

        Raises:
            pydantic.ValidationError: If a value is out of range
        """
        cfg = self._config
        return SessionConfig(
            cookie_name=cfg["cookie_name"],
            cookie_path=cfg["cookie_path"],
            cookie_domain=cfg["cookie_domain"],
            cookie_secure=cfg["cookie_secure"],
            cookie_http_only=cfg["cookie_http_only"],
            cookie_same_site=cfg["cookie_same_site"],
            key=cfg["key"],
            lifespan=timedelta(seconds=cfg["lifespan"]),
            max_lifespan=timedelta(seconds=cfg["max_lifespan"]),
            memory_lifespan=timedelta(seconds=cfg["memory_lifespan"]),
            reconcile_interval=cfg["reconcile_interval"],
            reconcile_on_release=cfg["reconcile_on_release"],
            persistence_enabled=cfg["persistence_enabled"],
            session_mode=cfg["session_mode"],
            token_retry_limit=cfg["token_retry_limit"],
            backend=cfg["backend"],
            # Password passed separately to avoid URL encoding issues
            redis_url=f"redis://{cfg['redis_host']}:{cfg['redis_port']}/{cfg['redis_db']}",
            redis_password=cfg["redis_password"],
            key_prefix=cfg["key_prefix"],
            sqlite_path=cfg["sqlite_path"],
            table_name=cfg["table_name"],
        )

    @staticmethod
    def get_config_schema() -> Dict[str, Any]:
        """
        Get the configuration schema (contract) for this module.

        Returns:
            Dictionary with 'required' and 'optional' key specifications

        Example:
            >>> schema = ConfigModule.get_config_schema()
            >>> print(schema['required']['cookie_name'])
            'Name of the cookie carrying the session token'
        """
        return {
            "required": REQUIRED_CONFIG_KEYS.copy(),
            "optional": OPTIONAL_CONFIG_KEYS.copy(),
        }


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# Singleton instance
_instance = None


def get_config() -> ConfigModule:
    """Get the configuration module singleton."""
    global _instance
    if _instance is None:
        _instance = ConfigModule()
    return _instance


__all__ = [
    "BackendKind",
    "ConfigModule",
    "SessionConfig",
    "SessionMode",
    "get_config",
]
