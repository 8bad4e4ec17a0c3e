"""
Logging configuration for the sessionbox host.

Suppresses access-log noise from probe endpoints and routes module loggers
through the root handler.
"""

import logging
from typing import Any, Dict, Iterable


class QuietPathFilter(logging.Filter):
    """Drop uvicorn access records for GET requests to quiet paths."""

    def __init__(self, paths: Iterable[str] = ("/health",)):
        super().__init__()
        self.paths = tuple(paths)

    def filter(self, record: logging.LogRecord) -> bool:
        if record.name != "uvicorn.access":
            return True
        # uvicorn access args: (client, method, path, http_version, status)
        args = record.args if isinstance(record.args, tuple) else ()
        if len(args) >= 3:
            return not (args[1] == "GET" and args[2] in self.paths)
        message = record.getMessage()
        return not ("GET" in message and any(path in message for path in self.paths))


def get_logging_config(level: str = "INFO", quiet_paths: Iterable[str] = ("/health",)) -> Dict[str, Any]:
    """
    Build a dictConfig for uvicorn and the sessionbox loggers.

    Args:
        level: Level for the sessionbox and root loggers
        quiet_paths: Paths whose GET access logs are suppressed
    """
    level = level.upper()
    uvicorn_logger = {"handlers": ["default"], "level": "INFO", "propagate": False}
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {
            "quiet_paths": {"()": QuietPathFilter, "paths": list(quiet_paths)},
        },
        "formatters": {
            "default": {"format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"},
            "access": {"format": "%(message)s"},
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "stream": "ext://sys.stdout",
            },
            "access": {
                "class": "logging.StreamHandler",
                "formatter": "access",
                "stream": "ext://sys.stdout",
                "filters": ["quiet_paths"],
            },
        },
        "loggers": {
            "uvicorn": uvicorn_logger,
            "uvicorn.error": dict(uvicorn_logger),
            "uvicorn.access": {"handlers": ["access"], "level": "INFO", "propagate": False},
            "sessionbox": {"level": level},
        },
        "root": {"level": level, "handlers": ["default"]},
    }
