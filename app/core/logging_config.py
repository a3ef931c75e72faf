"""
Process-wide logging setup.

Workers, routers and integrations all log through ``logging.getLogger(__name__)``;
this module wires those loggers to a single stdout handler exactly once.
"""
from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Any, Dict, Optional


_is_configured = False

# Third-party loggers that are noisy at INFO while a batch is running.
_QUIET_LOGGERS = ("botocore", "boto3", "urllib3", "s3transfer", "multipart")


def build_logging_config(level: str, *, log_sql: bool = False) -> Dict[str, Any]:
    """Return the dictConfig payload for the given level."""
    loggers: Dict[str, Dict[str, Any]] = {name: {"level": "WARNING"} for name in _QUIET_LOGGERS}
    loggers["app"] = {"level": level}
    loggers["sqlalchemy.engine"] = {"level": "INFO" if log_sql else "WARNING"}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "standard",
                "stream": "ext://sys.stdout",
                "level": level,
            }
        },
        "root": {"handlers": ["console"], "level": level},
        "loggers": loggers,
    }


def configure_logging(level: Optional[str] = None, *, log_sql: bool = False) -> None:
    """
    Configure logging once per process.

    Args:
        level: Optional log level override (e.g., "DEBUG", "INFO").
        log_sql: Emit SQLAlchemy statements (noisy; for debugging stalled imports).
    """
    global _is_configured

    if _is_configured:
        return

    dictConfig(build_logging_config((level or "INFO").upper(), log_sql=log_sql))
    logging.getLogger(__name__).debug("Logging configured")
    _is_configured = True
