"""Logging configuration for the PokerLive server."""
from __future__ import annotations

import logging
import sys
from typing import Any

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)


def get_logger(name: str) -> logging.Logger:
    """Get a configured logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)


def set_level(level: str) -> None:
    """Apply a level name such as ``"DEBUG"`` to the root logger."""
    logging.getLogger().setLevel(level.upper())


def log_session_event(
    logger: logging.Logger, action: str, session_code: str, **fields: Any
) -> None:
    """Log a session state change in a structured format.

    Args:
        logger: Logger instance
        action: Short verb describing the change (``"join"``, ``"vote"``...)
        session_code: Session the change applies to
        **fields: Extra attributes attached to the log record
    """
    extra = {"session_code": session_code, "action": action}
    extra.update(fields)
    logger.info("Session %s: %s", session_code, action, extra=extra)
