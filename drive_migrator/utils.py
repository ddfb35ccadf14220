import json
import logging
from datetime import datetime, UTC
from typing import Any, Dict, Optional


def log_with_context(
    logger: logging.Logger,
    log_level: int,
    msg: str,
    context: Optional[Dict[str, Any]] = None,
) -> None:
    """Helper function for structured logging with context

    Args:
        logger: Logger to write to
        log_level: The logging level to use
        msg: The message to log
        context: Optional dictionary of contextual information
    """
    if context is None:
        context = {}

    # Add timestamp in ISO format using timezone-aware UTC
    context["timestamp"] = utc_now().isoformat()

    structured_msg = f"{msg} | Context: {json.dumps(context, default=str)}"
    logger.log(log_level, structured_msg)


def utc_now() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(UTC)


def short_id(value: str, length: int = 8) -> str:
    """Abbreviated identifier for log lines."""
    return value[:length]
