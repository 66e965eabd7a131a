"""
Logging setup for the MCP SSE proxy

One console handler on the root logger. Everything it emits passes through
SessionTokenFilter, which shortens any session token in the message.
"""

import logging
import os
from typing import Optional

from mcp_sse_proxy.proxy.session import mask_session_tokens

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Libraries that log every request at INFO
QUIET_LOGGERS = ("httpx", "httpcore", "asyncio")


class SessionTokenFilter(logging.Filter):
    """Shortens session tokens in log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = mask_session_tokens(message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def setup_logging(log_level: Optional[str] = None) -> logging.Handler:
    """
    Configure logging for the proxy.

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR); LOG_LEVEL env var if omitted

    Returns:
        The console handler in use
    """
    level_name = (log_level or os.getenv("LOG_LEVEL", "INFO")).upper()

    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name, logging.INFO))

    handler = next(
        (h for h in root.handlers if any(isinstance(f, SessionTokenFilter) for f in h.filters)),
        None
    )
    if handler is None:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler.addFilter(SessionTokenFilter())
        root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(f"Logging configured: level={level_name}")
    return handler
