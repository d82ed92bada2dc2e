"""Service-wide utilities"""

from .logging_config import (
    ProctorContextFilter,
    SessionLoggerAdapter,
    get_logger,
    log_exceptions,
    session_logger,
    setup_logging
)

__all__ = [
    "ProctorContextFilter",
    "SessionLoggerAdapter",
    "get_logger",
    "log_exceptions",
    "session_logger",
    "setup_logging"
]
