"""
Logging setup for proctor-vision

Every record carries the proctoring context fields `session_id`, `flag_type`
and `frame_ms` (dashes when absent), so one format serves request logs,
per-frame timing and flag events. Flag records are also copied to a
separate audit file when file logging is on.
"""
import functools
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Union

CONTEXT_FIELDS = ("session_id", "flag_type", "frame_ms")

LOG_FORMAT = (
    "%(asctime)s | %(levelname)-8s | %(name)-20s | "
    "session=%(session_id)s flag=%(flag_type)s frame_ms=%(frame_ms)s | %(message)s"
)
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class ProctorContextFilter(logging.Filter):
    """Fill in missing proctoring context fields so the format never fails"""
    
    def filter(self, record: logging.LogRecord) -> bool:
        for name in CONTEXT_FIELDS:
            if not hasattr(record, name):
                setattr(record, name, "-")
        return True


class FlagRecordFilter(logging.Filter):
    """Pass only records describing an emitted flag"""
    
    def filter(self, record: logging.LogRecord) -> bool:
        return getattr(record, "flag_type", "-") != "-"


class SessionLoggerAdapter(logging.LoggerAdapter):
    """Logger bound to one proctoring session"""
    
    def process(self, msg: Any, kwargs: Dict[str, Any]):
        extra = dict(self.extra)
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs


def setup_logging(
    service_name: str = "proctor-vision",
    level: str = "INFO",
    log_to_file: bool = False,
    log_dir: Optional[Union[str, Path]] = None
) -> logging.Logger:
    """
    Configure the root logger for the service.
    
    Args:
        service_name: Prefix for log file names
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        log_to_file: Also write `<service>.log` and `<service>_flags.log`
        log_dir: Directory for log files (defaults to ./logs)
    
    Returns:
        The service logger
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()
    
    formatter = logging.Formatter(LOG_FORMAT, DATE_FORMAT)
    context = ProctorContextFilter()
    
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.addFilter(context)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)
    
    if log_to_file:
        directory = Path(log_dir) if log_dir else Path.cwd() / "logs"
        directory.mkdir(parents=True, exist_ok=True)
        
        file_handler = logging.handlers.RotatingFileHandler(
            directory / f"{service_name}.log",
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8"
        )
        file_handler.addFilter(context)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)
        
        # Flags are kept longer than general logs for review
        flag_handler = logging.handlers.RotatingFileHandler(
            directory / f"{service_name}_flags.log",
            maxBytes=10 * 1024 * 1024,
            backupCount=20,
            encoding="utf-8"
        )
        flag_handler.addFilter(context)
        flag_handler.addFilter(FlagRecordFilter())
        flag_handler.setFormatter(formatter)
        root_logger.addHandler(flag_handler)
    
    logger = logging.getLogger(service_name)
    logger.info(f"Logging configured: level={level}, files={'on' if log_to_file else 'off'}")
    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name"""
    return logging.getLogger(name)


def session_logger(logger: logging.Logger, session_id: str) -> SessionLoggerAdapter:
    """Wrap a logger so every record carries the session ID"""
    return SessionLoggerAdapter(logger, {"session_id": session_id})


def log_exceptions(logger: Union[logging.Logger, logging.LoggerAdapter]):
    """Decorator that logs and re-raises exceptions"""
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except Exception as e:
                logger.exception(f"Exception in {func.__name__}: {e}")
                raise
        return wrapper
    return decorator
