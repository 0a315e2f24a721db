# ============================================================================
# src/bloodgas_ingestion/utils/logging.py
# ============================================================================
"""
Logging configuration and utilities for the ingestion pipeline.
"""

import json
import logging
import sys
import time
from datetime import datetime, timezone
from functools import wraps
from pathlib import Path
from typing import Optional


def setup_logging(
    level: str = "INFO",
    log_file: Optional[Path] = None,
    format_json: bool = False
) -> None:
    """
    Setup logging configuration.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path for logging
        format_json: Whether to use JSON format
    """
    log_level = getattr(logging, level.upper())

    if format_json:
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    logging.basicConfig(
        level=log_level,
        handlers=handlers,
        force=True
    )


def setup_logging_from_settings() -> None:
    """Apply ``logging_settings`` (env/.env driven)."""
    from ..config import logging_settings

    setup_logging(
        level=logging_settings.LOG_LEVEL,
        log_file=logging_settings.LOG_FILE,
        format_json=logging_settings.LOG_JSON,
    )


class JsonFormatter(logging.Formatter):
    """JSON log formatter."""

    # Attributes every LogRecord has; anything else came in through ``extra``.
    _RESERVED = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        extra = {
            key: value for key, value in vars(record).items()
            if key not in self._RESERVED
        }
        if extra:
            log_data['extra'] = extra

        return json.dumps(log_data, default=str)


def get_logger(name: str) -> logging.Logger:
    """
    Get logger instance.

    Args:
        name: Logger name (usually __name__)
    """
    return logging.getLogger(name)


class SessionLogAdapter(logging.LoggerAdapter):
    """Prefixes messages with the session id and carries it as an extra field."""

    def process(self, msg, kwargs):
        kwargs.setdefault('extra', {}).update(self.extra)
        session_id = self.extra.get('session_id')
        if session_id:
            msg = f"[{session_id[:8]}] {msg}"
        return msg, kwargs


def log_performance(logger: logging.Logger, operation: str):
    """
    Decorator to log operation performance.

    Args:
        logger: Logger instance
        operation: Operation name
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            start_time = time.perf_counter()

            try:
                result = func(*args, **kwargs)
                duration = time.perf_counter() - start_time
                logger.info(f"{operation} completed in {duration:.3f}s")
                return result

            except Exception as e:
                duration = time.perf_counter() - start_time
                logger.error(f"{operation} failed after {duration:.3f}s: {str(e)}")
                raise

        return wrapper
    return decorator
