"""
Logging configuration for Overwatch.

This module provides centralized logging setup with:
- Structured logging through structlog
- Rich console output
- Rotating JSON log files
- Optional Sentry error reporting
"""

import logging
import logging.handlers
import asyncio
import functools
import json
import os
import sys
import time
from pathlib import Path
from typing import Optional, Dict, Any
from datetime import datetime, timezone

import structlog
from rich.logging import RichHandler
from rich.console import Console
from rich.traceback import install as install_rich_traceback
import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration


console = Console(file=sys.stderr)

_RESERVED_ATTRS = frozenset((
    'name', 'msg', 'args', 'created', 'filename', 'funcName', 'levelname',
    'levelno', 'lineno', 'module', 'msecs', 'message', 'pathname', 'process',
    'processName', 'relativeCreated', 'thread', 'threadName', 'exc_info',
    'exc_text', 'stack_info', 'taskName',
))


class JSONFormatter(logging.Formatter):
    """JSON formatter for log files."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
            'process': record.process,
        }

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS:
                continue
            try:
                json.dumps(value)
                log_obj[key] = value
            except (TypeError, ValueError):
                log_obj[key] = str(value)

        if record.exc_info:
            log_obj['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_obj)


def setup_logging(
    app_name: str = "overwatch",
    log_level: str = "INFO",
    log_dir: Optional[Path] = None,
    enable_json: bool = True,
    enable_console: bool = True,
    enable_sentry: bool = False,
    sentry_dsn: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Set up logging for the control plane.

    Args:
        app_name: Application name used for log file names
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_dir: Directory for log files (defaults to ~/.overwatch/logs)
        enable_json: Render structlog events as JSON
        enable_console: Attach a rich console handler
        enable_sentry: Enable Sentry error tracking
        sentry_dsn: Sentry DSN

    Returns:
        Dictionary with the main logger and effective configuration
    """
    install_rich_traceback(show_locals=False)

    if log_dir is None:
        log_dir = Path.home() / ".overwatch" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)

    renderer = (
        structlog.processors.JSONRenderer()
        if enable_json
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if enable_console:
        console_handler = RichHandler(
            console=console,
            show_time=True,
            show_path=False,
            rich_tracebacks=True,
            tracebacks_suppress=["click", "asyncio"],
        )
        console_handler.setLevel(getattr(logging, log_level.upper()))
        console_handler.setFormatter(logging.Formatter('%(message)s'))
        root_logger.addHandler(console_handler)

    file_handler = logging.handlers.RotatingFileHandler(
        log_dir / f"{app_name}.log",
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=10,
        encoding='utf-8'
    )
    file_handler.setLevel(logging.DEBUG)
    if enable_json:
        file_handler.setFormatter(JSONFormatter())
    else:
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))
    root_logger.addHandler(file_handler)

    error_handler = logging.handlers.RotatingFileHandler(
        log_dir / f"{app_name}-errors.log",
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding='utf-8'
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(JSONFormatter())
    root_logger.addHandler(error_handler)

    if enable_sentry and sentry_dsn:
        sentry_logging = LoggingIntegration(
            level=logging.INFO,
            event_level=logging.ERROR
        )
        sentry_sdk.init(
            dsn=sentry_dsn,
            integrations=[sentry_logging],
            traces_sample_rate=0.1,
        )

    main_logger = structlog.get_logger(app_name)
    main_logger.info(
        "logging_initialized",
        app_name=app_name,
        log_level=log_level,
        log_dir=str(log_dir),
        enable_json=enable_json,
        enable_sentry=enable_sentry,
        pid=os.getpid(),
    )

    return {
        'logger': main_logger,
        'log_dir': log_dir,
        'console': console,
        'config': {
            'app_name': app_name,
            'log_level': log_level,
            'enable_json': enable_json,
            'enable_sentry': enable_sentry,
        }
    }


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a logger instance by name."""
    return structlog.get_logger(name)


def log_function_call(logger: structlog.BoundLogger):
    """Decorator to log coroutine calls with timing."""
    def decorator(func):
        async def async_wrapper(*args, **kwargs):
            start = time.perf_counter()
            logger.debug(f"calling_{func.__name__}")
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                logger.error(
                    f"failed_{func.__name__}",
                    duration_ms=(time.perf_counter() - start) * 1000,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise
            logger.debug(
                f"completed_{func.__name__}",
                duration_ms=(time.perf_counter() - start) * 1000,
            )
            return result

        if not asyncio.iscoroutinefunction(func):
            raise TypeError("log_function_call only wraps coroutine functions")

        return functools.wraps(func)(async_wrapper)

    return decorator


__all__ = [
    'setup_logging',
    'get_logger',
    'log_function_call',
    'JSONFormatter',
]
