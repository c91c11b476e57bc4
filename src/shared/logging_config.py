"""
Logging configuration for the webhook platform.

Every record carries a correlation ID plus the webhook context bound for the
current task (provider, event type, event ID), so one inbound webhook or one
outbound emission can be followed across the verifier, the idempotency store,
the emitter and the delivery tracker.
"""

import json
import logging
import os
import sys
import traceback
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional
from uuid import uuid4

correlation_id: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)
webhook_context: ContextVar[Dict[str, Any]] = ContextVar('webhook_context', default={})

# LogRecord attributes that structured fields must not overwrite
_RESERVED_RECORD_KEYS = frozenset(
    logging.LogRecord('', 0, '', 0, '', (), None).__dict__.keys()
) | {'message', 'asctime'}

_NOISY_LOGGERS = ('uvicorn.access', 'aiohttp.access', 'sqlalchemy.engine', 'aiosqlite', 'asyncio')


class CorrelationFilter(logging.Filter):
    """Stamp records with the correlation ID and the bound webhook context."""

    def filter(self, record):
        record.correlation_id = correlation_id.get() or '-'
        for key, value in webhook_context.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        if not hasattr(record, 'component'):
            record.component = record.name.rsplit('.', 1)[-1]
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for log shipping."""

    _BASE_FIELDS = ('correlation_id', 'component', 'operation')

    def __init__(self, include_extra: bool = True):
        super().__init__()
        self.include_extra = include_extra

    def format(self, record):
        entry: Dict[str, Any] = {
            'ts': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname.lower(),
            'logger': record.name,
            'message': record.getMessage(),
            'source': f"{record.module}:{record.lineno}",
        }
        for name in self._BASE_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value, exc_tb = record.exc_info
            entry['error'] = {
                'type': exc_type.__name__,
                'detail': str(exc_value),
                'stack': ''.join(traceback.format_exception(exc_type, exc_value, exc_tb)),
            }

        if self.include_extra:
            entry.update(self._extra_fields(record, entry))

        return json.dumps(entry, default=str)

    @staticmethod
    def _extra_fields(record: logging.LogRecord, taken: Dict[str, Any]) -> Dict[str, Any]:
        fields = {}
        for key, value in record.__dict__.items():
            if key in taken or key in _RESERVED_RECORD_KEYS or key.startswith('_'):
                continue
            try:
                json.dumps(value)
            except (TypeError, ValueError):
                value = repr(value)
            fields[key] = value
        return fields


class ConsoleFormatter(logging.Formatter):
    """Human-readable single-line output with optional ANSI level colors."""

    FORMAT = '%(asctime)s %(levelname)-7s %(component)s.%(operation)s %(message)s'
    LEVEL_COLORS = {
        logging.DEBUG: '\033[2m',
        logging.INFO: '\033[34m',
        logging.WARNING: '\033[33m',
        logging.ERROR: '\033[31m',
        logging.CRITICAL: '\033[1;31m',
    }

    def __init__(self, colored: bool = True):
        super().__init__(self.FORMAT, datefmt='%H:%M:%S')
        self.colored = colored

    def format(self, record):
        if not hasattr(record, 'operation'):
            record.operation = '-'
        if not hasattr(record, 'component'):
            record.component = record.name
        line = f"{super().format(record)} cid={getattr(record, 'correlation_id', '-')[:8]}"
        if not self.colored:
            return line
        return f"{self.LEVEL_COLORS.get(record.levelno, '')}{line}\033[0m"


class ComponentLogger:
    """
    Stdlib logger bound to a component name.

    Keyword arguments become structured fields on the record; names that clash
    with LogRecord attributes are stored as ``field_<name>``.
    """

    def __init__(self, name: str, component: Optional[str] = None):
        self.logger = logging.getLogger(name)
        self.component = component or name.rsplit('.', 1)[-1]

    def _fields(self, operation: Optional[str], fields: Dict[str, Any]) -> Dict[str, Any]:
        extra = {
            (f"field_{key}" if key in _RESERVED_RECORD_KEYS else key): value
            for key, value in fields.items()
        }
        extra['component'] = self.component
        extra['operation'] = operation or '-'
        return extra

    def log(self, level: int, message: str, operation: Optional[str] = None, **fields):
        if self.logger.isEnabledFor(level):
            self.logger.log(level, message, extra=self._fields(operation, fields))

    def debug(self, message: str, operation: Optional[str] = None, **fields):
        self.log(logging.DEBUG, message, operation, **fields)

    def info(self, message: str, operation: Optional[str] = None, **fields):
        self.log(logging.INFO, message, operation, **fields)

    def warning(self, message: str, operation: Optional[str] = None, **fields):
        self.log(logging.WARNING, message, operation, **fields)

    def error(self, message: str, operation: Optional[str] = None, **fields):
        self.log(logging.ERROR, message, operation, **fields)

    def exception(self, message: str, operation: Optional[str] = None, **fields):
        """Log at ERROR with the active exception attached."""
        self.logger.error(message, exc_info=True, extra=self._fields(operation, fields))


class CorrelationContext:
    """
    Bind a correlation ID and webhook fields for the duration of a block.

    Usage:
        with CorrelationContext(provider="stripe"):
            ...
    """

    def __init__(self, correlation_id_value: Optional[str] = None, **fields):
        self.correlation_id_value = correlation_id_value or uuid4().hex
        self.fields = fields
        self._tokens = []

    def __enter__(self):
        self._tokens.append((correlation_id, correlation_id.set(self.correlation_id_value)))
        if self.fields:
            merged = {**webhook_context.get(), **self.fields}
            self._tokens.append((webhook_context, webhook_context.set(merged)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        while self._tokens:
            var, token = self._tokens.pop()
            var.reset(token)


def get_logger(name: str, component: Optional[str] = None) -> ComponentLogger:
    """Get a component logger instance."""
    return ComponentLogger(name, component)


def get_correlation_id() -> Optional[str]:
    """Correlation ID bound to the current task, if any."""
    return correlation_id.get()


def configure_logging(
    level: str = 'INFO',
    log_format: str = 'colored',
    log_file: Optional[str] = None,
):
    """
    Install root handlers.

    ``log_format`` is 'json', 'colored' or 'plain' for the console handler; the
    optional file handler always writes JSON.
    """
    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handlers = []
    console = logging.StreamHandler(sys.stdout)
    if log_format == 'json':
        console.setFormatter(JSONFormatter())
    else:
        console.setFormatter(ConsoleFormatter(colored=log_format == 'colored'))
    handlers.append(console)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter())
        handlers.append(file_handler)

    correlation_filter = CorrelationFilter()
    for handler in handlers:
        handler.setLevel(level)
        handler.addFilter(correlation_filter)
        root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    get_logger(__name__, 'logging').info(
        "Logging configured", operation="configure", log_format=log_format, log_file=log_file
    )


def initialize_logging():
    """Configure logging from the monitoring settings."""
    # Imported here so that config can be imported without side effects
    from .config import get_settings

    settings = get_settings()
    monitoring = settings.monitoring
    if settings.is_production():
        configure_logging(
            level=monitoring.log_level.value,
            log_format='json',
            log_file=monitoring.log_file or 'logs/webhooks.log',
        )
    else:
        configure_logging(
            level=monitoring.log_level.value,
            log_format=monitoring.log_format,
            log_file=monitoring.log_file,
        )


if not os.getenv('TESTING'):
    initialize_logging()
