"""Logging setup for the worker and the CLI.

Every record handled by a configured handler carries a ``task_id`` (``-``
outside of a task), so both the console format and the JSON log file can
group lines by task.
"""

import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

from .config import LoggingConfig, Settings

NO_TASK = "-"

# Attributes every LogRecord has; anything else was attached by the caller.
_STANDARD_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime", "taskName"}

_QUIET_LOGGERS = ("urllib3", "requests", "python_http_client", "redis", "sqlalchemy.engine")


class TaskIdFilter(logging.Filter):
    """Gives records emitted outside a task the placeholder task id."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "task_id"):
            record.task_id = NO_TASK
        return True


class StructuredFormatter(logging.Formatter):
    """One JSON object per record, including context fields such as ``task_id``."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(
            (key, value) for key, value in record.__dict__.items() if key not in _STANDARD_ATTRS
        )
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str, ensure_ascii=False)


def _console_handler(config: LoggingConfig) -> logging.Handler:
    # Logs go to stderr; stdout is left to CLI output.
    if sys.stderr.isatty():
        handler: logging.Handler = RichHandler(
            console=Console(stderr=True), show_path=False, rich_tracebacks=True
        )
        handler.setFormatter(logging.Formatter("[%(task_id)s] %(message)s"))
    else:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(config.format))
    return handler


def _file_handler(config: LoggingConfig) -> logging.Handler:
    log_file = Path(config.file_path)
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=config.max_file_size,
        backupCount=config.backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(StructuredFormatter())
    return handler


def setup_logging(
    config: Optional[LoggingConfig] = None,
    settings: Optional[Settings] = None
) -> None:
    """
    Replace the root logger's handlers with the configured ones.

    Args:
        config: Logging configuration (uses settings.logging if not provided)
        settings: Application settings
    """
    if settings is not None:
        config = settings.logging
    config = config or LoggingConfig()

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, config.level.upper(), logging.INFO))
    root_logger.handlers.clear()

    handlers = []
    if config.console_output:
        handlers.append(_console_handler(config))
    if config.file_path:
        handlers.append(_file_handler(config))

    for handler in handlers:
        handler.addFilter(TaskIdFilter())
        root_logger.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


class LoggingContext:
    """Context manager that stamps every log record with extra fields.

    The worker wraps each task in ``LoggingContext(logger, task_id=...)`` so
    that structured log lines can be grouped by task.
    """

    def __init__(self, logger: logging.Logger, **context):
        self.logger = logger
        self.context = context
        self.old_factory = None

    def __enter__(self):
        self.old_factory = logging.getLogRecordFactory()
        old_factory = self.old_factory
        context = self.context

        def record_factory(*args, **kwargs):
            record = old_factory(*args, **kwargs)
            for key, value in context.items():
                setattr(record, key, value)
            return record

        logging.setLogRecordFactory(record_factory)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        logging.setLogRecordFactory(self.old_factory)
