"""Centralized logging configuration for codevec."""

import json
import logging
import logging.handlers
import re
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


class SensitiveDataFilter(logging.Filter):
    """Redact provider credentials and home-directory paths from log records."""

    API_KEY_PATTERN = re.compile(
        r'(api[_-]?key|token|secret|password|credential)["\']?\s*[:=]\s*["\']?([^"\'\s]+)',
        re.IGNORECASE,
    )
    HOME_PATH_PATTERN = re.compile(r'(?<![\w/])(/(?:home|Users|root)/[^\s\])}"\',]+)')

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self._redact(record.msg)
        if record.args:
            if isinstance(record.args, dict):
                record.args = {k: self._redact_arg(v) for k, v in record.args.items()}
            elif isinstance(record.args, tuple):
                record.args = tuple(self._redact_arg(arg) for arg in record.args)
        return True

    def _redact_arg(self, value):
        # Keep numbers intact so %d / %.3f placeholders still format
        if isinstance(value, str):
            return self._redact(value)
        return value

    def _redact(self, message: str) -> str:
        message = self.API_KEY_PATTERN.sub(r'\1=***REDACTED***', message)

        def redact_path(match):
            parts = match.group(0).split('/')
            if len(parts) > 3:
                return f"/{parts[1]}/***/{parts[-1]}"
            return "***REDACTED_PATH***"

        return self.HOME_PATH_PATTERN.sub(redact_path, message)


class JSONFormatter(logging.Formatter):
    """JSON lines formatter for log files."""

    CONTEXT_KEYS = ('operation', 'entry_id', 'codebook_id', 'duration', 'store_path')

    def format(self, record: logging.LogRecord) -> str:
        log_obj = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'function': record.funcName,
            'line': record.lineno,
            'message': record.getMessage(),
        }

        if hasattr(record, 'extra_fields'):
            log_obj.update(record.extra_fields)

        if record.exc_info:
            log_obj['exception'] = self.formatException(record.exc_info)

        for key in self.CONTEXT_KEYS:
            if hasattr(record, key):
                log_obj[key] = getattr(record, key)

        return json.dumps(log_obj, ensure_ascii=False, default=str)


class ConsoleFormatter(logging.Formatter):
    """Colored console formatter for interactive terminals."""

    COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
    }
    RESET = '\033[0m'

    def format(self, record: logging.LogRecord) -> str:
        original = record.levelname
        if original in self.COLORS:
            record.levelname = f"{self.COLORS[original]}{original}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = original


def setup_logging(
    name: str = 'codevec',
    level: str = 'INFO',
    log_dir: Optional[Path] = None,
    console: bool = True,
    file: bool = False,
    json_format: bool = True,
    redact_sensitive: bool = True,
) -> logging.Logger:
    """
    Configure the codevec logger hierarchy.

    Library modules only ever call ``logging.getLogger(__name__)``; this
    function is meant for applications and the CLI.

    Args:
        name: Logger name, ``codevec`` configures the whole package
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_dir: Directory for log files (default: ./logs)
        console: Enable stderr output
        file: Enable rotating file output
        json_format: Use JSON lines for file logs
        redact_sensitive: Redact credentials and home paths

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, level.upper()))
    logger.handlers.clear()
    logger.propagate = False

    if console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(getattr(logging, level.upper()))
        if sys.stderr.isatty():
            formatter: logging.Formatter = ConsoleFormatter(
                '%(asctime)s - %(levelname)s - [%(name)s:%(lineno)d] - %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S',
            )
        else:
            formatter = logging.Formatter(
                '%(asctime)s - %(levelname)s - [%(name)s] - %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S',
            )
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if file:
        log_dir = Path(log_dir) if log_dir is not None else Path.cwd() / 'logs'
        log_dir.mkdir(parents=True, exist_ok=True)

        date_str = datetime.now().strftime('%Y%m%d')
        suffix = 'jsonl' if json_format else 'log'
        file_handler = logging.handlers.RotatingFileHandler(
            log_dir / f'codevec_{date_str}.{suffix}',
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
        )
        if json_format:
            file_handler.setFormatter(JSONFormatter())
        else:
            file_handler.setFormatter(logging.Formatter(
                '%(asctime)s - %(levelname)s - [%(name)s:%(lineno)d] - %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S',
            ))
        file_handler.setLevel(logging.DEBUG)
        logger.addHandler(file_handler)

    if redact_sensitive:
        # Handler filters also see records from child loggers
        for handler in logger.handlers:
            handler.addFilter(SensitiveDataFilter())

    return logger


def log_operation(logger: logging.Logger, operation: str, **context) -> None:
    """
    Log a store operation with structured context.

    Args:
        logger: Logger instance
        operation: Operation name
        **context: Additional context to log
    """
    logger.info("Starting operation: %s", operation,
                extra={'operation': operation, 'extra_fields': context})
