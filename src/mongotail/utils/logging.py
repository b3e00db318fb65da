"""
Logging utility module for mongotail.

Provides JSON-structured logging with the active tailer's label stamped on
every record, so output from several tailers in one process can be told
apart.
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Context variable for the active tailer (label, filter)
_tailer_context: ContextVar[Optional[Dict[str, str]]] = ContextVar('tailer_context', default=None)

# Attributes every LogRecord has; anything else came in through ``extra``
_RESERVED = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


def get_tailer_context() -> Optional[Dict[str, str]]:
    """Get the active tailer context, if any."""
    return _tailer_context.get()


class TailerLogContext:
    """Context manager binding a tailer's label and filter to log records."""

    def __init__(self, label: str, filter_regex: str):
        self.context = {"tailer_label": label, "tailer_filter": filter_regex}
        self._token = None

    def __enter__(self) -> Dict[str, str]:
        self._token = _tailer_context.set(self.context)
        return self.context

    def __exit__(self, exc_type, exc_val, exc_tb):
        _tailer_context.reset(self._token)


class TailerContextFilter(logging.Filter):
    """Copies the active tailer context onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = get_tailer_context()
        if context:
            for key, value in context.items():
                setattr(record, key, value)
        return True


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Args:
            record: Log record to format

        Returns:
            JSON-formatted log string
        """
        log_data: Dict[str, Any] = {
            'timestamp': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        # Fields passed via ``extra=`` and the tailer context
        for key, value in vars(record).items():
            if key not in _RESERVED and key not in log_data:
                log_data[key] = value

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO", json_format: bool = True) -> None:
    """Configure the root logger for the ``mongotail`` command.

    Args:
        level: Logging level name
        json_format: Emit JSON lines instead of plain text
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.addFilter(TailerContextFilter())
    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level.upper())
    # pymongo's own debug output is too chatty at DEBUG
    logging.getLogger("pymongo").setLevel(max(logging.INFO, root.level))
