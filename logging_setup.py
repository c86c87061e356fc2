"""
Shared logging infrastructure for the huddle planning service.

Both the ingestion API and the planning pipeline log through this module so that
every line carries the same envelope:

- JSON-formatted structured logs
- Configurable log levels
- Session (huddle) ID and request ID correlation
- Component tagging
- PII-aware helpers for transcript text and speaker labels
"""

import json
import logging
import os
import re
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class Severity(str, Enum):
    """Log severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class Component(str, Enum):
    """System components for log tagging."""
    API = "huddle_api"
    PIPELINE = "planning_pipeline"
    TRANSCRIPTION = "transcription"
    SERIALIZER = "conversation_serializer"
    INTERPRETER = "interpreter"
    NORMALIZER = "normalizer"
    GRAPH = "graph_mutator"
    STORE = "huddle_store"


# LogRecord attributes that never end up as structured fields
_RESERVED_ATTRS = frozenset({
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "thread", "threadName", "exc_info", "exc_text", "stack_info",
    "component", "session_id", "message", "taskName",
})

# Attributes logging.Logger.makeRecord refuses to take from ``extra``
_RECORD_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Each record becomes a single JSON object with:
    - ISO8601 timestamp
    - Severity level
    - Component identifier
    - Session ID (if available in extra)
    - Message and any additional fields

    Latency values (latency_ms) get an "ms" suffix and, on a terminal, color.
    """

    ORANGE = '\033[38;5;208m'
    RESET = '\033[0m'

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "severity": record.levelname.lower(),
            "component": getattr(record, "component", record.name),
            "message": record.getMessage(),
        }

        if hasattr(record, "session_id"):
            log_data["session_id"] = record.session_id

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        json_output = json.dumps(log_data, ensure_ascii=False, default=str)

        if isinstance(log_data.get("latency_ms"), int):
            no_color = os.environ.get('NO_COLOR', '').lower() in ('1', 'true', 'yes')
            try:
                is_tty = sys.stdout.isatty()
            except (AttributeError, OSError):
                is_tty = False
            if is_tty and not no_color:
                replacement = rf'\1{self.ORANGE}\2 ms{self.RESET}'
            else:
                replacement = r'\1\2 ms'
            json_output = re.sub(r'("latency_ms"\s*:\s*)(\d+)', replacement, json_output)

        return json_output


class StructuredLogger:
    """
    Wrapper around Python's logging with structured JSON output.

    Usage:
        logger = StructuredLogger(Component.PIPELINE, session_id="huddle_123")
        logger.info("Chunk persisted", sequence=4)
        logger.error("Interpretation failed", error="details")
        logger.debug_pii("Transcript preview", text="Task: audit onboarding")
    """

    def __init__(
        self,
        component: str | Component,
        session_id: Optional[str] = None,
        logger_name: Optional[str] = None
    ):
        self.component = component.value if isinstance(component, Component) else component
        self.session_id = session_id
        self.logger = logging.getLogger(logger_name or self.component)

    def _log(
        self,
        level: int,
        message: str,
        pii: Optional[Dict[str, Any]] = None,
        **kwargs
    ):
        exc_info = kwargs.pop("exc_info", None)
        stack_info = kwargs.pop("stack_info", None)
        stacklevel = kwargs.pop("stacklevel", 1)

        extra = {"component": self.component}
        for key, value in kwargs.items():
            # a field named like a LogRecord attribute would make logging raise
            extra[f"field_{key}" if key in _RECORD_ATTRS else key] = value

        if self.session_id:
            extra["session_id"] = self.session_id

        if pii:
            # PII is kept in its own field so it can be filtered downstream
            extra["pii"] = pii

        self.logger.log(
            level,
            message,
            exc_info=exc_info,
            stack_info=stack_info,
            stacklevel=stacklevel,
            extra=extra
        )

    def debug(self, message: str, **kwargs):
        self._log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs):
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs):
        self._log(logging.ERROR, message, **kwargs)

    def critical(self, message: str, **kwargs):
        self._log(logging.CRITICAL, message, **kwargs)

    def exception(self, message: str, **kwargs):
        """Log an error message with exception info, like logging.Logger.exception."""
        kwargs.setdefault("exc_info", True)
        self._log(logging.ERROR, message, **kwargs)

    def debug_pii(self, message: str, **pii_fields):
        """
        Log debug with PII fields explicitly marked.

        Example:
            logger.debug_pii("Transcript received", speaker_label="Ana", text="...")
        """
        self._log(logging.DEBUG, message, pii=pii_fields)

    def with_session(self, session_id: str) -> "StructuredLogger":
        """Create a new logger instance bound to a huddle/session ID."""
        return StructuredLogger(
            self.component,
            session_id=session_id,
            logger_name=self.logger.name
        )


def setup_logging(
    level: str = "INFO",
    use_json: bool = True,
    include_timestamp: bool = True
) -> None:
    """
    Configure the root logger. Call once at application startup.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        use_json: Use JSON formatter (True) or simple text (False)
        include_timestamp: Include timestamps in text logs
    """
    root_logger = logging.getLogger()

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)

    if use_json:
        formatter = JSONFormatter()
    else:
        format_str = "%(levelname)s - %(component)s - %(message)s"
        if include_timestamp:
            format_str = "%(asctime)s - " + format_str
        formatter = logging.Formatter(format_str)

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    log_level = getattr(logging, level.upper(), logging.INFO)
    root_logger.setLevel(log_level)


def get_logger(
    component: str | Component,
    session_id: Optional[str] = None
) -> StructuredLogger:
    """
    Get a structured logger for a component.

    Example:
        logger = get_logger(Component.GRAPH, session_id="huddle_123")
        logger.info("Applying actions", action_count=3)
    """
    return StructuredLogger(component, session_id=session_id)
