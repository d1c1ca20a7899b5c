"""
Structured logging utilities for the SoundMatch engine.

JSON lines for production and log files, a compact text format for
terminals. Per-submission context (submission id, fingerprint, batch
index) travels on ``record.context`` and is rendered by both formatters.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

from soundmatch.utils.errors import SoundMatchError

TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(threadName)s | %(name)s | %(message)s"
TEXT_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers that flood DEBUG output while librosa runs
NOISY_LOGGERS = ("numba", "audioread")


def _context_of(record: logging.LogRecord) -> Dict[str, Any]:
    return getattr(record, "context", None) or {}


class JSONFormatter(logging.Formatter):
    """
    One JSON object per record.

    Taxonomy errors attached via ``exc_info`` are summarised under
    ``"error"`` so log queries can filter on ``retryable`` without parsing
    the traceback.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
            "source": f"{record.module}.{record.funcName}:{record.lineno}",
        }

        context = _context_of(record)
        if context:
            entry["context"] = context

        if record.exc_info:
            error = record.exc_info[1]
            if isinstance(error, SoundMatchError):
                entry["error"] = {
                    "type": type(error).__name__,
                    "retryable": error.retryable,
                    "details": error.details,
                }
            entry["traceback"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Text lines with the context appended as ``key=value`` pairs."""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, colored: bool = False):
        super().__init__(TEXT_FORMAT, TEXT_DATEFMT)
        self.colored = colored

    def formatMessage(self, record: logging.LogRecord) -> str:
        line = super().formatMessage(record)
        context = _context_of(record)
        if context:
            line += " | " + " ".join(f"{key}={value}" for key, value in context.items())
        if self.colored and record.levelno in self.LEVEL_COLORS:
            line = f"{self.LEVEL_COLORS[record.levelno]}{line}{self.RESET}"
        return line


def _console_formatter(log_format: str, colored: bool) -> logging.Formatter:
    if log_format == "json":
        return JSONFormatter()
    return ConsoleFormatter(colored=colored and sys.stderr.isatty())


def _rotating_json_handler(log_file: str, max_bytes: int, backup_count: int) -> logging.Handler:
    Path(log_file).parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=backup_count)
    handler.setFormatter(JSONFormatter())
    return handler


def setup_logging(
    level: str = "INFO",
    log_format: str = "json",
    log_file: Optional[str] = None,
    max_bytes: int = 10485760,
    backup_count: int = 5,
    console_enabled: bool = True,
    colored: bool = True,
) -> None:
    """
    Configure root logging for the engine.

    Console output goes to stderr so that ``--json`` results on stdout stay
    machine-readable. The optional log file is always JSON and rotates at
    ``max_bytes``.

    Args:
        level: Log level name for the engine's loggers
        log_format: Console format, "json" or "text"
        log_file: Optional rotating log file
        colored: Color text lines by level when stderr is a terminal
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers = []

    if console_enabled:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(_console_formatter(log_format, colored))
        root_logger.addHandler(console_handler)

    if log_file:
        root_logger.addHandler(_rotating_json_handler(log_file, max_bytes, backup_count))

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(root_logger.level, logging.WARNING))


def setup_logging_from_config(config: Dict[str, Any]) -> None:
    """Configure logging from the ``logging`` section of a config dict."""
    section = config.get("logging", {})
    setup_logging(
        level=section.get("level", "INFO"),
        log_format=section.get("format", "json"),
        log_file=section.get("file"),
        console_enabled=section.get("console", True),
        colored=section.get("colored", True),
    )


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class ContextAdapter(logging.LoggerAdapter):
    """
    Logger adapter carrying a fixed context dict.

    Per-call ``extra={"context": {...}}`` is merged over the bound context.
    """

    def process(
        self, msg: str, kwargs: Dict[str, Any]
    ) -> tuple[str, Dict[str, Any]]:
        extra = dict(kwargs.get("extra") or {})
        context = dict(self.extra or {})
        context.update(extra.pop("context", {}) or {})
        extra["context"] = context
        kwargs["extra"] = extra
        return msg, kwargs

    def bind(self, **context: Any) -> "ContextAdapter":
        """New adapter with ``context`` added to this one's."""
        merged = dict(self.extra or {})
        merged.update(context)
        return ContextAdapter(self.logger, merged)


def create_logger_with_context(
    name: str, context: Dict[str, Any]
) -> ContextAdapter:
    """
    Create a logger with persistent context.

    Example:
        log = create_logger_with_context(
            "orchestrator",
            {"submission_id": "sub-3", "fingerprint": "9c1e0b..."}
        )
        log.info("Extraction started")
        log.bind(stage="decode").warning("Decoder retry")
    """
    return ContextAdapter(get_logger(name), context)
