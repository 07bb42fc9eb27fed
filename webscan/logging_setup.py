"""Logging setup for webscan.

Text or JSON log records on stderr; stdout is reserved for the event stream
written by the CLI.

Note: Named logging_setup.py to avoid conflicts with Python's built-in logging module.
"""

import sys
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union


class JSONFormatter(logging.Formatter):
    """Formats log records as one JSON object per line.

    Example output:
        {"timestamp": "2025-10-24T23:30:00.123000+00:00", "level": "ERROR",
         "logger": "webscan.correlator", "message": "More than 10 redirects found",
         "extra": {"url": "https://example.test/a"}}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra") and isinstance(record.extra, dict):
            log_data["extra"] = record.extra

        if record.levelno == logging.DEBUG:
            log_data["location"] = {
                "file": record.filename,
                "line": record.lineno,
                "function": record.funcName,
            }

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Formats log records as human-readable text.

    Example output:
        2025-10-24 23:30:00 [INFO] webscan.connector: Collecting https://example.test/
    """

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict) and extra:
            fields = " ".join(f"{k}={v}" for k, v in extra.items())
            message = f"{message} [{fields}]"
        return message


def setup_logging(
    format_type: str = "text",
    level: Optional[str] = None,
    quiet: bool = False,
    verbose: bool = False,
) -> None:
    """Configure logging with the given format and level.

    Args:
        format_type: Output format - "json" or "text" (default: "text")
        level: Logging level name; if None, determined by quiet/verbose flags
        quiet: Only errors (sets level to ERROR)
        verbose: Debug output (sets level to DEBUG)

    Precedence for level determination:
        1. quiet flag -> ERROR
        2. verbose flag -> DEBUG
        3. explicit level argument -> as specified
        4. default -> INFO
    """
    if quiet:
        log_level = logging.ERROR
    elif verbose:
        log_level = logging.DEBUG
    elif level:
        log_level = getattr(logging, level.upper(), logging.INFO)
    else:
        log_level = logging.INFO

    formatter: Union[JSONFormatter, TextFormatter]
    if format_type == "json":
        formatter = JSONFormatter()
    else:
        formatter = TextFormatter()

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    logging.getLogger("webscan").setLevel(log_level)
    # Frame-level traffic is only useful when debugging the protocol client itself.
    logging.getLogger("websockets").setLevel(max(log_level, logging.INFO))


def log_with_context(
    logger: logging.Logger, level: int, message: str, **extra_fields
) -> None:
    """Log message with extra context fields.

    Example:
        log_with_context(
            logger, logging.ERROR, "Error redirecting: infinite loop",
            url="https://example.test/",
        )
    """
    if extra_fields:
        if not logger.isEnabledFor(level):
            return
        record = logger.makeRecord(
            logger.name, level, "(log_with_context)", 0, message, (), None
        )
        record.extra = extra_fields
        logger.handle(record)
    else:
        logger.log(level, message)
