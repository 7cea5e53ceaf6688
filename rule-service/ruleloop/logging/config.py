"""
Logging configuration for the rule loop service.

Structured logging with redaction of secrets and rule payloads.
"""
import logging
import logging.handlers
import json
import os
import re
import sys
from pathlib import Path
from datetime import datetime, timezone
from typing import Optional, Any

from ..utils.redaction import redact_dict


# LogRecord attributes that are not caller-supplied ``extra`` fields
_RESERVED_ATTRS = frozenset((
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "message", "pathname", "process", "processName", "relativeCreated",
    "thread", "threadName", "exc_info", "exc_text", "stack_info",
    "taskName", "cycle_id",
))


def _extra_fields(record: logging.LogRecord) -> dict:
    return {
        key: value for key, value in record.__dict__.items()
        if key not in _RESERVED_ATTRS
    }


class JSONFormatter(logging.Formatter):
    """
    JSON log formatter for production environments.

    One JSON object per line. ``extra`` fields are nested under "extra"
    and pass through redact_dict, so rule payloads never reach the log.
    """

    def __init__(self, include_cycle_id: bool = True):
        super().__init__()
        self.include_cycle_id = include_cycle_id

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc)
            .isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "message": record.getMessage(),
        }

        # Consolidation cycles tag their records with cycle_id
        if self.include_cycle_id and hasattr(record, "cycle_id"):
            log_data["cycle_id"] = record.cycle_id

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info),
            }

        extra = _extra_fields(record)
        if extra:
            log_data["extra"] = extra

        return json.dumps(redact_dict(log_data), default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    Human-readable log formatter for development.

    Colorized when attached to a TTY. Extras are redacted as well.
    """

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
        "RESET": "\033[0m",
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color and sys.stderr.isatty()

    def format(self, record: logging.LogRecord) -> str:
        if self.use_color:
            level_color = self.COLORS.get(record.levelname, "")
            level_text = f"{level_color}{record.levelname:8}{self.COLORS['RESET']}"
        else:
            level_text = f"{record.levelname:8}"

        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc).strftime("%H:%M:%S.%f")[:-3]
        location = f"{record.module}:{record.funcName}:{record.lineno}"

        log_line = f"{timestamp} {level_text} [{location:30}] {record.getMessage()}"

        if hasattr(record, "cycle_id"):
            log_line += f" [cycle_id={record.cycle_id}]"

        extra = _extra_fields(record)
        if extra:
            extra = redact_dict(extra)
            log_line += " | " + " ".join(f"{k}={v}" for k, v in extra.items())

        if record.exc_info:
            log_line += "\n" + self.formatException(record.exc_info)

        return log_line


class SecretRedactionFilter(logging.Filter):
    """
    Redacts ``key=value`` secrets embedded in the message string itself.

    Complements redact_dict, which only sees structured extras.
    """

    SECRET_PATTERNS = [
        "password", "passwd", "secret", "api_key", "apikey",
        "token", "credential", "bearer",
    ]

    _HEX_RE = re.compile(r"\b[a-fA-F0-9]{64,}\b")

    def filter(self, record: logging.LogRecord) -> bool:
        if record.msg:
            record.msg = self._redact_message(str(record.msg))

        if record.args:
            if isinstance(record.args, dict):
                record.args = redact_dict(record.args)
            elif isinstance(record.args, (list, tuple)):
                record.args = tuple(
                    redact_dict(arg) if isinstance(arg, dict) else self._redact_value(arg)
                    for arg in record.args
                )

        return True

    def _redact_message(self, message: str) -> str:
        lower_msg = message.lower()
        for pattern in self.SECRET_PATTERNS:
            if pattern in lower_msg:
                regex = re.compile(rf"({pattern}[\s:=]+)([^\s,;}}]+)", re.IGNORECASE)
                message = regex.sub(r"\1<REDACTED>", message)

        return self._HEX_RE.sub(lambda m: f"{m.group(0)[:4]}...{m.group(0)[-4:]}", message)

    def _redact_value(self, value: Any) -> Any:
        if isinstance(value, str) and len(value) > 32:
            lower_val = value.lower()
            if any(pattern in lower_val for pattern in self.SECRET_PATTERNS):
                return "<REDACTED>"
        return value


def configure_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    json_format: bool = False,
    max_bytes: int = 50 * 1024 * 1024,
    backup_count: int = 5,
    include_cycle_id: bool = True,
) -> None:
    """
    Configure root logging for the rule loop service.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Path to a rotating log file (None = stdout only)
        json_format: JSON lines (True) or human-readable text (False)
        max_bytes: Max size per log file before rotation
        backup_count: Number of rotated files to keep
        include_cycle_id: Emit cycle_id in JSON records when present

    Example:
        configure_logging(level="DEBUG")
        configure_logging(level="INFO", json_format=True, log_file="./logs/ruleloop.log")
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    if json_format:
        formatter = JSONFormatter(include_cycle_id=include_cycle_id)
    else:
        formatter = HumanReadableFormatter()

    secret_filter = SecretRedactionFilter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(secret_filter)
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            filename=str(log_path),
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(secret_filter)
        root_logger.addHandler(file_handler)

        if sys.platform != "win32" and log_path.exists():
            os.chmod(log_path, 0o600)

    root_logger.info(
        "Logging configured",
        extra={
            "level": level,
            "json_format": json_format,
            "log_file": str(log_file) if log_file else None,
        }
    )


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for a module.

    Example:
        logger = get_logger(__name__)
        logger.info("Feedback recorded", extra={"event_id": event_id})
    """
    return logging.getLogger(name)
