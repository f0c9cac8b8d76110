"""
Structured logging for the x402 distributor.

Two output formats share one pipeline:
- JSON lines (LOG_FORMAT=json, and always for log files)
- colored single-line console output for development

Every record carries the thread's request context (request id, stream id,
funding reference) and is scrubbed of signer keys, webhook secrets,
bearer tokens and database credentials before it is written.
"""

import json
import logging
import os
import re
import sys
import threading
from datetime import UTC, datetime
from typing import Any

# ============================================================
# Redaction
# ============================================================

REDACTED = "[REDACTED]"

# (pattern, replacement) applied to every message and string value
SENSITIVE_PATTERNS = [
    (
        re.compile(
            r"(secret|api[_-]?key|token|password|private[_-]?key)"
            r"([\"']?\s*[:=]\s*[\"']?)([^\s\"',}{]+)",
            re.IGNORECASE,
        ),
        r"\1\2" + REDACTED,
    ),
    (re.compile(r"(Bearer\s+)(\S+)", re.IGNORECASE), r"\1" + REDACTED),
    # Solana CLI keypair: a JSON array of 64 byte values
    (re.compile(r"\[\s*\d{1,3}(?:\s*,\s*\d{1,3}){63}\s*\]"), "[REDACTED_KEYPAIR]"),
    (re.compile(r"(postgres(?:ql)?://[^:/\s]+:)([^@\s]+)(@)"), r"\1" + REDACTED + r"\3"),
]

# Keys whose values are dropped whole (compared lowercased, "-" as "_")
REDACTED_FIELDS = frozenset({
    "password",
    "secret",
    "secret_key",
    "signer_secret",
    "x402_signer_secret",
    "webhook_secret",
    "x402_webhook_secret",
    "x_x402_signature",
    "private_key",
    "keypair",
    "api_key",
    "x_api_key",
    "x402_api_key",
    "token",
    "authorization",
    "database_url",
})


def redact_string(text: str) -> str:
    if not isinstance(text, str):
        return text
    for pattern, replacement in SENSITIVE_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def _is_sensitive_key(key: Any) -> bool:
    return str(key).lower().replace("-", "_") in REDACTED_FIELDS


def redact_sensitive_data(data: Any, depth: int = 0, max_depth: int = 10) -> Any:
    """
    Scrub a log payload.

    Dicts lose the values of sensitive keys, strings go through the
    patterns, containers are walked up to ``max_depth`` levels.
    """
    if depth > max_depth:
        return "[MAX_DEPTH_EXCEEDED]"
    if isinstance(data, str):
        return redact_string(data)
    if isinstance(data, dict):
        return {
            key: REDACTED if _is_sensitive_key(key)
            else redact_sensitive_data(value, depth + 1, max_depth)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [redact_sensitive_data(item, depth + 1, max_depth) for item in data]
    return data


# ============================================================
# Per-thread context
# ============================================================

_context = threading.local()


def get_request_context() -> dict[str, Any]:
    return getattr(_context, "data", {})


def set_request_context(**kwargs) -> None:
    _context.data = {**get_request_context(), **kwargs}


def clear_request_context() -> None:
    _context.data = {}


class LoggingContext:
    """
    Temporarily add fields to the thread's log context.

    Usage:
        with LoggingContext(stream_id=mint, funding_reference=sig):
            logger.info("Distributing payment")
    """

    def __init__(self, **fields):
        self.fields = fields
        self._saved: dict[str, Any] = {}

    def __enter__(self):
        self._saved = dict(get_request_context())
        set_request_context(**self.fields)
        return self

    def __exit__(self, _exc_type, _exc_val, _exc_tb):
        _context.data = self._saved
        return False


# Attributes every LogRecord has; anything else arrived through ``extra``
_STANDARD_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__
) | {"message", "asctime", "taskName"}


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in record.__dict__.items() if k not in _STANDARD_ATTRS}


# ============================================================
# Formatters
# ============================================================


class JSONFormatter(logging.Formatter):
    """
    One JSON object per line.

        {"timestamp": "...", "level": "INFO", "logger": "distribution_service",
         "message": "Distribution recorded",
         "context": {"request_id": "...", "stream_id": "..."},
         "record_id": "dist_...", "status": "completed"}

    Warnings and above also carry ``location``.
    """

    def __init__(self, include_stack_info: bool = True, redact_sensitive: bool = True):
        super().__init__()
        self.include_stack_info = include_stack_info
        self.redact_sensitive = redact_sensitive

    def _clean(self, value: Any) -> Any:
        return redact_sensitive_data(value) if self.redact_sensitive else value

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": redact_string(message) if self.redact_sensitive else message,
        }
        if record.levelno >= logging.WARNING:
            entry["location"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }
        if record.exc_info and self.include_stack_info:
            entry["exception"] = self.formatException(record.exc_info)

        context = get_request_context()
        if context:
            entry["context"] = self._clean(context)
        entry.update({key: self._clean(value) for key, value in _extra_fields(record).items()})
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """``HH:MM:SS.mmm L [logger] message (context) [extras]`` with ANSI colors."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        stamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]
        parts = [
            f"{color}{stamp} {record.levelname[0]} [{record.name}]{self.RESET}",
            redact_string(record.getMessage()),
        ]

        context = get_request_context()
        if context:
            fields = " ".join(f"{k}={v}" for k, v in redact_sensitive_data(context).items())
            parts.append(f"{color}({fields}){self.RESET}")

        extras = _extra_fields(record)
        if extras:
            fields = ", ".join(f"{k}={v}" for k, v in redact_sensitive_data(extras).items())
            parts.append(f"[{fields}]")

        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(
    level: str = "INFO",
    json_output: bool | None = None,
    log_file: str | None = None,
) -> None:
    """
    Install the distributor's handlers on the root logger.

    Args:
        level: Root log level name
        json_output: JSON on stdout; defaults to LOG_FORMAT=json
        log_file: Extra JSON-lines file
    """
    if json_output is None:
        json_output = os.getenv("LOG_FORMAT", "").lower() == "json"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    stdout = logging.StreamHandler(sys.stdout)
    stdout.setFormatter(JSONFormatter() if json_output else ConsoleFormatter())
    root.addHandler(stdout)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter())
        root.addHandler(file_handler)

    # urllib3 logs every RPC retry; werkzeug duplicates the request log
    for noisy in ("urllib3", "werkzeug"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
