"""
DevRunner Structured Logging

Log records carry the run they belong to: run_id, project_id and
iteration_id are attached either explicitly through `extra=log_extra(...)`
or implicitly from the surrounding `log_context(...)` block. Output is a
single text line or a JSON object, and hosting tokens never reach it.
"""

import json
import logging
import os
import re
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Optional

CONTEXT_FIELDS = ("request_id", "run_id", "project_id", "iteration_id")
UNSET = "-"

# Attributes every LogRecord has; anything else on a record came from `extra=`.
_RECORD_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"asctime", "message"}

_REDACTED = "[REDACTED]"
_SECRET_KEY_MARKERS = ("token", "secret", "password", "api_key", "apikey", "authorization", "credential")
_URL_CREDENTIALS = re.compile(r"(?P<scheme>[a-z][a-z0-9+.-]*://)[^/\s:@]+(?::[^/\s@]*)?@", re.IGNORECASE)
# GitHub classic/fine-grained tokens and Netlify personal access tokens.
_TOKEN_LITERALS = re.compile(r"\b(?:gh[pousr]_[A-Za-z0-9]{8,}|github_pat_[A-Za-z0-9_]{8,}|nfp_[A-Za-z0-9]{8,})")

_context: ContextVar[Dict[str, Any]] = ContextVar("devrunner_log_context", default={})


def redact(key: str, value: Any) -> Any:
    """Redact secret-named keys, URL credentials and token literals, recursively."""
    if any(marker in key.lower() for marker in _SECRET_KEY_MARKERS):
        return _REDACTED
    if isinstance(value, str):
        value = _URL_CREDENTIALS.sub(r"\g<scheme>", value)
        return _TOKEN_LITERALS.sub(_REDACTED, value)
    if isinstance(value, dict):
        return {k: redact(str(k), v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact(key, v) for v in value]
    return value


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Attach fields to every record logged inside the block (nested blocks merge)."""
    merged = {**_context.get(), **{k: v for k, v in fields.items() if v is not None}}
    token = _context.set(merged)
    try:
        yield
    finally:
        _context.reset(token)


def log_extra(**fields: Any) -> Dict[str, Any]:
    """
    Build an `extra=` dict, dropping None values so context defaults still apply.

    Example:
        logger.info("iteration_gated", extra=log_extra(run_id="r1", iteration_index=2))
    """
    return {k: v for k, v in fields.items() if v is not None}


class ContextFieldsFilter(logging.Filter):
    """Give every record the context fields, from log_context or UNSET."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _context.get().items():
            if key not in _RECORD_ATTRS and not hasattr(record, key):
                setattr(record, key, value)
        for key in CONTEXT_FIELDS:
            if not hasattr(record, key):
                setattr(record, key, UNSET)
        return True


def _extras(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RECORD_ATTRS and key not in CONTEXT_FIELDS
    }


class TextFormatter(logging.Formatter):
    """`time LEVEL logger event key=value ...` with only the context fields that are set."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)s %(name)s %(message)s")

    def formatMessage(self, record: logging.LogRecord) -> str:
        line = super().formatMessage(record)
        pairs = [
            f"{key}={getattr(record, key)}"
            for key in CONTEXT_FIELDS
            if getattr(record, key, UNSET) != UNSET
        ]
        pairs.extend(f"{key}={redact(key, value)}" for key, value in _extras(record).items())
        return " ".join([line, *pairs]) if pairs else line


class JsonFormatter(logging.Formatter):
    """One JSON object per record, secrets redacted."""

    def format(self, record: logging.LogRecord) -> str:
        data: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in CONTEXT_FIELDS:
            data[key] = getattr(record, key, UNSET)
        data.update(_extras(record))
        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)
        return json.dumps({k: redact(k, v) for k, v in data.items()}, default=str)


def setup_logging(level: Optional[str] = None, json_output: bool = False) -> logging.Logger:
    """
    Replace the root handlers with one stream handler.

    The level defaults to DEVRUNNER_LOG_LEVEL, then INFO.
    """
    resolved = (level or os.environ.get("DEVRUNNER_LOG_LEVEL") or "INFO").upper()

    handler = logging.StreamHandler()
    handler.addFilter(ContextFieldsFilter())
    handler.setFormatter(JsonFormatter() if json_output else TextFormatter())

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, resolved, logging.INFO))
    return logging.getLogger("devrunner")


def get_logger(name: str = "devrunner") -> logging.Logger:
    return logging.getLogger(name)


def init_cli_logging(level: Optional[str] = None, json_output: bool = False) -> logging.Logger:
    return setup_logging(level, json_output=json_output)


def json_logging_from_env() -> bool:
    """DEVRUNNER_LOG_JSON switches the CLI to JSON log lines."""
    return os.environ.get("DEVRUNNER_LOG_JSON", "").lower() in ("1", "true", "yes")


# CLI exit codes
EXIT_RUNTIME_ERROR = 1
EXIT_CONFIG_ERROR = 2
