"""Structured logging with settlement-cycle correlation.

Every log record emitted while a settlement cycle runs carries the cycle id
and, inside per-asset work, the asset and chain key being settled. Operators
can follow one transfer from submission through verification by filtering on
those fields.
"""
from __future__ import annotations

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Optional

# Context variables for cycle tracking
cycle_id_var: ContextVar[Optional[str]] = ContextVar("cycle_id", default=None)
asset_var: ContextVar[Optional[str]] = ContextVar("asset", default=None)
chain_key_var: ContextVar[Optional[str]] = ContextVar("chain_key", default=None)

_CONTEXT_FIELDS = ("cycle_id", "asset", "chain_key")

_RESERVED_ATTRS = frozenset((
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "thread",
    "threadName",
    "taskName",
    "exc_info",
    "exc_text",
    "stack_info",
) + _CONTEXT_FIELDS)


class CycleContextFilter(logging.Filter):
    """Logging filter that adds settlement-cycle context to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.cycle_id = cycle_id_var.get()
        record.asset = asset_var.get()
        record.chain_key = chain_key_var.get()
        return True


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for key in _CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Fields passed through `extra=`
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None,
) -> None:
    """
    Configure structured logging for the settlement process.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON structured logging (True) or simple format (False)
        log_file: Optional file path for logging output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - "
            "[%(cycle_id)s %(asset)s %(chain_key)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(CycleContextFilter())
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(CycleContextFilter())
        root_logger.addHandler(file_handler)


def generate_cycle_id() -> str:
    """Generate a new settlement cycle ID."""
    return f"cyc_{uuid.uuid4().hex[:16]}"


def get_cycle_id() -> Optional[str]:
    return cycle_id_var.get()


class LogContext:
    """Context manager for temporary settlement logging context."""

    def __init__(
        self,
        cycle_id: Optional[str] = None,
        asset: Optional[str] = None,
        chain_key: Optional[str] = None,
    ):
        self.cycle_id = cycle_id
        self.asset = asset
        self.chain_key = chain_key
        self._tokens: list = []

    def __enter__(self) -> "LogContext":
        if self.cycle_id:
            self._tokens.append((cycle_id_var, cycle_id_var.set(self.cycle_id)))
        if self.asset:
            self._tokens.append((asset_var, asset_var.set(self.asset)))
        if self.chain_key:
            self._tokens.append((chain_key_var, chain_key_var.set(self.chain_key)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        while self._tokens:
            var, token = self._tokens.pop()
            var.reset(token)
