"""
Centralized Logging
-------------------
Structured logging with invocation_id propagation.

Design:
- Every tool invocation gets a unique invocation_id
- invocation_id propagates through executor -> handler -> cache/metrics logs
- Console output via Rich, file output as JSON lines
- Severity discipline: INFO=state, WARNING=rejected call, ERROR=failed call

Usage:
    from localrpc.infra.logging import get_logger, InvocationContext

    logger = get_logger("tools.custom")

    with InvocationContext() as invocation_id:
        logger.info("Calling handler")  # record carries invocation_id
"""

from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional
import contextvars
import json
import logging
import uuid

from rich.console import Console
from rich.logging import RichHandler

# Context variable for invocation_id - thread-safe and async-safe
_invocation_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "invocation_id", default=None
)

ROOT_LOGGER = "localrpc"

# Extra fields copied into JSON log lines when present on a record
EXTRA_FIELDS = ("tool_name", "execution_time_ms", "role", "cache_hit", "event")


def generate_invocation_id() -> str:
    """Generate a unique invocation ID."""
    return f"inv_{uuid.uuid4().hex[:12]}"


def get_invocation_id() -> Optional[str]:
    """Get the current invocation ID from context."""
    return _invocation_id_var.get()


class InvocationContext:
    """
    Context manager for invocation scoping.

    Usage:
        with InvocationContext() as invocation_id:
            # All logs within this block will have invocation_id
            logger.info("Processing...")
    """

    def __init__(self, invocation_id: Optional[str] = None):
        self._invocation_id = invocation_id or generate_invocation_id()
        self._token: Optional[contextvars.Token] = None

    def __enter__(self) -> str:
        self._token = _invocation_id_var.set(self._invocation_id)
        return self._invocation_id

    def __exit__(self, *args) -> None:
        if self._token is not None:
            _invocation_id_var.reset(self._token)
            self._token = None


class InvocationIdFilter(logging.Filter):
    """Logging filter that adds invocation_id to every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "invocation_id", None) is None:
            record.invocation_id = get_invocation_id() or "-"
        return True


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured file logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "invocation_id": getattr(record, "invocation_id", "-"),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key in EXTRA_FIELDS:
            if hasattr(record, key):
                log_entry[key] = getattr(record, key)

        return json.dumps(log_entry, default=str)


def configure_logging(
    level: int = logging.INFO,
    log_dir: Optional[str] = None,
    console: bool = True,
    file: bool = False,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 3,
) -> logging.Logger:
    """
    Configure the localrpc logging tree.

    Calling it again replaces the previously installed handlers.

    Args:
        level: Logging level (default INFO)
        log_dir: Directory for log files (default: ./logs)
        console: Enable Rich console output
        file: Enable JSON file output
    """
    root_logger = logging.getLogger(ROOT_LOGGER)
    root_logger.setLevel(level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    invocation_filter = InvocationIdFilter()

    if console:
        console_handler = RichHandler(
            console=Console(stderr=True),
            rich_tracebacks=True,
            show_path=False,
        )
        console_handler.setLevel(level)
        console_handler.setFormatter(logging.Formatter("[%(invocation_id)s] %(name)s: %(message)s"))
        console_handler.addFilter(invocation_filter)
        root_logger.addHandler(console_handler)

    if file:
        log_path = Path(log_dir) if log_dir else Path("logs")
        log_path.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            str(log_path / "localrpc.log"),
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)  # File gets everything
        file_handler.setFormatter(JSONFormatter())
        file_handler.addFilter(invocation_filter)
        root_logger.addHandler(file_handler)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger in the localrpc namespace.

    Args:
        name: Logger name (prefixed with 'localrpc.' if not already)
    """
    if not name.startswith(ROOT_LOGGER):
        name = f"{ROOT_LOGGER}.{name}"

    return logging.getLogger(name)
