"""
Logging utilities.

WHAT: Centralized logging configuration with the negotiation id on every record
WHY: Interleaved writers on many negotiations must stay traceable per negotiation
HOW: Python logging with file and console handlers; a context variable carries
     the negotiation id and a handler filter copies it onto each record
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import Iterator

from ..core.config import settings

NO_NEGOTIATION = "-"

_negotiation_id: ContextVar[str] = ContextVar("negotiation_id", default=NO_NEGOTIATION)


class NegotiationContextFilter(logging.Filter):
    """Stamp records with the negotiation being worked on, or "-"."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.negotiation_id = _negotiation_id.get()
        return True


@contextmanager
def negotiation_context(negotiation_id: str) -> Iterator[None]:
    """Tag every log line emitted inside the block with negotiation_id."""
    token = _negotiation_id.set(negotiation_id)
    try:
        yield
    finally:
        _negotiation_id.reset(token)


def setup_logging():
    """
    Configure application logging.

    WHAT: Set up root logger with file and console handlers
    WHY: Negotiation transitions must be traceable in console and on disk
    HOW: Create handlers with formatters and the context filter, set levels from config
    """
    log_file = Path(settings.LOG_FILE)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    # Remove existing handlers
    root_logger.handlers.clear()
    context_filter = NegotiationContextFilter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.addFilter(context_filter)
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - [%(negotiation_id)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))
    root_logger.addHandler(console_handler)

    file_handler = logging.FileHandler(log_file)
    file_handler.setLevel(logging.DEBUG)
    file_handler.addFilter(context_filter)
    file_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - [%(negotiation_id)s] '
        '%(pathname)s:%(lineno)d - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))
    root_logger.addHandler(file_handler)

    root_logger.info(f"Logging initialized (level={settings.LOG_LEVEL}, file={log_file})")


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for a module.

    Args:
        name: Module name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)
