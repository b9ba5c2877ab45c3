"""Context-aware logging for rank-up requests.

Every record carries the correlation ID of the request that produced it and
the mint address being worked on, so one rank-up attempt can be followed from
the webhook through every pipeline step.
"""

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Optional

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
mint_address_var: ContextVar[Optional[str]] = ContextVar("mint_address", default=None)


class LogContextFilter(logging.Filter):
    """Attach the current correlation ID and mint address to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get() or "-"
        record.mint_address = mint_address_var.get() or "-"
        return True


def setup_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure the root logger.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper()))

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)

    if log_format == "json":
        formatter = logging.Formatter(
            '{"timestamp": "%(asctime)s", "level": "%(levelname)s", '
            '"correlation_id": "%(correlation_id)s", "mint": "%(mint_address)s", '
            '"name": "%(name)s", "message": "%(message)s"}'
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] [%(correlation_id)s] [%(mint_address)s] %(name)s: %(message)s"
        )

    handler.setFormatter(formatter)
    handler.addFilter(LogContextFilter())
    root.addHandler(handler)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def generate_correlation_id() -> str:
    """Generate a new correlation ID.

    Returns:
        A new UUID-based correlation ID.
    """
    return f"corr-{uuid.uuid4().hex[:12]}"


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class LogContext:
    """Context manager binding a correlation ID and/or mint address to a block.

    Values not given are inherited from the enclosing context, except the
    correlation ID, which is generated when none is active.
    """

    def __init__(self, correlation_id: Optional[str] = None, mint_address: Optional[str] = None):
        self.correlation_id = correlation_id or get_correlation_id() or generate_correlation_id()
        self.mint_address = mint_address
        self._tokens: list = []

    def __enter__(self) -> str:
        self._tokens.append((correlation_id_var, correlation_id_var.set(self.correlation_id)))
        if self.mint_address is not None:
            self._tokens.append((mint_address_var, mint_address_var.set(self.mint_address)))
        return self.correlation_id

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        while self._tokens:
            var, token = self._tokens.pop()
            var.reset(token)
