from __future__ import annotations

import contextvars
import logging
from contextlib import contextmanager
from typing import Iterator, Optional

_correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default="-"
)
_configured = False


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = _correlation_id_var.get("-")
        return True


def configure_logging(level: str = "INFO") -> None:
    global _configured
    root = logging.getLogger()
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    if not _configured:
        if not root.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(
                logging.Formatter(
                    "%(asctime)s %(levelname)s [%(name)s] [cid=%(correlation_id)s] %(message)s"
                )
            )
            root.addHandler(handler)
        for handler in root.handlers:
            handler.addFilter(CorrelationIdFilter())
        _configured = True

    root.setLevel(numeric_level)


@contextmanager
def correlation_scope(correlation_id: str) -> Iterator[str]:
    """Tag every log record emitted inside the block with ``correlation_id``.

    The HTTP layer binds the request id; workers bind the job id so one
    ingestion attempt can be followed across its log lines.
    """
    token = _correlation_id_var.set(correlation_id)
    try:
        yield correlation_id
    finally:
        _correlation_id_var.reset(token)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging.getLogger(name)
