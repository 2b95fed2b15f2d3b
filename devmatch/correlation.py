"""
Correlation ids for cross-component log tracing.
Every log line carries the id of the request or job that produced it.
"""

import logging
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Optional

_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(correlation_id)s] %(message)s"


def generate_correlation_id() -> str:
    return uuid.uuid4().hex[:16]


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


@contextmanager
def correlation_scope(correlation_id: Optional[str] = None):
    """Bind a correlation id (new one if not given) for the duration of the block"""
    token = _correlation_id.set(correlation_id or generate_correlation_id())
    try:
        yield _correlation_id.get()
    finally:
        _correlation_id.reset(token)


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = _correlation_id.get() or "-"
        return True


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, CorrelationIdFilter) for f in handler.filters):
            handler.addFilter(CorrelationIdFilter())
