# portfolio_engine/utils/context.py
"""
Correlation id storage for background runs.

Each snapshot run (and each report batch it triggers) gets its own id so
log lines from one run can be traced together, even when the scheduler
thread and ad hoc callers log concurrently. Uses contextvars, so the id
is isolated per thread and per task.

Usage:
    from portfolio_engine.utils.context import correlation_scope

    with correlation_scope("daily_snapshot"):
        logger.info("...")  # record carries "daily_snapshot-3f2a9c1b"
"""

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

_correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> str | None:
    return _correlation_id_var.get()


def set_correlation_id(correlation_id: str | None) -> None:
    _correlation_id_var.set(correlation_id)


def new_correlation_id(prefix: str) -> str:
    """Short unique id, e.g. "daily_snapshot-3f2a9c1b"."""
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


@contextmanager
def correlation_scope(prefix: str) -> Iterator[str]:
    """
    Set a fresh correlation id for the duration of the block.

    The previous id is restored on exit.
    """
    token = _correlation_id_var.set(new_correlation_id(prefix))
    try:
        yield _correlation_id_var.get()
    finally:
        _correlation_id_var.reset(token)
