# portfolio_engine/utils/__init__.py
"""
Cross-cutting utilities for the valuation engine.

- logging: Logging setup with correlation id support
- context: Correlation id scope for background runs
- date_utils: Business days, processing date, month helpers

Usage:
    from portfolio_engine.utils import setup_logging, correlation_scope
    from portfolio_engine.utils.date_utils import get_business_days
"""

from portfolio_engine.utils.context import (
    correlation_scope,
    get_correlation_id,
    set_correlation_id,
)
from portfolio_engine.utils.logging import setup_logging

__all__ = [
    "setup_logging",
    "correlation_scope",
    "get_correlation_id",
    "set_correlation_id",
]
