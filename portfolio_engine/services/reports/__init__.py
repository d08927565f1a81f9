# portfolio_engine/services/reports/__init__.py
"""
Portfolio report metrics and persistence.

Usage:
    from portfolio_engine.services.reports import ReportAggregator

    batch = ReportAggregator().generate_all_reports(db, date(2024, 3, 1))
"""

from portfolio_engine.services.reports.aggregator import (
    ReportAggregator,
    average_holding_days,
    best_worst_month,
    concentration_index,
    drawdown_series,
    monthly_pnl,
    realized_by_month,
    realized_for_periods,
    win_rate,
)
from portfolio_engine.services.reports.types import (
    DrawdownPoint,
    DrawdownSummary,
    MonthlyPnL,
    MonthlyRealized,
    PeriodRealized,
    ReportBatchResult,
    ReportFailure,
    WinRateStats,
)

__all__ = [
    "ReportAggregator",
    # Pure metrics
    "monthly_pnl",
    "best_worst_month",
    "realized_by_month",
    "drawdown_series",
    "concentration_index",
    "win_rate",
    "average_holding_days",
    "realized_for_periods",
    # Types
    "DrawdownPoint",
    "DrawdownSummary",
    "MonthlyPnL",
    "MonthlyRealized",
    "PeriodRealized",
    "ReportBatchResult",
    "ReportFailure",
    "WinRateStats",
]
