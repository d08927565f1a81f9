# portfolio_engine/services/reports/types.py
"""
Data types for portfolio reports.

All monetary values are EUR Decimals. Percentages are expressed in
percent (45.16 = 45.16%), matching the stored snapshot rows.

Architecture:
    - MonthlyPnL: Month-end P&L level, with its change vs the prior month
    - MonthlyRealized: Realized FIFO P&L grouped by sale month
    - DrawdownPoint / DrawdownSummary: % drop from the running P&L peak
    - WinRateStats: Share of closed trades with a gain
    - PeriodRealized: Realized P&L for fixed look-back periods
    - ReportBatchResult: Outcome of generating every report for a date
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal


# =============================================================================
# MONTHLY ROLLUPS
# =============================================================================

@dataclass(frozen=True)
class MonthlyPnL:
    """
    P&L at the last business day of a month.

    Attributes:
        month: "YYYY-MM"
        gain: Absolute P&L level at month end (not the month's change)
        delta: gain minus the previous month's gain (None for the first month)
        total_value: Portfolio value at month end
        date: The history point used for the month
    """
    month: str
    gain: Decimal
    delta: Decimal | None
    total_value: Decimal
    date: date


@dataclass(frozen=True)
class MonthlyRealized:
    """Realized P&L of sales closed in one month."""
    month: str
    realized_pnl: Decimal
    trades: int


# =============================================================================
# DRAWDOWN
# =============================================================================

@dataclass(frozen=True)
class DrawdownPoint:
    """
    Drawdown on one day.

    Attributes:
        drawdown: (pnl − peak) / peak × 100, 0 while the peak is not positive
    """
    date: date
    pnl: Decimal
    drawdown: Decimal


@dataclass
class DrawdownSummary:
    points: list[DrawdownPoint] = field(default_factory=list)
    max_drawdown: Decimal = Decimal("0")
    max_drawdown_date: date | None = None


# =============================================================================
# CLOSED TRADE STATISTICS
# =============================================================================

@dataclass(frozen=True)
class WinRateStats:
    """
    Attributes:
        win_rate: successful / total × 100 (0 without trades)
        successful: Trades with realized P&L > 0
        failed: Every other trade (break-even counts as failed)
    """
    win_rate: Decimal
    total: int
    successful: int
    failed: int


@dataclass(frozen=True)
class PeriodRealized:
    """
    Realized P&L for fixed periods ending at the report date.

    Attributes:
        month_to_date: Sales since the first day of the report month
        last_three_months: Sales since the first day of the month two months back
        year_to_date: Sales since January 1st
        since_inception: Every sale up to the report date
    """
    month_to_date: Decimal
    last_three_months: Decimal
    year_to_date: Decimal
    since_inception: Decimal


# =============================================================================
# REPORT GENERATION RESULTS
# =============================================================================

@dataclass(frozen=True)
class ReportFailure:
    owner_id: int
    portfolio_id: int
    reason: str


@dataclass
class ReportBatchResult:
    """Outcome of ReportAggregator.generate_all_reports()."""

    date: date
    created: int = 0
    updated: int = 0
    failures: list[ReportFailure] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return len(self.failures) == 0

    @property
    def generated(self) -> int:
        return self.created + self.updated
