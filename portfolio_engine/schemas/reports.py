# portfolio_engine/schemas/reports.py
"""
Pydantic schemas for the stored daily portfolio report.

The report row keeps `PortfolioReportData.model_dump(mode="json")`:
Decimals become strings and dates ISO strings, so the payload survives a
JSON column unchanged.
"""

import datetime as dt
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# MONTHLY ROLLUPS
# =============================================================================

class MonthlyPnLEntry(BaseModel):
    """Month-end P&L level."""

    model_config = ConfigDict(from_attributes=True)

    month: str = Field(..., description="YYYY-MM")
    gain: Decimal = Field(..., description="Absolute P&L level at month end")
    delta: Decimal | None = Field(None, description="Change vs the previous month")
    total_value: Decimal = Field(..., description="Portfolio value at month end")


class MonthlyRealizedEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    month: str
    realized_pnl: Decimal
    trades: int


class MonthExtreme(BaseModel):
    """Best or worst month by month-end level."""

    model_config = ConfigDict(from_attributes=True)

    month: str
    gain: Decimal


# =============================================================================
# DRAWDOWN / PERIODS
# =============================================================================

class DrawdownEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    date: dt.date
    pnl: Decimal
    drawdown: Decimal = Field(..., description="% below the running P&L peak (<= 0)")


class RealizedPeriods(BaseModel):
    """Realized FIFO P&L over fixed look-back periods."""

    model_config = ConfigDict(from_attributes=True)

    month_to_date: Decimal
    last_three_months: Decimal
    year_to_date: Decimal
    since_inception: Decimal


# =============================================================================
# REPORT
# =============================================================================

class PortfolioReportData(BaseModel):
    """
    Daily report payload for one portfolio.

    Stats-derived fields are None when no snapshot exists for the date.
    """

    date: dt.date = Field(..., description="Report date")

    # From the immutable daily stats row
    total_invested: Decimal | None = Field(None, description="Average-cost basis in EUR")
    total_value: Decimal | None = Field(None, description="Market value in EUR")
    pnl: Decimal | None = None
    roi: Decimal | None = Field(None, description="pnl / invested × 100")
    daily_change: Decimal | None = None

    # From the reconstructed history
    net_invested: Decimal | None = Field(None, description="Buys minus sale proceeds")

    # Closed trades
    realized_pnl: Decimal = Field(..., description="Σ realized FIFO P&L in EUR")
    win_rate: Decimal
    total_operations: int
    successful_operations: int
    failed_operations: int
    average_holding_days: Decimal | None = None

    monthly_pnl: list[MonthlyPnLEntry] = Field(default_factory=list)
    realized_by_month: list[MonthlyRealizedEntry] = Field(default_factory=list)
    best_month: MonthExtreme | None = None
    worst_month: MonthExtreme | None = None

    drawdown: list[DrawdownEntry] = Field(default_factory=list)
    max_drawdown: Decimal
    max_drawdown_date: dt.date | None = None

    concentration_index: Decimal = Field(..., description="Herfindahl index over position values")
    realized_periods: RealizedPeriods
    warnings: list[str] = Field(default_factory=list)
