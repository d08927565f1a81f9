# portfolio_engine/services/reports/aggregator.py
"""
Report metrics over reconstructed history and closed trades.

Pure functions:
    monthly_pnl            Month-end P&L level per month (current month excluded)
    best_worst_month       Highest / lowest month-end level
    realized_by_month      Σ realized FIFO P&L per sale month
    drawdown_series        % drop from the running P&L peak, plus the max
    concentration_index    Herfindahl index over position values (0-10000)
    win_rate               Share of closed trades with a gain
    average_holding_days   Mean holding period of closed trades
    realized_for_periods   Realized P&L month-to-date, 3 months, YTD, inception

Formulas:
    drawdown = (pnl − peak) / peak × 100      (peak starts at 0; 0 while peak ≤ 0)

    HHI = Σ (value_i / Σ value × 100)²        (one position → 10000)

ReportAggregator persists one PortfolioReport per portfolio and date. It is
the default report hook of the daily snapshot job; reads are pure and the
only write is the report upsert.
"""

import logging
from collections.abc import Iterable, Sequence
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from portfolio_engine.models import (
    DailyPortfolioStats,
    DailyPositionSnapshot,
    Operation,
    PortfolioReport,
)
from portfolio_engine.schemas.reports import (
    DrawdownEntry,
    MonthExtreme,
    MonthlyPnLEntry,
    MonthlyRealizedEntry,
    PortfolioReportData,
    RealizedPeriods,
)
from portfolio_engine.services.constants import (
    CURRENCY_PRECISION,
    DAILY_REPORT_TYPE,
    DISPLAY_PERCENTAGE_PRECISION,
    REPORT_HISTORY_DAYS,
    ZERO,
)
from portfolio_engine.services.protocols import HistoryProviderProtocol
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
from portfolio_engine.services.valuation.closed_trades import ClosedTradeMatcher
from portfolio_engine.services.valuation.history_reconstructor import HistoryReconstructor
from portfolio_engine.services.valuation.types import ClosedTrade, HistoryPoint
from portfolio_engine.utils.context import correlation_scope
from portfolio_engine.utils.date_utils import month_key, shift_months

logger = logging.getLogger(__name__)


# =============================================================================
# MONTHLY ROLLUPS
# =============================================================================

def monthly_pnl(history: Sequence[HistoryPoint], today: date) -> list[MonthlyPnL]:
    """
    Month-end P&L level for every month in the history.

    The last point of each month is used. The month containing `today`
    is excluded since it has not ended yet.

    Returns:
        MonthlyPnL list sorted by month
    """
    current_month = month_key(today)
    last_points: dict[str, HistoryPoint] = {}

    for point in sorted(history, key=lambda p: p.date):
        key = month_key(point.date)
        if key != current_month:
            last_points[key] = point

    results: list[MonthlyPnL] = []
    previous_gain: Decimal | None = None
    for key in sorted(last_points):
        point = last_points[key]
        results.append(MonthlyPnL(
            month=key,
            gain=point.pnl,
            delta=point.pnl - previous_gain if previous_gain is not None else None,
            total_value=point.total_value,
            date=point.date,
        ))
        previous_gain = point.pnl

    return results


def best_worst_month(
        months: Sequence[MonthlyPnL],
) -> tuple[MonthlyPnL | None, MonthlyPnL | None]:
    """Months with the highest and lowest month-end P&L level (first wins on ties)."""
    if not months:
        return None, None

    best = months[0]
    worst = months[0]
    for month in months[1:]:
        if month.gain > best.gain:
            best = month
        if month.gain < worst.gain:
            worst = month
    return best, worst


def realized_by_month(trades: Iterable[ClosedTrade]) -> list[MonthlyRealized]:
    """Σ realized P&L of closed trades grouped by sale month, sorted by month."""
    totals: dict[str, Decimal] = {}
    counts: dict[str, int] = {}

    for trade in trades:
        key = month_key(trade.sale_date.date())
        totals[key] = totals.get(key, ZERO) + trade.realized_pnl
        counts[key] = counts.get(key, 0) + 1

    return [
        MonthlyRealized(month=key, realized_pnl=totals[key], trades=counts[key])
        for key in sorted(totals)
    ]


# =============================================================================
# DRAWDOWN & CONCENTRATION
# =============================================================================

def drawdown_series(history: Sequence[HistoryPoint]) -> DrawdownSummary:
    """
    Drawdown of the P&L curve from its running peak.

    The peak starts at zero, so a portfolio that never made a profit has
    no drawdown.
    """
    summary = DrawdownSummary()
    peak = ZERO

    for point in sorted(history, key=lambda p: p.date):
        if point.pnl > peak:
            peak = point.pnl

        if peak > ZERO:
            drawdown = ((point.pnl - peak) / peak * 100).quantize(DISPLAY_PERCENTAGE_PRECISION)
        else:
            drawdown = ZERO

        if drawdown < summary.max_drawdown:
            summary.max_drawdown = drawdown
            summary.max_drawdown_date = point.date

        summary.points.append(DrawdownPoint(date=point.date, pnl=point.pnl, drawdown=drawdown))

    return summary


def concentration_index(values: Iterable[Decimal]) -> Decimal:
    """
    Herfindahl-Hirschman index over position market values.

    Returns:
        0 for an empty or zero-valued portfolio, 10000 for a single position
    """
    positive = [v for v in values if v is not None and v > ZERO]
    total = sum(positive, ZERO)
    if total <= ZERO:
        return ZERO

    hhi = sum(((v / total * 100) ** 2 for v in positive), ZERO)
    return hhi.quantize(CURRENCY_PRECISION)


# =============================================================================
# CLOSED TRADE STATISTICS
# =============================================================================

def win_rate(trades: Sequence[ClosedTrade]) -> WinRateStats:
    if not trades:
        return WinRateStats(win_rate=ZERO, total=0, successful=0, failed=0)

    successful = sum(1 for t in trades if t.is_win)
    total = len(trades)
    return WinRateStats(
        win_rate=(Decimal(successful) / Decimal(total) * 100).quantize(DISPLAY_PERCENTAGE_PRECISION),
        total=total,
        successful=successful,
        failed=total - successful,
    )


def average_holding_days(trades: Iterable[ClosedTrade]) -> Decimal | None:
    """Mean days between the weighted purchase date and the sale."""
    days = [t.holding_days for t in trades if t.holding_days is not None]
    if not days:
        return None
    return (Decimal(sum(days)) / Decimal(len(days))).quantize(DISPLAY_PERCENTAGE_PRECISION)


def realized_for_periods(trades: Iterable[ClosedTrade], as_of: date) -> PeriodRealized:
    """Realized P&L of sales up to `as_of`, split into fixed look-back periods."""
    month_start = as_of.replace(day=1)
    three_months_start = shift_months(as_of, -2)
    year_start = date(as_of.year, 1, 1)

    month_to_date = ZERO
    last_three_months = ZERO
    year_to_date = ZERO
    since_inception = ZERO

    for trade in trades:
        sale_day = trade.sale_date.date()
        if sale_day > as_of:
            continue

        since_inception += trade.realized_pnl
        if sale_day >= month_start:
            month_to_date += trade.realized_pnl
        if sale_day >= three_months_start:
            last_three_months += trade.realized_pnl
        if sale_day >= year_start:
            year_to_date += trade.realized_pnl

    return PeriodRealized(
        month_to_date=month_to_date,
        last_three_months=last_three_months,
        year_to_date=year_to_date,
        since_inception=since_inception,
    )


# =============================================================================
# REPORT AGGREGATOR
# =============================================================================

class ReportAggregator:
    """
    Builds and stores the daily report of each snapshotted portfolio.

    Attributes:
        _history: Source of the P&L time series
        _matcher: FIFO matcher for closed trades
        _history_days: Length of the history window used per report
    """

    def __init__(
            self,
            history_provider: HistoryProviderProtocol | None = None,
            matcher: ClosedTradeMatcher | None = None,
            history_days: int = REPORT_HISTORY_DAYS,
    ) -> None:
        self._history = history_provider or HistoryReconstructor()
        self._matcher = matcher or ClosedTradeMatcher()
        self._history_days = history_days

    def generate_all_reports(self, db: Session, report_date: date) -> ReportBatchResult:
        """
        Generate reports for every portfolio with a snapshot on report_date.

        One failing portfolio does not stop the others.
        """
        result = ReportBatchResult(date=report_date)

        with correlation_scope("reports"):
            portfolios = db.execute(
                select(DailyPortfolioStats.user_id, DailyPortfolioStats.portfolio_id)
                .where(DailyPortfolioStats.date == report_date)
                .order_by(DailyPortfolioStats.user_id, DailyPortfolioStats.portfolio_id)
            ).all()

            for owner_id, portfolio_id in portfolios:
                try:
                    _, created = self.generate_daily_report(db, owner_id, portfolio_id, report_date)
                    if created:
                        result.created += 1
                    else:
                        result.updated += 1
                except Exception as e:
                    db.rollback()
                    logger.error(f"Report failed for portfolio {portfolio_id} (owner {owner_id}): {e}")
                    result.failures.append(ReportFailure(owner_id, portfolio_id, str(e)))

            logger.info(
                f"Reports for {report_date}: created={result.created}, "
                f"updated={result.updated}, failed={len(result.failures)}"
            )

        return result

    def generate_daily_report(
            self,
            db: Session,
            owner_id: int,
            portfolio_id: int,
            report_date: date,
    ) -> tuple[PortfolioReport, bool]:
        """
        Build the report data and upsert the PortfolioReport row.

        Returns:
            Tuple of (report row, True if it was created)
        """
        data = self.build_report_data(db, owner_id, portfolio_id, report_date)

        report = db.scalar(
            select(PortfolioReport).where(
                PortfolioReport.user_id == owner_id,
                PortfolioReport.portfolio_id == portfolio_id,
                PortfolioReport.date == report_date,
                PortfolioReport.report_type == DAILY_REPORT_TYPE,
            )
        )
        created = report is None
        if created:
            report = PortfolioReport(
                user_id=owner_id,
                portfolio_id=portfolio_id,
                date=report_date,
                report_type=DAILY_REPORT_TYPE,
                data=data,
            )
            db.add(report)
        else:
            report.data = data

        db.commit()
        logger.debug(f"Report {'created' if created else 'updated'} for portfolio {portfolio_id} on {report_date}")
        return report, created

    def build_report_data(
            self,
            db: Session,
            owner_id: int,
            portfolio_id: int,
            report_date: date,
    ) -> dict[str, Any]:
        """Report payload as stored: PortfolioReportData in JSON mode."""
        history = self._history.get_history(
            db, owner_id, portfolio_id, self._history_days, today=report_date
        )
        trades = self._closed_trades(db, owner_id, portfolio_id, report_date)

        stats = db.scalar(
            select(DailyPortfolioStats).where(
                DailyPortfolioStats.user_id == owner_id,
                DailyPortfolioStats.portfolio_id == portfolio_id,
                DailyPortfolioStats.date == report_date,
            )
        )
        position_values = db.scalars(
            select(DailyPositionSnapshot.total_value).where(
                DailyPositionSnapshot.user_id == owner_id,
                DailyPositionSnapshot.portfolio_id == portfolio_id,
                DailyPositionSnapshot.date == report_date,
            )
        ).all()

        months = monthly_pnl(history.points, report_date)
        best, worst = best_worst_month(months)
        drawdown = drawdown_series(history.points)
        wins = win_rate(trades)
        periods = realized_for_periods(trades, report_date)

        report = PortfolioReportData(
            date=report_date,
            total_invested=stats.total_invested_eur if stats else None,
            total_value=stats.total_value_eur if stats else None,
            pnl=stats.pnl_eur if stats else None,
            roi=stats.roi if stats else None,
            daily_change=stats.daily_change_eur if stats else None,
            net_invested=history.latest.total_invested if history.latest else None,
            realized_pnl=sum((t.realized_pnl for t in trades), ZERO),
            win_rate=wins.win_rate,
            total_operations=wins.total,
            successful_operations=wins.successful,
            failed_operations=wins.failed,
            average_holding_days=average_holding_days(trades),
            monthly_pnl=[MonthlyPnLEntry.model_validate(m) for m in months],
            realized_by_month=[
                MonthlyRealizedEntry.model_validate(m) for m in realized_by_month(trades)
            ],
            best_month=MonthExtreme.model_validate(best) if best else None,
            worst_month=MonthExtreme.model_validate(worst) if worst else None,
            drawdown=[DrawdownEntry.model_validate(p) for p in drawdown.points],
            max_drawdown=drawdown.max_drawdown,
            max_drawdown_date=drawdown.max_drawdown_date,
            concentration_index=concentration_index(position_values),
            realized_periods=RealizedPeriods.model_validate(periods),
            warnings=list(history.warnings),
        )
        return report.model_dump(mode="json")

    def _closed_trades(
            self,
            db: Session,
            owner_id: int,
            portfolio_id: int,
            report_date: date,
    ) -> list[ClosedTrade]:
        cutoff = datetime.combine(report_date + timedelta(days=1), time.min)
        operations = db.scalars(
            select(Operation).where(
                Operation.user_id == owner_id,
                Operation.portfolio_id == portfolio_id,
                Operation.date < cutoff,
            )
        ).all()
        return self._matcher.match(operations).trades
