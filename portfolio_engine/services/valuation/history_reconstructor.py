# portfolio_engine/services/valuation/history_reconstructor.py
"""
On-demand daily time series of portfolio value and P&L.

Pure read: the ledger and the cached DailyPrice rows are the only inputs,
nothing is written. Safe to run concurrently with the snapshot job.

Per business day in [today − days, today]:
    total_invested = Σ purchase outflow − Σ sale inflow   (net injected capital)
    cost_basis     = Σ average-cost basis of held shares
    realized_pnl   = Σ average-cost realized gain
    total_value    = Σ close × rate × shares               (EUR)
    pnl            = total_value − total_invested

Net injected capital and cost basis diverge as soon as any position has
realized a gain or loss; at every point:

    cost_basis − total_invested == realized_pnl

Missing closes are carried forward from the position's last known
(close, rate). A held position with no price at all marks the point
incomplete and contributes zero value.

Performance:
    One ledger query, two price queries, one replay across the window.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import Decimal

from sqlalchemy import select, func, and_
from sqlalchemy.orm import Session

from portfolio_engine.models import DailyPrice, Operation
from portfolio_engine.services.constants import (
    ACTIVE_SHARES_EPSILON,
    CURRENCY_PRECISION,
    MAX_HISTORY_DAYS,
    ZERO,
)
from portfolio_engine.services.exceptions import ValidationError
from portfolio_engine.services.valuation.position_aggregator import PositionAggregator
from portfolio_engine.services.valuation.types import (
    HistoryPoint,
    PortfolioHistory,
    PositionState,
)
from portfolio_engine.utils.date_utils import get_business_days

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _PricePoint:
    date: date
    close: Decimal
    rate: Decimal


class HistoryReconstructor:
    """
    Rebuilds daily valuation history from the ledger and price cache.

    Attributes:
        _aggregator: Ledger replay used for the rolling position state
    """

    def __init__(self, aggregator: PositionAggregator | None = None) -> None:
        self._aggregator = aggregator or PositionAggregator()

    def get_history(
            self,
            db: Session,
            owner_id: int,
            portfolio_id: int,
            days: int,
            today: date | None = None,
    ) -> PortfolioHistory:
        """
        Daily history over the last `days` calendar days, business days only.

        Args:
            days: Window length in calendar days (1 to MAX_HISTORY_DAYS)
            today: Window end, defaults to the current date

        Returns:
            PortfolioHistory; empty when the portfolio has no ledger entries

        Raises:
            ValidationError: If days is out of range
            LedgerIntegrityViolation: If the replay goes negative
        """
        if days < 1 or days > MAX_HISTORY_DAYS:
            raise ValidationError(f"days must be between 1 and {MAX_HISTORY_DAYS}", field="days")

        end_date = today or date.today()
        start_date = end_date - timedelta(days=days)
        history = PortfolioHistory(
            owner_id=owner_id,
            portfolio_id=portfolio_id,
            start_date=start_date,
            end_date=end_date,
        )

        operations = self._load_operations(db, owner_id, portfolio_id, end_date)
        if not operations:
            logger.debug(f"No ledger entries for owner={owner_id} portfolio={portfolio_id}")
            return history

        prices = self._load_prices(db, owner_id, portfolio_id, start_date, end_date)

        state: dict[str, PositionState] = {}
        last_known: dict[str, _PricePoint] = {}
        cursors: dict[str, int] = {}
        missing_warned: set[str] = set()
        op_index = 0

        for day in get_business_days(start_date, end_date):
            while op_index < len(operations) and operations[op_index].date.date() <= day:
                self._aggregator.apply_operation(state, operations[op_index])
                op_index += 1

            total_value = ZERO
            complete = True
            stale: list[str] = []

            for key, position in state.items():
                if position.shares <= ACTIVE_SHARES_EPSILON:
                    continue

                price = self._price_as_of(key, day, prices, cursors, last_known)
                if price is None:
                    complete = False
                    if key not in missing_warned:
                        missing_warned.add(key)
                        history.warnings.append(f"No price available for {key} on or before {day}")
                    continue

                if price.date != day:
                    stale.append(key)
                total_value += price.close * price.rate * position.shares

            total_invested = sum((s.net_invested for s in state.values()), ZERO)
            cost_basis = sum((s.cost_basis for s in state.values()), ZERO)
            realized = sum((s.realized_pnl for s in state.values()), ZERO)

            history.points.append(HistoryPoint(
                date=day,
                total_invested=total_invested.quantize(CURRENCY_PRECISION),
                cost_basis=cost_basis.quantize(CURRENCY_PRECISION),
                realized_pnl=realized.quantize(CURRENCY_PRECISION),
                total_value=total_value.quantize(CURRENCY_PRECISION),
                pnl=(total_value - total_invested).quantize(CURRENCY_PRECISION),
                has_complete_data=complete,
                stale_positions=tuple(sorted(stale)),
            ))

        logger.debug(
            f"History for owner={owner_id} portfolio={portfolio_id}: "
            f"{len(history.points)} points, {len(history.warnings)} warnings"
        )
        return history

    # =========================================================================
    # PRIVATE METHODS
    # =========================================================================

    @staticmethod
    def _price_as_of(
            key: str,
            day: date,
            prices: dict[str, list[_PricePoint]],
            cursors: dict[str, int],
            last_known: dict[str, _PricePoint],
    ) -> _PricePoint | None:
        """Advance the position's cursor to `day`; returns the latest close at or before it."""
        series = prices.get(key, [])
        index = cursors.get(key, 0)
        while index < len(series) and series[index].date <= day:
            last_known[key] = series[index]
            index += 1
        cursors[key] = index
        return last_known.get(key)

    @staticmethod
    def _load_operations(
            db: Session,
            owner_id: int,
            portfolio_id: int,
            end_date: date,
    ) -> list[Operation]:
        cutoff = datetime.combine(end_date + timedelta(days=1), time.min)
        operations = db.scalars(
            select(Operation).where(
                Operation.user_id == owner_id,
                Operation.portfolio_id == portfolio_id,
                Operation.date < cutoff,
            )
        ).all()
        return PositionAggregator.sort_operations(operations)

    @staticmethod
    def _load_prices(
            db: Session,
            owner_id: int,
            portfolio_id: int,
            start_date: date,
            end_date: date,
    ) -> dict[str, list[_PricePoint]]:
        """
        Cached closes per position: every row in the window, plus the last
        row before it so carry-forward works from the first day.
        """
        owner_filter = and_(
            DailyPrice.user_id == owner_id,
            DailyPrice.portfolio_id == portfolio_id,
        )

        latest_before = (
            select(DailyPrice.position_key, func.max(DailyPrice.date).label("max_date"))
            .where(owner_filter, DailyPrice.date < start_date)
            .group_by(DailyPrice.position_key)
            .subquery()
        )
        seed_rows = db.scalars(
            select(DailyPrice)
            .join(
                latest_before,
                and_(
                    DailyPrice.position_key == latest_before.c.position_key,
                    DailyPrice.date == latest_before.c.max_date,
                ),
            )
            .where(owner_filter)
        ).all()

        window_rows = db.scalars(
            select(DailyPrice)
            .where(owner_filter, DailyPrice.date >= start_date, DailyPrice.date <= end_date)
            .order_by(DailyPrice.date)
        ).all()

        prices: dict[str, list[_PricePoint]] = {}
        for row in [*seed_rows, *window_rows]:
            prices.setdefault(row.position_key, []).append(_PricePoint(
                date=row.date,
                close=row.close,
                rate=row.exchange_rate if row.exchange_rate is not None else Decimal("1"),
            ))

        for series in prices.values():
            series.sort(key=lambda p: p.date)

        return prices
