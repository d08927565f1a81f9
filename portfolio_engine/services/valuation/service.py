# portfolio_engine/services/valuation/service.py
"""
Valuation Service - single entry point for the engine's read operations.

- get_active_positions(): Average-cost positions held as of a date
- get_closed_trades(): FIFO-matched sales with realized P&L
- get_history(): Daily value / P&L time series
- get_snapshot(): Stored daily valuation record

Design Principles:
- Composable: Delegates to PositionAggregator, ClosedTradeMatcher and
  HistoryReconstructor
- No HTTP Knowledge: Raises domain exceptions, not HTTP errors
- Pure reads: nothing here writes to the database

Usage:
    from portfolio_engine.services.valuation import ValuationService

    service = ValuationService()

    positions = service.get_active_positions(db, owner_id=1, portfolio_id=1)
    trades = service.get_closed_trades(db, owner_id=1, portfolio_id=1)
    history = service.get_history(db, owner_id=1, portfolio_id=1, days=90)
    snapshot = service.get_snapshot(db, owner_id=1, portfolio_id=1, on_date=date(2024, 3, 1))
"""

import logging
from datetime import date, datetime, time, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from portfolio_engine.models import (
    DailyPortfolioStats,
    DailyPositionSnapshot,
    Operation,
    Portfolio,
)
from portfolio_engine.services.exceptions import PortfolioNotFoundError
from portfolio_engine.services.valuation.closed_trades import ClosedTradeMatcher
from portfolio_engine.services.valuation.history_reconstructor import HistoryReconstructor
from portfolio_engine.services.valuation.position_aggregator import PositionAggregator
from portfolio_engine.services.valuation.types import (
    ClosedTrade,
    PortfolioHistory,
    PortfolioSnapshot,
    Position,
)

logger = logging.getLogger(__name__)


class ValuationService:
    """
    Read-side façade over the ledger, price cache and snapshots.

    Attributes:
        _aggregator: Average-cost ledger replay
        _matcher: FIFO closed-trade matcher
        _history: Time series reconstruction
    """

    def __init__(
            self,
            aggregator: PositionAggregator | None = None,
            matcher: ClosedTradeMatcher | None = None,
            history: HistoryReconstructor | None = None,
    ) -> None:
        self._aggregator = aggregator or PositionAggregator()
        self._matcher = matcher or ClosedTradeMatcher()
        self._history = history or HistoryReconstructor(self._aggregator)

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    def get_active_positions(
            self,
            db: Session,
            owner_id: int,
            portfolio_id: int,
            as_of: date | None = None,
    ) -> list[Position]:
        """
        Positions with shares > epsilon as of a date (default: all operations).

        Raises:
            PortfolioNotFoundError: If the portfolio does not belong to the owner
            LedgerIntegrityViolation: If the replay goes negative
        """
        self._get_portfolio(db, owner_id, portfolio_id)
        operations = self._fetch_operations(db, owner_id, portfolio_id, as_of)
        return self._aggregator.calculate(operations).positions

    def get_closed_trades(
            self,
            db: Session,
            owner_id: int,
            portfolio_id: int,
    ) -> list[ClosedTrade]:
        """
        Every sale matched FIFO against its purchase lots, in sale order.

        Raises:
            PortfolioNotFoundError: If the portfolio does not belong to the owner
            LedgerIntegrityViolation: If a sale exceeds the open lots
        """
        self._get_portfolio(db, owner_id, portfolio_id)
        operations = self._fetch_operations(db, owner_id, portfolio_id)
        return self._matcher.match(operations).trades

    def get_history(
            self,
            db: Session,
            owner_id: int,
            portfolio_id: int,
            days: int,
            today: date | None = None,
    ) -> PortfolioHistory:
        """
        Daily business-day history over the last `days` days.

        Raises:
            PortfolioNotFoundError: If the portfolio does not belong to the owner
            ValidationError: If days is out of range
        """
        self._get_portfolio(db, owner_id, portfolio_id)
        return self._history.get_history(db, owner_id, portfolio_id, days, today=today)

    def get_snapshot(
            self,
            db: Session,
            owner_id: int,
            portfolio_id: int,
            on_date: date,
    ) -> PortfolioSnapshot | None:
        """
        Stored valuation for a date, or None if the job has not produced one.

        Raises:
            PortfolioNotFoundError: If the portfolio does not belong to the owner
        """
        self._get_portfolio(db, owner_id, portfolio_id)

        stats = db.scalar(
            select(DailyPortfolioStats).where(
                DailyPortfolioStats.user_id == owner_id,
                DailyPortfolioStats.portfolio_id == portfolio_id,
                DailyPortfolioStats.date == on_date,
            )
        )
        if stats is None:
            return None

        positions = db.scalars(
            select(DailyPositionSnapshot).where(
                DailyPositionSnapshot.user_id == owner_id,
                DailyPositionSnapshot.portfolio_id == portfolio_id,
                DailyPositionSnapshot.date == on_date,
            )
        ).all()
        return PortfolioSnapshot.from_rows(stats, list(positions))

    # =========================================================================
    # PRIVATE METHODS
    # =========================================================================

    @staticmethod
    def _get_portfolio(db: Session, owner_id: int, portfolio_id: int) -> Portfolio:
        portfolio = db.get(Portfolio, portfolio_id)
        if portfolio is None or portfolio.user_id != owner_id:
            raise PortfolioNotFoundError(portfolio_id)
        return portfolio

    @staticmethod
    def _fetch_operations(
            db: Session,
            owner_id: int,
            portfolio_id: int,
            as_of: date | None = None,
    ) -> list[Operation]:
        query = select(Operation).where(
            Operation.user_id == owner_id,
            Operation.portfolio_id == portfolio_id,
        )
        if as_of is not None:
            query = query.where(Operation.date < datetime.combine(as_of + timedelta(days=1), time.min))
        return list(db.scalars(query).all())
