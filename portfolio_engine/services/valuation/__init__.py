# portfolio_engine/services/valuation/__init__.py
"""
Valuation package: ledger replay, lot matching, prices and history.

Usage:
    from portfolio_engine.services.valuation import ValuationService

    service = ValuationService()
    positions = service.get_active_positions(db, owner_id=1, portfolio_id=1)
    history = service.get_history(db, owner_id=1, portfolio_id=1, days=90)

Architecture:
    valuation/
    ├── __init__.py                # This file - package exports
    ├── types.py                   # Internal data classes
    ├── position_aggregator.py     # Average-cost replay (rolling state)
    ├── closed_trades.py           # Cumulative FIFO matching
    ├── price_resolver.py          # DailyPrice cache, backfill, minor units
    ├── history_reconstructor.py   # Business-day time series
    └── service.py                 # ValuationService (read façade)

Data Flow:
    Operations → PositionAggregator → Positions (average cost)
    Operations → ClosedTradeMatcher → ClosedTrades (FIFO)
    Position + date → PriceResolver → ResolvedPrice (close, EUR rate)
    Operations + DailyPrice cache → HistoryReconstructor → PortfolioHistory
"""

from portfolio_engine.services.valuation.closed_trades import ClosedTradeMatcher
from portfolio_engine.services.valuation.history_reconstructor import HistoryReconstructor
from portfolio_engine.services.valuation.position_aggregator import PositionAggregator
from portfolio_engine.services.valuation.price_resolver import BackfillResult, PriceResolver
from portfolio_engine.services.valuation.service import ValuationService
from portfolio_engine.services.valuation.types import (
    AggregationResult,
    ClosedTrade,
    HistoryPoint,
    LotMatch,
    MatchResult,
    PortfolioHistory,
    PortfolioSnapshot,
    Position,
    PositionSnapshot,
    PositionState,
    PurchaseLot,
    ResolvedPrice,
    make_position_key,
    split_position_key,
)

__all__ = [
    # Main service
    "ValuationService",
    # Components (for testing / direct usage)
    "PositionAggregator",
    "ClosedTradeMatcher",
    "PriceResolver",
    "BackfillResult",
    "HistoryReconstructor",
    # Types
    "AggregationResult",
    "ClosedTrade",
    "HistoryPoint",
    "LotMatch",
    "MatchResult",
    "PortfolioHistory",
    "PortfolioSnapshot",
    "Position",
    "PositionSnapshot",
    "PositionState",
    "PurchaseLot",
    "ResolvedPrice",
    "make_position_key",
    "split_position_key",
]
