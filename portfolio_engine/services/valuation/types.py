# portfolio_engine/services/valuation/types.py
"""
Internal data types for ledger replay, lot matching and valuation.

These are plain dataclasses, not ORM models: positions and closed trades
are always recomputed from the ledger and never stored.

Design Principles:
- Immutable where possible (frozen=True for value objects)
- Use Decimal for ALL financial values (never float)
- Use date (not datetime) for valuation dates
- Optional fields use None, not sentinel values

Type Hierarchy:
    PositionState       - Mutable rolling state for one position during replay
    Position            - Active position (average-cost basis)
    AggregationResult   - Output of PositionAggregator
    PurchaseLot         - FIFO lot with remaining quantity
    LotMatch            - Part of a sale matched against one lot
    ClosedTrade         - Sale enriched with matched cost and realized P&L
    MatchResult         - Output of ClosedTradeMatcher
    ResolvedPrice       - Close + EUR rate for one position/date
    HistoryPoint        - Single point in the reconstructed time series
    PortfolioHistory    - Time series result
    PositionSnapshot    - Stored per-position daily valuation (read model)
    PortfolioSnapshot   - Stored portfolio daily valuation (read model)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from portfolio_engine.services.constants import (
    POSITION_KEY_SEPARATOR,
    SHARE_PRECISION,
    ZERO,
)

if TYPE_CHECKING:
    from portfolio_engine.models import DailyPortfolioStats, DailyPositionSnapshot


def make_position_key(company: str, symbol: str | None) -> str:
    """Position identifier: "company|||symbol"."""
    return f"{company}{POSITION_KEY_SEPARATOR}{symbol or ''}"


def split_position_key(position_key: str) -> tuple[str, str]:
    """Inverse of make_position_key()."""
    company, _, symbol = position_key.partition(POSITION_KEY_SEPARATOR)
    return company, symbol


# =============================================================================
# POSITIONS (AVERAGE COST)
# =============================================================================

@dataclass
class PositionState:
    """
    Rolling replay state for one position identifier.

    Attributes:
        company / symbol: Instrument identity
        currency: Trading currency of the last operation seen
        shares: Shares currently held
        cost_basis: Average-cost basis of held shares (EUR)
        realized_pnl: Realized gain under the average-cost method (EUR)
        invested: Cumulative purchase outflow (EUR)
        withdrawn: Cumulative sale inflow (EUR)
        sale_count: Number of sale operations applied
    """

    company: str
    symbol: str
    currency: str = "EUR"
    shares: Decimal = ZERO
    cost_basis: Decimal = ZERO
    realized_pnl: Decimal = ZERO
    invested: Decimal = ZERO
    withdrawn: Decimal = ZERO
    sale_count: int = 0

    @property
    def position_key(self) -> str:
        return make_position_key(self.company, self.symbol)

    @property
    def net_invested(self) -> Decimal:
        """Net injected capital: purchase outflow minus sale inflow."""
        return self.invested - self.withdrawn


@dataclass(frozen=True)
class Position:
    """
    One active position, derived from the ledger.

    Attributes:
        position_key: "company|||symbol"
        shares: Shares held (> epsilon)
        cost_basis: Average-cost basis of held shares (EUR)
        realized_pnl: Average-cost realized gain so far (EUR)
    """

    position_key: str
    company: str
    symbol: str
    shares: Decimal
    cost_basis: Decimal
    currency: str
    realized_pnl: Decimal = ZERO

    @property
    def avg_cost(self) -> Decimal:
        """Average cost per held share (EUR)."""
        if self.shares == ZERO:
            return ZERO
        return (self.cost_basis / self.shares).quantize(SHARE_PRECISION)


@dataclass
class AggregationResult:
    """
    Output of PositionAggregator.calculate().

    Attributes:
        positions: Active positions, sorted by position key
        closed_position_keys: Positions fully sold (derivable, not active)
        closed_operations_count: Number of sale operations replayed
    """

    positions: list[Position] = field(default_factory=list)
    closed_position_keys: list[str] = field(default_factory=list)
    closed_operations_count: int = 0

    @property
    def total_cost_basis(self) -> Decimal:
        return sum((p.cost_basis for p in self.positions), ZERO)

    def get(self, position_key: str) -> Position | None:
        for position in self.positions:
            if position.position_key == position_key:
                return position
        return None


# =============================================================================
# FIFO LOTS & CLOSED TRADES
# =============================================================================

@dataclass
class PurchaseLot:
    """
    A purchase operation as a FIFO lot.

    `remaining` is shared state across every sale of the position.
    """

    operation_id: int
    purchase_date: datetime
    shares: Decimal
    total_cost: Decimal
    remaining: Decimal

    @property
    def unit_cost(self) -> Decimal:
        if self.shares == ZERO:
            return ZERO
        return self.total_cost / self.shares


@dataclass(frozen=True)
class LotMatch:
    """Shares of one sale consumed from one lot."""

    lot_operation_id: int
    purchase_date: datetime
    shares: Decimal
    unit_cost: Decimal

    @property
    def cost(self) -> Decimal:
        return self.shares * self.unit_cost


@dataclass(frozen=True)
class ClosedTrade:
    """
    A sale enriched with its FIFO-matched purchase cost.

    Attributes:
        matched_cost: Cost of the lots consumed (EUR)
        net_proceeds: shares × price × fx − commission × fx (EUR)
        realized_pnl: net_proceeds − matched_cost
        realized_pnl_percent: realized_pnl / matched_cost × 100 (0 if no cost)
        average_purchase_date: Shares-weighted mean of consumed lot dates
        matches: Per-lot breakdown
    """

    sale_operation_id: int
    position_key: str
    company: str
    symbol: str
    sale_date: datetime
    shares: Decimal
    sale_price: Decimal
    currency: str
    exchange_rate: Decimal
    commission: Decimal
    matched_cost: Decimal
    net_proceeds: Decimal
    realized_pnl: Decimal
    realized_pnl_percent: Decimal
    average_purchase_date: datetime | None
    matches: tuple[LotMatch, ...] = ()

    @property
    def is_win(self) -> bool:
        return self.realized_pnl > ZERO

    @property
    def holding_days(self) -> int | None:
        if self.average_purchase_date is None:
            return None
        return (self.sale_date - self.average_purchase_date).days


@dataclass
class MatchResult:
    """
    Output of ClosedTradeMatcher.match().

    Attributes:
        trades: Closed trades in chronological sale order
        open_lots: Unconsumed lots per position key (remaining > 0)
    """

    trades: list[ClosedTrade] = field(default_factory=list)
    open_lots: dict[str, list[PurchaseLot]] = field(default_factory=dict)

    def remaining_shares(self, position_key: str) -> Decimal:
        return sum((lot.remaining for lot in self.open_lots.get(position_key, [])), ZERO)

    def remaining_cost(self, position_key: str) -> Decimal:
        """FIFO cost of the unconsumed quantity."""
        return sum(
            (lot.remaining * lot.unit_cost for lot in self.open_lots.get(position_key, [])),
            ZERO,
        )

    @property
    def total_realized_pnl(self) -> Decimal:
        return sum((t.realized_pnl for t in self.trades), ZERO)


# =============================================================================
# PRICES
# =============================================================================

@dataclass(frozen=True)
class ResolvedPrice:
    """
    Close price for a position on a date, with its EUR conversion.

    Attributes:
        close: Close in the quoted unit (may be pence for GBp listings)
        currency: Nominal currency of `close` as stored ("GBp" stays "GBp")
        fx_rate_to_eur: Multiplier from one quoted unit to EUR, minor-unit
            factor already applied (GBp → EUR ≈ 0.0086)
        source: Provider tag ("yahoo", "cache" lineage kept from the row)
        price_date: Date of the candle actually used
        cached: True when served from DailyPrice without a provider call
    """

    close: Decimal
    currency: str
    fx_rate_to_eur: Decimal
    source: str
    price_date: date
    cached: bool = False

    @property
    def eur_close(self) -> Decimal:
        return self.close * self.fx_rate_to_eur


# =============================================================================
# HISTORY
# =============================================================================

@dataclass(frozen=True)
class HistoryPoint:
    """
    One business day of reconstructed portfolio history.

    Attributes:
        total_invested: Net injected capital (purchase outflow − sale inflow)
        cost_basis: Average-cost basis of held shares
        realized_pnl: Average-cost realized gain to date
            (cost_basis − total_invested == realized_pnl)
        total_value: Σ close × rate × shares in EUR
        pnl: total_value − total_invested
        has_complete_data: False if any held position had no price at all
        stale_positions: Positions valued with a carried-forward close
    """

    date: date
    total_invested: Decimal
    cost_basis: Decimal
    realized_pnl: Decimal
    total_value: Decimal
    pnl: Decimal
    has_complete_data: bool = True
    stale_positions: tuple[str, ...] = ()


@dataclass
class PortfolioHistory:
    """Time series result of HistoryReconstructor.get_history()."""

    owner_id: int
    portfolio_id: int
    start_date: date
    end_date: date
    points: list[HistoryPoint] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.points

    @property
    def latest(self) -> HistoryPoint | None:
        return self.points[-1] if self.points else None


# =============================================================================
# SNAPSHOT READ MODELS
# =============================================================================

@dataclass(frozen=True)
class PositionSnapshot:
    """Stored per-position valuation for one date."""

    position_key: str
    company: str
    symbol: str
    shares: Decimal
    avg_cost: Decimal
    total_invested: Decimal
    current_price: Decimal
    total_value: Decimal
    pnl: Decimal
    pnl_percent: Decimal
    currency: str
    exchange_rate: Decimal

    @classmethod
    def from_row(cls, row: DailyPositionSnapshot) -> PositionSnapshot:
        return cls(
            position_key=row.position_key,
            company=row.company,
            symbol=row.symbol,
            shares=row.shares,
            avg_cost=row.avg_cost,
            total_invested=row.total_invested,
            current_price=row.current_price,
            total_value=row.total_value,
            pnl=row.pnl,
            pnl_percent=row.pnl_percent,
            currency=row.currency,
            exchange_rate=row.exchange_rate,
        )


@dataclass(frozen=True)
class PortfolioSnapshot:
    """Stored portfolio valuation for one date, with its positions."""

    owner_id: int
    portfolio_id: int
    date: date
    total_invested: Decimal
    total_value: Decimal
    pnl: Decimal
    roi: Decimal
    daily_change: Decimal | None
    daily_change_percent: Decimal | None
    active_positions_count: int
    closed_operations_count: int
    positions: tuple[PositionSnapshot, ...] = ()

    @classmethod
    def from_rows(
            cls,
            stats: DailyPortfolioStats,
            positions: list[DailyPositionSnapshot],
    ) -> PortfolioSnapshot:
        return cls(
            owner_id=stats.user_id,
            portfolio_id=stats.portfolio_id,
            date=stats.date,
            total_invested=stats.total_invested_eur,
            total_value=stats.total_value_eur,
            pnl=stats.pnl_eur,
            roi=stats.roi,
            daily_change=stats.daily_change_eur,
            daily_change_percent=stats.daily_change_percent,
            active_positions_count=stats.active_positions_count,
            closed_operations_count=stats.closed_operations_count,
            positions=tuple(
                PositionSnapshot.from_row(row)
                for row in sorted(positions, key=lambda r: r.position_key)
            ),
        )
