# portfolio_engine/services/valuation/closed_trades.py
"""
FIFO matching of sales against purchase lots.

Each sale consumes the oldest remaining quantity of the position's lots.
Lot remainders are carried across every sale of the position, so a lot
consumed by one sale is not available to the next.

Per sale:
    matched_cost  = Σ consumed × (lot.total_cost / lot.shares)
    net_proceeds  = shares × price × fx − commission × fx
    realized_pnl  = net_proceeds − matched_cost
    realized_%    = realized_pnl / matched_cost × 100   (0 if no cost)
    avg purchase  = shares-weighted mean of the consumed lots' dates

Post-condition: Σ remaining lot shares == open shares from the average-cost
replay for the same position.
"""

import logging
from collections.abc import Iterable
from datetime import datetime, timedelta
from decimal import Decimal

from portfolio_engine.models import OperationType
from portfolio_engine.services.constants import (
    ACTIVE_SHARES_EPSILON,
    CURRENCY_PRECISION,
    DISPLAY_PERCENTAGE_PRECISION,
    ZERO,
)
from portfolio_engine.services.exceptions import LedgerIntegrityViolation
from portfolio_engine.services.protocols import LedgerEntry
from portfolio_engine.services.valuation.position_aggregator import PositionAggregator
from portfolio_engine.services.valuation.types import (
    ClosedTrade,
    LotMatch,
    MatchResult,
    PurchaseLot,
    make_position_key,
)

logger = logging.getLogger(__name__)


class ClosedTradeMatcher:
    """Stateless FIFO matcher over a portfolio's ledger."""

    def match(self, operations: Iterable[LedgerEntry]) -> MatchResult:
        """
        Match every sale in the ledger against its position's lots.

        Operations of all positions may be mixed; they are grouped by
        position key and replayed chronologically (timestamp, id).

        Raises:
            LedgerIntegrityViolation: If a sale exceeds the remaining lots
        """
        lots: dict[str, list[PurchaseLot]] = {}
        trades: list[ClosedTrade] = []

        for operation in PositionAggregator.sort_operations(operations):
            key = make_position_key(operation.company, operation.symbol)
            position_lots = lots.setdefault(key, [])

            if OperationType(operation.operation_type) == OperationType.PURCHASE:
                position_lots.append(PurchaseLot(
                    operation_id=operation.id,
                    purchase_date=operation.date,
                    shares=operation.shares,
                    total_cost=operation.total_cost or ZERO,
                    remaining=operation.shares,
                ))
                continue

            trades.append(self._match_sale(key, operation, position_lots))

        open_lots = {
            key: [lot for lot in position_lots if lot.remaining > ACTIVE_SHARES_EPSILON]
            for key, position_lots in lots.items()
        }
        return MatchResult(
            trades=trades,
            open_lots={key: value for key, value in open_lots.items() if value},
        )

    def _match_sale(
            self,
            position_key: str,
            sale: LedgerEntry,
            lots: list[PurchaseLot],
    ) -> ClosedTrade:
        """Consume lots for one sale (mutates lot remainders)."""
        to_match = sale.shares
        matches: list[LotMatch] = []

        for lot in lots:
            if to_match <= ZERO:
                break
            if lot.remaining <= ZERO:
                continue

            consumed = min(lot.remaining, to_match)
            lot.remaining -= consumed
            to_match -= consumed
            matches.append(LotMatch(
                lot_operation_id=lot.operation_id,
                purchase_date=lot.purchase_date,
                shares=consumed,
                unit_cost=lot.unit_cost,
            ))

        if to_match > ACTIVE_SHARES_EPSILON:
            logger.error(
                f"Sale {sale.id} of {position_key} exceeds open lots by {to_match} shares"
            )
            raise LedgerIntegrityViolation(position_key, -to_match, sale.id)

        fx = sale.exchange_rate or Decimal("1")
        commission = sale.commission or ZERO
        matched_cost = sum((m.cost for m in matches), ZERO)
        net_proceeds = sale.shares * sale.price * fx - commission * fx
        realized = net_proceeds - matched_cost

        if matched_cost > ZERO:
            realized_percent = (realized / matched_cost * 100).quantize(DISPLAY_PERCENTAGE_PRECISION)
        else:
            realized_percent = ZERO

        return ClosedTrade(
            sale_operation_id=sale.id,
            position_key=position_key,
            company=sale.company,
            symbol=sale.symbol or "",
            sale_date=sale.date,
            shares=sale.shares,
            sale_price=sale.price,
            currency=sale.currency,
            exchange_rate=fx,
            commission=commission,
            matched_cost=matched_cost.quantize(CURRENCY_PRECISION),
            net_proceeds=net_proceeds.quantize(CURRENCY_PRECISION),
            realized_pnl=realized.quantize(CURRENCY_PRECISION),
            realized_pnl_percent=realized_percent,
            average_purchase_date=self._weighted_purchase_date(matches),
            matches=tuple(matches),
        )

    @staticmethod
    def _weighted_purchase_date(matches: list[LotMatch]) -> datetime | None:
        """Mean of lot dates weighted by shares consumed from each lot."""
        total_shares = sum((m.shares for m in matches), ZERO)
        if not matches or total_shares <= ZERO:
            return None

        reference = matches[0].purchase_date
        weighted_seconds = sum(
            (m.shares * Decimal(str((m.purchase_date - reference).total_seconds())) for m in matches),
            ZERO,
        )
        offset = float(weighted_seconds / total_shares)
        return reference + timedelta(seconds=round(offset))
