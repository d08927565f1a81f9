# portfolio_engine/services/valuation/position_aggregator.py
"""
Replays the operation ledger into average-cost positions.

Cost basis (average-cost method):
    purchase:  shares += n;  cost_basis += total_cost
    sale:      removed = cost_basis × sold / shares_before
               cost_basis -= removed;  shares -= sold
               realized += sale.total_cost − removed

Operations are replayed in (timestamp, id) order so same-timestamp entries
are deterministic. A replay that drives shares below −epsilon raises
LedgerIntegrityViolation; it is never clamped.

Usage:
    aggregator = PositionAggregator()
    result = aggregator.calculate(operations)
    for position in result.positions:
        print(position.position_key, position.shares, position.cost_basis)

The rolling-state API (apply_operation / state_to_positions) lets callers
replay once across a date range instead of re-aggregating per day.
"""

import logging
from collections.abc import Iterable

from portfolio_engine.models import OperationType
from portfolio_engine.services.constants import ACTIVE_SHARES_EPSILON, ZERO
from portfolio_engine.services.exceptions import LedgerIntegrityViolation
from portfolio_engine.services.protocols import LedgerEntry
from portfolio_engine.services.valuation.types import (
    AggregationResult,
    Position,
    PositionState,
    make_position_key,
)

logger = logging.getLogger(__name__)


class PositionAggregator:
    """
    Stateless ledger replay.

    Works on any object satisfying LedgerEntry (ORM Operation rows in
    production, simple dataclasses in tests).
    """

    @staticmethod
    def sort_operations(operations: Iterable[LedgerEntry]) -> list[LedgerEntry]:
        """Deterministic replay order: timestamp, then ledger id."""
        return sorted(operations, key=lambda op: (op.date, op.id or 0))

    def calculate(self, operations: Iterable[LedgerEntry]) -> AggregationResult:
        """
        Replay all operations of one owner/portfolio.

        Returns:
            AggregationResult with active positions (shares > epsilon),
            keys of fully closed positions, and the sale count

        Raises:
            LedgerIntegrityViolation: If any position goes negative
        """
        state: dict[str, PositionState] = {}

        for operation in self.sort_operations(operations):
            self.apply_operation(state, operation)

        return self.state_to_result(state)

    def apply_operation(
            self,
            state: dict[str, PositionState],
            operation: LedgerEntry,
    ) -> PositionState:
        """
        Apply one operation to the rolling state (mutates `state`).

        Returns:
            The updated PositionState

        Raises:
            LedgerIntegrityViolation: If the sale leaves negative shares
        """
        key = make_position_key(operation.company, operation.symbol)
        position = state.get(key)
        if position is None:
            position = PositionState(
                company=operation.company,
                symbol=operation.symbol or "",
                currency=operation.currency,
            )
            state[key] = position

        operation_type = OperationType(operation.operation_type)
        total_cost = operation.total_cost or ZERO

        if operation_type == OperationType.PURCHASE:
            position.shares += operation.shares
            position.cost_basis += total_cost
            position.invested += total_cost
            position.currency = operation.currency
            return position

        shares_before = position.shares
        if shares_before > ZERO:
            removed = position.cost_basis * (operation.shares / shares_before)
        else:
            removed = ZERO

        position.cost_basis -= removed
        position.shares -= operation.shares
        position.realized_pnl += total_cost - removed
        position.withdrawn += total_cost
        position.sale_count += 1

        if position.shares < -ACTIVE_SHARES_EPSILON:
            logger.error(
                f"Ledger integrity violation for {key}: "
                f"{position.shares} shares after operation {operation.id}"
            )
            raise LedgerIntegrityViolation(key, position.shares, operation.id)

        return position

    def state_to_positions(self, state: dict[str, PositionState]) -> list[Position]:
        """Active positions (shares > epsilon), sorted by position key."""
        positions = [
            Position(
                position_key=key,
                company=s.company,
                symbol=s.symbol,
                shares=s.shares,
                cost_basis=s.cost_basis,
                currency=s.currency,
                realized_pnl=s.realized_pnl,
            )
            for key, s in state.items()
            if s.shares > ACTIVE_SHARES_EPSILON
        ]
        positions.sort(key=lambda p: p.position_key)
        return positions

    def state_to_result(self, state: dict[str, PositionState]) -> AggregationResult:
        return AggregationResult(
            positions=self.state_to_positions(state),
            closed_position_keys=sorted(
                key for key, s in state.items() if s.shares <= ACTIVE_SHARES_EPSILON
            ),
            closed_operations_count=sum(s.sale_count for s in state.values()),
        )
