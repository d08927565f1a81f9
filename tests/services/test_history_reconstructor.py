# tests/services/test_history_reconstructor.py
"""
Tests for HistoryReconstructor.

This module tests:
- Business-day series (weekends skipped)
- Carry-forward of the last known close
- Net injected capital vs average-cost basis divergence
- Stored FX rate used for EUR totals
- Incomplete data flagging and validation
"""

from datetime import date
from decimal import Decimal

import pytest

from portfolio_engine.models import OperationType
from portfolio_engine.services.exceptions import LedgerIntegrityViolation, ValidationError
from portfolio_engine.services.valuation.history_reconstructor import HistoryReconstructor
from tests.conftest import create_daily_price, create_operation

BUY = OperationType.PURCHASE
SELL = OperationType.SALE


@pytest.fixture
def reconstructor() -> HistoryReconstructor:
    return HistoryReconstructor()


def history_for(reconstructor, db, portfolio, days, today):
    return reconstructor.get_history(db, portfolio.user_id, portfolio.id, days, today=today)


class TestBusinessDays:
    """Tests for the shape of the series."""

    def test_weekend_skipped_and_friday_close_carried(self, db, sample_portfolio, reconstructor):
        """Friday close only: the Monday point uses it, Sat/Sun are absent."""
        create_operation(db, sample_portfolio, BUY, date(2024, 3, 1), 10, 100)
        create_daily_price(db, sample_portfolio, date(2024, 3, 1), "110")

        history = history_for(reconstructor, db, sample_portfolio, 3, date(2024, 3, 4))

        assert [p.date for p in history.points] == [date(2024, 3, 1), date(2024, 3, 4)]
        friday, monday = history.points
        assert friday.total_value == Decimal("1100")
        assert friday.stale_positions == ()
        assert monday.total_value == Decimal("1100")
        assert monday.stale_positions == ("Acme|||ACME",)
        assert monday.has_complete_data is True

    def test_carry_forward_from_before_window(self, db, sample_portfolio, reconstructor):
        """The last close before the window seeds the first day."""
        create_operation(db, sample_portfolio, BUY, date(2024, 1, 2), 2, 100)
        create_daily_price(db, sample_portfolio, date(2024, 1, 10), "120")

        history = history_for(reconstructor, db, sample_portfolio, 7, date(2024, 2, 2))

        assert all(p.total_value == Decimal("240") for p in history.points)

    def test_days_before_first_operation_are_zero(self, db, sample_portfolio, reconstructor):
        create_operation(db, sample_portfolio, BUY, date(2024, 3, 4), 1, 100)
        create_daily_price(db, sample_portfolio, date(2024, 3, 4), "100")

        history = history_for(reconstructor, db, sample_portfolio, 4, date(2024, 3, 4))

        first = history.points[0]
        assert first.date == date(2024, 2, 29)
        assert first.total_invested == Decimal("0")
        assert first.total_value == Decimal("0")

    def test_later_operations_excluded(self, db, sample_portfolio, reconstructor):
        """Operations after `today` are not replayed."""
        create_operation(db, sample_portfolio, BUY, date(2024, 3, 1), 1, 100)
        create_operation(db, sample_portfolio, BUY, date(2024, 3, 8), 5, 100)
        create_daily_price(db, sample_portfolio, date(2024, 3, 1), "100")

        history = history_for(reconstructor, db, sample_portfolio, 2, date(2024, 3, 4))

        assert history.latest.total_invested == Decimal("100")

    def test_empty_ledger(self, db, sample_portfolio, reconstructor):
        history = history_for(reconstructor, db, sample_portfolio, 30, date(2024, 3, 4))

        assert history.is_empty
        assert history.latest is None


class TestNetCapitalVsCostBasis:
    """Net injected capital and cost basis are different metrics."""

    @pytest.fixture
    def profitable_sale(self, db, sample_portfolio):
        create_operation(db, sample_portfolio, BUY, date(2024, 2, 1), 10, 100)
        create_operation(db, sample_portfolio, BUY, date(2024, 2, 5), 5, 120)
        create_operation(db, sample_portfolio, SELL, date(2024, 2, 12), 12, 150)
        create_daily_price(db, sample_portfolio, date(2024, 2, 12), "150")
        return sample_portfolio

    def test_divergence_equals_realized_gain(self, db, profitable_sale, reconstructor):
        """cost_basis − net invested == realized gain, and they differ."""
        history = history_for(reconstructor, db, profitable_sale, 14, date(2024, 2, 14))
        point = history.latest

        assert point.total_invested == Decimal("-200")
        assert point.cost_basis == Decimal("320")
        assert point.realized_pnl == Decimal("520")
        assert point.total_invested != point.cost_basis
        assert point.cost_basis - point.total_invested == point.realized_pnl

    def test_pnl_uses_net_invested(self, db, profitable_sale, reconstructor):
        """pnl = value − net injected capital."""
        point = history_for(reconstructor, db, profitable_sale, 14, date(2024, 2, 14)).latest

        assert point.total_value == Decimal("450")
        assert point.pnl == Decimal("650")

    def test_no_divergence_before_any_sale(self, db, profitable_sale, reconstructor):
        history = history_for(reconstructor, db, profitable_sale, 14, date(2024, 2, 14))
        before_sale = next(p for p in history.points if p.date == date(2024, 2, 9))

        assert before_sale.total_invested == before_sale.cost_basis == Decimal("1600")
        assert before_sale.realized_pnl == Decimal("0")


class TestValuation:
    """Tests for EUR totals and incomplete data."""

    def test_stored_rate_used(self, db, sample_portfolio, reconstructor):
        create_operation(db, sample_portfolio, BUY, date(2024, 3, 1), 10, 100,
                         currency="USD", exchange_rate="0.9")
        create_daily_price(db, sample_portfolio, date(2024, 3, 1), "110", currency="USD", exchange_rate="0.8")

        point = history_for(reconstructor, db, sample_portfolio, 1, date(2024, 3, 1)).latest

        assert point.total_value == Decimal("880")
        assert point.total_invested == Decimal("900")

    def test_position_without_any_price(self, db, sample_portfolio, reconstructor):
        """No close at all → zero value for it, point flagged, one warning."""
        create_operation(db, sample_portfolio, BUY, date(2024, 3, 1), 1, 100)
        create_operation(db, sample_portfolio, BUY, date(2024, 3, 1), 1, 50, company="Other", symbol="OTH")
        create_daily_price(db, sample_portfolio, date(2024, 3, 1), "100")

        history = history_for(reconstructor, db, sample_portfolio, 5, date(2024, 3, 5))

        assert all(p.has_complete_data is False for p in history.points if p.date >= date(2024, 3, 1))
        assert history.latest.total_value == Decimal("100")
        assert len(history.warnings) == 1

    def test_closed_position_not_valued(self, db, sample_portfolio, reconstructor):
        create_operation(db, sample_portfolio, BUY, date(2024, 3, 1), 1, 100)
        create_operation(db, sample_portfolio, SELL, date(2024, 3, 4), 1, 120)

        point = history_for(reconstructor, db, sample_portfolio, 1, date(2024, 3, 5)).latest

        assert point.total_value == Decimal("0")
        assert point.has_complete_data is True
        assert point.pnl == Decimal("20")


class TestValidation:
    @pytest.mark.parametrize("days", [0, -1, 100000])
    def test_days_out_of_range(self, db, sample_portfolio, reconstructor, days):
        with pytest.raises(ValidationError):
            history_for(reconstructor, db, sample_portfolio, days, date(2024, 3, 4))

    def test_integrity_violation_propagates(self, db, sample_portfolio, reconstructor):
        create_operation(db, sample_portfolio, SELL, date(2024, 3, 1), 1, 100)

        with pytest.raises(LedgerIntegrityViolation):
            history_for(reconstructor, db, sample_portfolio, 5, date(2024, 3, 4))
