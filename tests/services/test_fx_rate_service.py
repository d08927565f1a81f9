# tests/services/test_fx_rate_service.py
"""
Tests for the FXRateService.

This module tests:
- The EUR cross-rate fallback chain (never raises)
- Point-in-time EUR multipliers (stored rate, then cross-rate map)
- Rate syncing into the exchange_rates table
- Stored rate retrieval (exact and fallback)
"""

from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select

from portfolio_engine.models import ExchangeRate
from portfolio_engine.services.exceptions import FXRateNotFoundError
from portfolio_engine.services.fx_rate_service import FXRateService
from tests.conftest import MockFxRateProvider


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def sample_rates(db) -> list[ExchangeRate]:
    """USD→EUR on three consecutive days and one GBP→EUR rate."""
    rates = [
        ExchangeRate(base_currency="USD", quote_currency="EUR", date=date(2024, 1, 15),
                     rate=Decimal("0.92000000"), provider="yahoo"),
        ExchangeRate(base_currency="USD", quote_currency="EUR", date=date(2024, 1, 16),
                     rate=Decimal("0.92500000"), provider="yahoo"),
        ExchangeRate(base_currency="USD", quote_currency="EUR", date=date(2024, 1, 17),
                     rate=Decimal("0.93000000"), provider="yahoo"),
        ExchangeRate(base_currency="GBP", quote_currency="EUR", date=date(2024, 1, 15),
                     rate=Decimal("1.17000000"), provider="yahoo"),
    ]
    for rate in rates:
        db.add(rate)
    db.commit()
    return rates


# =============================================================================
# CROSS RATES
# =============================================================================

class TestEurCrossRates:
    """Tests for get_eur_cross_rates()."""

    def test_total_provider_failure_returns_defaults(self):
        """Both providers down → static defaults, no exception."""
        service = FXRateService(providers=[
            MockFxRateProvider(name="primary", fail=True),
            MockFxRateProvider(name="secondary", fail=True),
        ])

        rates = service.get_eur_cross_rates()

        assert rates == {
            "EUR": Decimal("1.0"),
            "USD": Decimal("0.92"),
            "GBP": Decimal("0.86"),
        }

    def test_no_providers_returns_defaults(self):
        assert FXRateService().get_eur_cross_rates()["USD"] == Decimal("0.92")

    def test_primary_provider_wins(self):
        """Provider quotes are EUR-based and get inverted."""
        primary = MockFxRateProvider(name="primary", quotes={"USD": Decimal("1.25"), "GBP": Decimal("0.8")})
        secondary = MockFxRateProvider(name="secondary", quotes={"USD": Decimal("2")})
        service = FXRateService(providers=[primary, secondary])

        rates = service.get_eur_cross_rates()

        assert rates["EUR"] == Decimal("1")
        assert rates["USD"] == Decimal("0.80000000")
        assert rates["GBP"] == Decimal("1.25000000")
        assert secondary.rate_calls == 0

    def test_falls_back_to_secondary(self):
        primary = MockFxRateProvider(name="primary", fail=True)
        secondary = MockFxRateProvider(name="secondary", quotes={"USD": Decimal("1.25")})
        service = FXRateService(providers=[primary, secondary])

        rates = service.get_eur_cross_rates()

        assert rates["USD"] == Decimal("0.80000000")
        assert primary.rate_calls == 1
        assert secondary.rate_calls == 1

    def test_unpriced_currency_keeps_default(self):
        """A provider that prices only USD leaves GBP at its default."""
        service = FXRateService(providers=[MockFxRateProvider(quotes={"USD": Decimal("1.25")})])

        rates = service.get_eur_cross_rates()

        assert rates["GBP"] == Decimal("0.86")

    def test_empty_quotes_moves_to_next_provider(self):
        empty = MockFxRateProvider(name="empty", quotes={})
        backup = MockFxRateProvider(name="backup", quotes={"GBP": Decimal("0.8")})
        service = FXRateService(providers=[empty, backup])

        assert service.get_eur_cross_rates()["GBP"] == Decimal("1.25000000")

    def test_unexpected_error_is_swallowed(self):
        """Any provider exception ends in the defaults, never in the caller."""
        provider = MockFxRateProvider(name="broken")
        provider.get_rates = MagicMock(side_effect=RuntimeError("boom"))
        service = FXRateService(providers=[provider])

        assert service.get_eur_cross_rates()["USD"] == Decimal("0.92")

    def test_returns_fresh_dict(self):
        service = FXRateService()
        rates = service.get_eur_cross_rates()
        rates["USD"] = Decimal("99")

        assert service.get_eur_cross_rates()["USD"] == Decimal("0.92")


# =============================================================================
# POINT-IN-TIME RATES
# =============================================================================

class TestRateToEur:
    """Tests for rate_to_eur()."""

    def test_eur_is_one(self, db):
        assert FXRateService().rate_to_eur(db, "eur", date(2024, 1, 15)) == Decimal("1")

    def test_stored_rate_preferred(self, db, sample_rates):
        service = FXRateService()

        rate = service.rate_to_eur(db, "USD", date(2024, 1, 16), {"USD": Decimal("0.5")})

        assert rate == Decimal("0.925")

    def test_stored_rate_fallback_window(self, db, sample_rates):
        """A weekend date uses the latest stored rate before it."""
        rate = FXRateService().rate_to_eur(db, "USD", date(2024, 1, 20))

        assert rate == Decimal("0.93")

    def test_cross_map_when_nothing_stored(self, db):
        rate = FXRateService().rate_to_eur(db, "USD", date(2024, 1, 16), {"USD": Decimal("0.5")})

        assert rate == Decimal("0.5")

    def test_unknown_currency_is_one(self, db):
        assert FXRateService().rate_to_eur(db, "CHF", date(2024, 1, 16), {}) == Decimal("1")


# =============================================================================
# SYNC
# =============================================================================

class TestSyncRates:
    """Tests for sync_rates()."""

    def test_sync_stores_business_days(self, db):
        history = MockFxRateProvider(history={
            date(2024, 1, 15): Decimal("0.91"),
            date(2024, 1, 16): Decimal("0.92"),
        })
        service = FXRateService(history_provider=history)

        result = service.sync_rates(db, "USD", "EUR", date(2024, 1, 15), date(2024, 1, 16))

        assert result.success
        assert result.rates_stored == 2
        stored = db.scalars(select(ExchangeRate).order_by(ExchangeRate.date)).all()
        assert [r.rate for r in stored] == [Decimal("0.91"), Decimal("0.92")]

    def test_sync_skips_when_dates_present(self, db, sample_rates):
        history = MockFxRateProvider(history={date(2024, 1, 15): Decimal("0.5")})
        service = FXRateService(history_provider=history)

        result = service.sync_rates(db, "USD", "EUR", date(2024, 1, 15), date(2024, 1, 17))

        assert result.rates_fetched == 0
        assert history.history_calls == []

    def test_sync_provider_failure_reported(self, db):
        service = FXRateService(history_provider=MockFxRateProvider(fail=True))

        result = service.sync_rates(db, "USD", "EUR", date(2024, 1, 15), date(2024, 1, 16))

        assert not result.success
        assert result.errors

    def test_sync_without_history_provider_is_noop(self, db):
        result = FXRateService().sync_rates(db, "USD", "EUR", date(2024, 1, 15), date(2024, 1, 16))

        assert result.rates_fetched == 0
        assert result.success


class TestGetRate:
    """Tests for stored rate retrieval."""

    def test_exact_match(self, db, sample_rates):
        result = FXRateService().get_rate(db, "USD", "EUR", date(2024, 1, 16))

        assert result.rate == Decimal("0.925")
        assert result.is_exact_match

    def test_fallback_match(self, db, sample_rates):
        result = FXRateService().get_rate(db, "GBP", "EUR", date(2024, 1, 18))

        assert result.is_exact_match is False
        assert result.actual_date == date(2024, 1, 15)

    def test_not_found_raises(self, db, sample_rates):
        with pytest.raises(FXRateNotFoundError):
            FXRateService().get_rate(db, "USD", "EUR", date(2023, 1, 1))

    def test_or_none(self, db):
        assert FXRateService().get_rate_or_none(db, "USD", "EUR", date(2024, 1, 1)) is None

    def test_invert_rate(self):
        assert FXRateService.invert_rate(Decimal("1.087")) == Decimal("0.91996320")
