# tests/services/test_yahoo_provider.py
"""
Tests for the YahooFinanceProvider.

This module tests:
- Candle parsing from yfinance DataFrames
- Historical price fetching (currency, inclusive range, unknown tickers)
- Error classification
- Quote-based FX rates and FX history

Note: These tests mock the yfinance library to avoid actual API calls.
"""

from datetime import date
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import numpy as np
import pandas as pd
import pytest

from portfolio_engine.services.exceptions import (
    FXProviderError,
    ProviderUnavailableError,
    RateLimitError,
    TickerNotFoundError,
)
from portfolio_engine.services.market_data.base import HistoricalPricesResult, OHLCVData
from portfolio_engine.services.market_data.yahoo import YahooFinanceProvider


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def provider() -> YahooFinanceProvider:
    """Provider with a single attempt so error tests do not back off."""
    provider = YahooFinanceProvider(timeout=10)
    provider.MAX_RETRY_ATTEMPTS = 1
    return provider


@pytest.fixture
def sample_dataframe():
    """Create sample DataFrame like yfinance returns."""
    dates = pd.date_range(start='2024-01-15', periods=5, freq='B')
    return pd.DataFrame({
        'Open': [185.0, 186.0, 184.5, 187.0, 188.0],
        'High': [187.0, 188.0, 186.0, 189.0, 190.0],
        'Low': [184.0, 185.0, 183.5, 186.0, 187.0],
        'Close': [186.0, 185.5, 185.0, 188.0, 189.5],
        'Volume': [1000000, 1100000, 900000, 1200000, 1150000],
    }, index=dates)


def mock_ticker(history=None, metadata=None) -> MagicMock:
    ticker = MagicMock()
    ticker.history.return_value = history if history is not None else pd.DataFrame()
    ticker.history_metadata = metadata if metadata is not None else {}
    return ticker


# =============================================================================
# PROVIDER BASICS
# =============================================================================

class TestYahooProviderInit:
    def test_provider_name(self):
        assert YahooFinanceProvider().name == "yahoo"

    def test_default_timeout(self):
        assert YahooFinanceProvider()._timeout == 10

    def test_custom_timeout(self):
        assert YahooFinanceProvider(timeout=30)._timeout == 30

    def test_build_fx_symbol(self):
        """1 EUR = X USD is quoted as EURUSD=X."""
        assert YahooFinanceProvider.build_fx_symbol("eur", "usd") == "EURUSD=X"


class TestOHLCVData:
    def test_invalid_close_price(self):
        with pytest.raises(ValueError, match="close price must be positive"):
            OHLCVData(date=date(2024, 1, 15), open=Decimal("1"), high=Decimal("1"),
                      low=Decimal("1"), close=Decimal("0"))

    def test_invalid_high_low(self):
        with pytest.raises(ValueError, match="high.*cannot be less than low"):
            OHLCVData(date=date(2024, 1, 15), open=Decimal("185"), high=Decimal("180"),
                      low=Decimal("184"), close=Decimal("186"))

    def test_candle_on(self):
        candle = OHLCVData(date=date(2024, 1, 15), open=Decimal("1"), high=Decimal("1"),
                           low=Decimal("1"), close=Decimal("1"))
        result = HistoricalPricesResult(symbol="AAPL", prices=[candle])

        assert result.candle_on(date(2024, 1, 15)) is candle
        assert result.candle_on(date(2024, 1, 16)) is None
        assert result.days_fetched == 1


# =============================================================================
# DATAFRAME PARSING
# =============================================================================

class TestDataframeParsing:
    """Tests for DataFrame to OHLCV conversion."""

    def test_parse_valid_dataframe(self, provider, sample_dataframe):
        prices = provider._dataframe_to_ohlcv(sample_dataframe)

        assert len(prices) == 5
        assert prices[0].date == date(2024, 1, 15)
        assert prices[0].open == Decimal("185.00000000")
        assert prices[0].close == Decimal("186.00000000")
        assert prices[0].volume == 1000000

    def test_nan_open_and_volume(self, provider):
        """NaN open falls back to close; NaN volume becomes None."""
        dates = pd.date_range(start='2024-01-15', periods=2, freq='B')
        df = pd.DataFrame({
            'Open': [185.0, np.nan],
            'High': [187.0, 188.0],
            'Low': [184.0, 185.0],
            'Close': [186.0, 187.5],
            'Volume': [1000000, np.nan],
        }, index=dates)

        prices = provider._dataframe_to_ohlcv(df)

        assert prices[1].open == prices[1].close
        assert prices[1].volume is None

    def test_missing_close_skipped(self, provider):
        dates = pd.date_range(start='2024-01-15', periods=3, freq='B')
        df = pd.DataFrame({
            'Open': [185.0, 186.0, 187.0],
            'High': [187.0, 188.0, 189.0],
            'Low': [184.0, 185.0, 186.0],
            'Close': [186.0, np.nan, 188.0],
            'Volume': [1000000, 1100000, 1200000],
        }, index=dates)

        assert len(provider._dataframe_to_ohlcv(df)) == 2


# =============================================================================
# HISTORICAL PRICES
# =============================================================================

class TestGetHistoricalPrices:
    """Tests for get_historical_prices with mocked yfinance."""

    @patch('portfolio_engine.services.market_data.yahoo.yf')
    def test_successful_fetch(self, mock_yf, provider, sample_dataframe):
        mock_yf.Ticker.return_value = mock_ticker(sample_dataframe, {"currency": "USD"})

        result = provider.get_historical_prices(" aapl ", date(2024, 1, 15), date(2024, 1, 19))

        assert result.symbol == "AAPL"
        assert result.currency == "USD"
        assert result.days_fetched == 5
        mock_yf.Ticker.assert_called_once_with("AAPL")

    @patch('portfolio_engine.services.market_data.yahoo.yf')
    def test_minor_unit_currency_passed_through(self, mock_yf, provider, sample_dataframe):
        """Pence-quoted listings report "GBp"; the provider does not convert."""
        mock_yf.Ticker.return_value = mock_ticker(sample_dataframe, {"currency": "GBp"})

        result = provider.get_historical_prices("VOD.L", date(2024, 1, 15), date(2024, 1, 19))

        assert result.currency == "GBp"
        assert result.prices[0].close == Decimal("186.00000000")

    @patch('portfolio_engine.services.market_data.yahoo.yf')
    def test_end_date_inclusive(self, mock_yf, provider, sample_dataframe):
        """Yahoo's end is exclusive, so one day is added."""
        ticker = mock_ticker(sample_dataframe, {"currency": "USD"})
        mock_yf.Ticker.return_value = ticker

        provider.get_historical_prices("AAPL", date(2024, 1, 15), date(2024, 1, 19))

        call_args = ticker.history.call_args
        assert call_args.kwargs['end'] == "2024-01-20"
        assert call_args.kwargs['auto_adjust'] is False
        assert call_args.kwargs['timeout'] == 10

    @patch('portfolio_engine.services.market_data.yahoo.yf')
    def test_empty_range_for_known_ticker(self, mock_yf, provider):
        mock_yf.Ticker.return_value = mock_ticker(metadata={"currency": "USD"})

        result = provider.get_historical_prices("AAPL", date(2020, 1, 4), date(2020, 1, 5))

        assert result.prices == []
        assert result.currency == "USD"

    @patch('portfolio_engine.services.market_data.yahoo.yf')
    def test_unknown_ticker(self, mock_yf, provider):
        mock_yf.Ticker.return_value = mock_ticker()

        with pytest.raises(TickerNotFoundError) as exc_info:
            provider.get_historical_prices("INVALID", date(2024, 1, 1), date(2024, 1, 5))

        assert exc_info.value.ticker == "INVALID"
        assert exc_info.value.provider == "yahoo"

    @patch('portfolio_engine.services.market_data.yahoo.yf')
    def test_network_error(self, mock_yf, provider):
        mock_yf.Ticker.side_effect = Exception("Connection timeout")

        with pytest.raises(ProviderUnavailableError) as exc_info:
            provider.get_historical_prices("AAPL", date(2024, 1, 1), date(2024, 1, 5))

        assert exc_info.value.provider == "yahoo"

    @patch('portfolio_engine.services.market_data.yahoo.yf')
    def test_transient_error_retried(self, mock_yf, sample_dataframe):
        provider = YahooFinanceProvider()
        provider.RETRY_MIN_WAIT = 0
        provider.RETRY_MAX_WAIT = 0
        provider.RETRY_MULTIPLIER = 0
        mock_yf.Ticker.side_effect = [
            Exception("Connection reset"),
            mock_ticker(sample_dataframe, {"currency": "USD"}),
        ]

        result = provider.get_historical_prices("AAPL", date(2024, 1, 15), date(2024, 1, 19))

        assert result.days_fetched == 5
        assert mock_yf.Ticker.call_count == 2


class TestErrorMapping:
    """Tests for _map_error classification."""

    @pytest.mark.parametrize("message,expected", [
        ("No data found, symbol may be delisted", TickerNotFoundError),
        ("404 Not Found", TickerNotFoundError),
        ("Too Many Requests. Rate limited", RateLimitError),
        ("rate limit exceeded", RateLimitError),
        ("Connection timeout", ProviderUnavailableError),
    ])
    def test_classification(self, provider, message, expected):
        assert isinstance(provider._map_error("AAPL", Exception(message)), expected)


# =============================================================================
# FX
# =============================================================================

class TestFxRates:
    """Tests for quote-based FX rates."""

    @patch('portfolio_engine.services.market_data.yahoo.yf')
    def test_get_rates(self, mock_yf, provider):
        def ticker_for(symbol):
            ticker = MagicMock()
            last = {"EURUSD=X": 1.0876, "EURGBP=X": 0.8571}[symbol]
            ticker.fast_info = SimpleNamespace(last_price=last, previous_close=None)
            return ticker

        mock_yf.Ticker.side_effect = ticker_for

        rates = provider.get_rates("EUR", ("USD", "GBP", "EUR"))

        assert rates == {
            "USD": Decimal("1.08760000"),
            "GBP": Decimal("0.85710000"),
            "EUR": Decimal("1"),
        }

    @patch('portfolio_engine.services.market_data.yahoo.yf')
    def test_previous_close_fallback(self, mock_yf, provider):
        ticker = MagicMock()
        ticker.fast_info = SimpleNamespace(last_price=float("nan"), previous_close=1.08)
        mock_yf.Ticker.return_value = ticker

        assert provider.get_rates("EUR", ("USD",))["USD"] == Decimal("1.08000000")

    @patch('portfolio_engine.services.market_data.yahoo.yf')
    def test_failed_pair_omitted(self, mock_yf, provider):
        def ticker_for(symbol):
            if symbol == "EURGBP=X":
                raise Exception("Connection timeout")
            ticker = MagicMock()
            ticker.fast_info = SimpleNamespace(last_price=1.08, previous_close=None)
            return ticker

        mock_yf.Ticker.side_effect = ticker_for

        rates = provider.get_rates("EUR", ("USD", "GBP"))

        assert "GBP" not in rates
        assert rates["USD"] == Decimal("1.08000000")

    @patch('portfolio_engine.services.market_data.yahoo.yf')
    def test_nothing_priced_raises(self, mock_yf, provider):
        mock_yf.Ticker.side_effect = Exception("Connection timeout")

        with pytest.raises(FXProviderError):
            provider.get_rates("EUR", ("USD", "GBP"))

    @patch('portfolio_engine.services.market_data.yahoo.yf')
    def test_historical_rates(self, mock_yf, provider, sample_dataframe):
        mock_yf.Ticker.return_value = mock_ticker(sample_dataframe, {"currency": "USD"})

        rates = provider.get_historical_rates("USD", "EUR", date(2024, 1, 15), date(2024, 1, 19))

        mock_yf.Ticker.assert_called_once_with("USDEUR=X")
        assert rates[date(2024, 1, 15)] == Decimal("186.00000000")
        assert len(rates) == 5
