# portfolio_engine/services/market_data/yahoo.py
"""
Yahoo Finance provider implementation.

Implements both collaborator contracts on top of the yfinance library:
- MarketDataProvider: historical daily candles with the quote currency
- FxRateProvider: secondary (quote-based) cross rates via "EURUSD=X" style
  symbols, plus daily FX series for point-in-time rate capture

Limitations:
- Rate limits (not officially documented, but exist)
- The currency reported for some listings is a minor unit ("GBp" for
  pence-quoted LSE shares); normalization happens in the price resolver
"""

import logging
import math
from datetime import date, timedelta
from decimal import Decimal
from typing import Any

import yfinance as yf

from portfolio_engine.services.exceptions import (
    FXProviderError,
    ProviderUnavailableError,
    TickerNotFoundError,
    RateLimitError,
)
from portfolio_engine.services.market_data.base import (
    FxRateProvider,
    HistoricalPricesResult,
    MarketDataProvider,
    OHLCVData,
)

logger = logging.getLogger(__name__)


class YahooFinanceProvider(MarketDataProvider, FxRateProvider):
    """
    Yahoo Finance implementation of the price and FX provider contracts.

    Configuration:
        timeout: Request timeout in seconds (default: 10)

    Retry Behavior (inherited from RetryingProvider):
        - Retries on ProviderUnavailableError and RateLimitError
        - Does NOT retry on TickerNotFoundError (permanent failure)
        - Uses exponential backoff: 1s → 2s → 4s

    Example:
        provider = YahooFinanceProvider(timeout=15)

        result = provider.get_historical_prices(
            "VOD.L", date(2024, 1, 1), date(2024, 1, 31)
        )
        print(result.currency)  # "GBp"

        rates = provider.get_rates("EUR", ("USD", "GBP"))
        print(rates["USD"])  # 1 EUR = X USD
    """

    def __init__(self, timeout: float = 10) -> None:
        self._timeout = timeout
        logger.info(f"YahooFinanceProvider initialized (timeout={timeout}s)")

    @property
    def name(self) -> str:
        return "yahoo"

    # =========================================================================
    # HISTORICAL PRICE METHODS
    # =========================================================================

    def get_historical_prices(
            self,
            symbol: str,
            start_date: date,
            end_date: date,
    ) -> HistoricalPricesResult:
        """
        Fetch daily candles from Yahoo Finance.

        Raises:
            TickerNotFoundError: If symbol not found
            ProviderUnavailableError: If Yahoo Finance unavailable
        """
        return self._execute_with_retry(
            self._fetch_historical_prices,
            symbol,
            start_date,
            end_date,
        )

    def _fetch_historical_prices(
            self,
            symbol: str,
            start_date: date,
            end_date: date,
    ) -> HistoricalPricesResult:
        symbol = symbol.strip().upper()

        logger.debug(f"Fetching historical prices for {symbol}: {start_date} to {end_date}")

        result = HistoricalPricesResult(
            symbol=symbol,
            from_date=start_date,
            to_date=end_date,
        )

        try:
            yf_ticker = yf.Ticker(symbol)

            # Yahoo Finance end date is exclusive, so add 1 day
            yahoo_end = end_date + timedelta(days=1)

            df = yf_ticker.history(
                start=start_date.isoformat(),
                end=yahoo_end.isoformat(),
                interval="1d",
                auto_adjust=False,  # Raw closes, as shown by the broker
                timeout=self._timeout,
            )

            metadata = self._history_metadata(yf_ticker)
            result.currency = metadata.get("currency")

            if df.empty:
                if not metadata:
                    raise TickerNotFoundError(ticker=symbol, provider=self.name)

                logger.warning(
                    f"No price data for {symbol} between {start_date} and {end_date}"
                )
                return result

            result.prices = self._dataframe_to_ohlcv(df)
            logger.debug(f"Fetched {len(result.prices)} days for {symbol}")
            return result

        except TickerNotFoundError:
            raise
        except Exception as e:
            raise self._map_error(symbol, e) from e

    def _dataframe_to_ohlcv(self, df) -> list[OHLCVData]:
        """
        Convert a yfinance DataFrame to a date-sorted list of OHLCVData.

        Rows without a close are skipped; missing open/high/low fall back
        to the close.
        """
        prices = []

        for idx, row in df.iterrows():
            price_date = idx.date() if hasattr(idx, 'date') else idx

            close_price = self._to_decimal(row.get('Close'))
            if close_price is None or close_price <= 0:
                logger.warning(f"Skipping {price_date}: missing close price")
                continue

            open_price = self._to_decimal(row.get('Open')) or close_price
            high_price = self._to_decimal(row.get('High')) or close_price
            low_price = self._to_decimal(row.get('Low')) or close_price

            try:
                prices.append(OHLCVData(
                    date=price_date,
                    open=open_price,
                    high=max(high_price, low_price),
                    low=min(high_price, low_price),
                    close=close_price,
                    volume=self._to_int(row.get('Volume')),
                ))
            except ValueError as e:
                logger.warning(f"Error parsing row {idx}: {e}")

        prices.sort(key=lambda p: p.date)
        return prices

    # =========================================================================
    # FX METHODS
    # =========================================================================

    def get_rates(self, base: str, symbols: tuple[str, ...]) -> dict[str, Decimal]:
        """
        Current quote-based rates, e.g. EURUSD=X → {"USD": 1.08}.

        Each pair is fetched independently; pairs that fail are omitted.

        Raises:
            FXProviderError: If no pair could be priced
        """
        base = base.upper()
        rates: dict[str, Decimal] = {}
        errors: list[str] = []

        for quote in symbols:
            quote = quote.upper()
            if quote == base:
                rates[quote] = Decimal("1")
                continue

            fx_symbol = self.build_fx_symbol(base, quote)
            try:
                price = self._execute_with_retry(self._fetch_last_price, fx_symbol)
            except Exception as e:
                logger.warning(f"Yahoo quote failed for {fx_symbol}: {e}")
                errors.append(f"{fx_symbol}: {e}")
                continue

            if price is not None:
                rates[quote] = price

        if not rates:
            raise FXProviderError(
                provider=self.name,
                reason="; ".join(errors) or "no quotes returned",
            )

        return rates

    def get_historical_rates(
            self,
            base: str,
            quote: str,
            start_date: date,
            end_date: date,
    ) -> dict[date, Decimal]:
        """Daily closes of {BASE}{QUOTE}=X as 1 base = X quote."""
        fx_symbol = self.build_fx_symbol(base, quote)
        result = self.get_historical_prices(fx_symbol, start_date, end_date)
        return {candle.date: candle.close for candle in result.prices}

    def _fetch_last_price(self, fx_symbol: str) -> Decimal | None:
        try:
            fast_info = yf.Ticker(fx_symbol).fast_info
            price = self._to_decimal(getattr(fast_info, "last_price", None))
            if price is None or price <= 0:
                price = self._to_decimal(getattr(fast_info, "previous_close", None))
        except Exception as e:
            raise self._map_error(fx_symbol, e) from e

        if price is None or price <= 0:
            return None
        return price

    # =========================================================================
    # HELPER METHODS
    # =========================================================================

    @staticmethod
    def build_fx_symbol(base_currency: str, quote_currency: str) -> str:
        """Build Yahoo Finance FX symbol (1 BASE = X QUOTE)."""
        return f"{base_currency.upper()}{quote_currency.upper()}=X"

    @staticmethod
    def _history_metadata(yf_ticker: Any) -> dict:
        try:
            metadata = yf_ticker.history_metadata
        except Exception as e:
            logger.debug(f"No history metadata: {e}")
            return {}
        return metadata if isinstance(metadata, dict) else {}

    def _map_error(self, symbol: str, error: Exception) -> Exception:
        """Map a yfinance/network error onto the provider exception taxonomy."""
        error_str = str(error).lower()

        if "not found" in error_str or "delisted" in error_str:
            return TickerNotFoundError(ticker=symbol, provider=self.name)

        if "rate limit" in error_str or "too many requests" in error_str:
            return RateLimitError(provider=self.name)

        logger.error(f"Yahoo Finance error for {symbol}: {error}")
        return ProviderUnavailableError(provider=self.name, reason=str(error))

    @staticmethod
    def _to_decimal(value: Any) -> Decimal | None:
        """Convert a value to Decimal, returning None for NaN/None."""
        if value is None:
            return None
        try:
            if math.isnan(float(value)):
                return None
            return Decimal(str(value)).quantize(Decimal("0.00000001"))
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _to_int(value: Any) -> int | None:
        """Convert a value to int, returning None for NaN/None."""
        if value is None:
            return None
        try:
            if math.isnan(float(value)):
                return None
            return int(value)
        except (TypeError, ValueError):
            return None
