# portfolio_engine/services/market_data/__init__.py
"""
Market data services package.

This package contains:
- Abstract interfaces for price and FX providers (base.py)
- Yahoo Finance implementation (yahoo.py)
- Finnhub forex rates implementation (finnhub.py)

Usage:
    from portfolio_engine.services.market_data import (
        MarketDataProvider,
        FxRateProvider,
        OHLCVData,
        HistoricalPricesResult,
        YahooFinanceProvider,
        FinnhubFxProvider,
    )

Architecture:
    RetryingProvider (ABC, tenacity backoff)
    ├── MarketDataProvider ── YahooFinanceProvider
    └── FxRateProvider ────── YahooFinanceProvider, FinnhubFxProvider
"""

from portfolio_engine.services.market_data.base import (
    FxRateProvider,
    HistoricalPricesResult,
    MarketDataProvider,
    OHLCVData,
    RetryingProvider,
)
from portfolio_engine.services.market_data.finnhub import FinnhubFxProvider
from portfolio_engine.services.market_data.yahoo import YahooFinanceProvider

__all__ = [
    # Abstract interfaces
    "RetryingProvider",
    "MarketDataProvider",
    "FxRateProvider",
    # Data classes
    "OHLCVData",
    "HistoricalPricesResult",
    # Concrete implementations
    "YahooFinanceProvider",
    "FinnhubFxProvider",
]
