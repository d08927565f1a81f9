# portfolio_engine/services/__init__.py
"""
Service layer for the valuation engine.

Services:
- Have NO knowledge of HTTP or any outer surface
- Raise domain-specific exceptions
- Receive database sessions as parameters
- Are easily testable via dependency injection

Usage:
    from portfolio_engine.services import ValuationService
    from portfolio_engine.services import FXRateService
    from portfolio_engine.services import (
        LedgerIntegrityViolation,
        MissingPriceDataError,
    )

Architecture:
    services/
    ├── __init__.py                  # This file - main exports
    ├── exceptions.py                # Domain exceptions
    ├── constants.py                 # Business constants and limits
    ├── protocols.py                 # Service interfaces (Protocol classes)
    ├── circuit_breaker.py           # Circuit breaker for external APIs
    ├── fx_rate_service.py           # EUR cross rates + stored FX series
    ├── market_data/                 # Provider package
    │   ├── base.py                  # Abstract provider interfaces
    │   ├── yahoo.py                 # Yahoo Finance (prices + FX quotes)
    │   └── finnhub.py               # Finnhub forex rates
    ├── valuation/                   # Ledger replay and valuation
    │   ├── types.py                 # Valuation data types
    │   ├── position_aggregator.py   # Average-cost positions
    │   ├── closed_trades.py         # FIFO closed-trade matching
    │   ├── price_resolver.py        # Cached close + EUR rate resolution
    │   ├── history_reconstructor.py # Daily time series
    │   └── service.py               # ValuationService (read façade)
    ├── snapshots/                   # Daily snapshot job
    │   ├── job.py                   # DailySnapshotJob
    │   └── scheduler.py             # APScheduler daily trigger
    └── reports/                     # Report metrics and persistence
        ├── types.py                 # Report data types
        └── aggregator.py            # ReportAggregator
"""

# Exceptions
from portfolio_engine.services.exceptions import (
    # Base exceptions
    ServiceError,
    ValidationError,
    NotFoundError,
    PortfolioNotFoundError,
    # Market data exceptions
    MarketDataError,
    ProviderUnavailableError,
    TickerNotFoundError,
    RateLimitError,
    MissingPriceDataError,
    # FX rate exceptions
    FXRateError,
    FXRateNotFoundError,
    FXProviderError,
    FxUnavailableError,
    # Valuation exceptions
    ValuationError,
    LedgerIntegrityViolation,
    # Snapshot job exceptions
    SnapshotJobError,
    JobReentrancyBlocked,
    CircuitBreakerOpen,
)
# FX Rate Service
from portfolio_engine.services.fx_rate_service import FXRateService, FXSyncResult, FXRateResult
# Market Data
from portfolio_engine.services.market_data import (
    MarketDataProvider,
    FxRateProvider,
    OHLCVData,
    HistoricalPricesResult,
    YahooFinanceProvider,
    FinnhubFxProvider,
)
# Valuation
from portfolio_engine.services.valuation import (
    ValuationService,
    PositionAggregator,
    ClosedTradeMatcher,
    PriceResolver,
    HistoryReconstructor,
)
# Reports
from portfolio_engine.services.reports import ReportAggregator, ReportBatchResult
# Snapshot job
from portfolio_engine.services.snapshots.job import (
    DailySnapshotJob,
    SnapshotOutcome,
    SnapshotRunResult,
)

__all__ = [
    # ==========================================================================
    # Services
    # ==========================================================================
    # FX Rate Service
    "FXRateService",
    "FXSyncResult",
    "FXRateResult",
    # Market Data Providers
    "MarketDataProvider",
    "FxRateProvider",
    "YahooFinanceProvider",
    "FinnhubFxProvider",
    "OHLCVData",
    "HistoricalPricesResult",
    # Valuation
    "ValuationService",
    "PositionAggregator",
    "ClosedTradeMatcher",
    "PriceResolver",
    "HistoryReconstructor",
    # Reports
    "ReportAggregator",
    "ReportBatchResult",
    # Snapshot job
    "DailySnapshotJob",
    "SnapshotOutcome",
    "SnapshotRunResult",

    # ==========================================================================
    # Exceptions
    # ==========================================================================
    "ServiceError",
    "ValidationError",
    "NotFoundError",
    "PortfolioNotFoundError",
    "MarketDataError",
    "ProviderUnavailableError",
    "TickerNotFoundError",
    "RateLimitError",
    "MissingPriceDataError",
    "FXRateError",
    "FXRateNotFoundError",
    "FXProviderError",
    "FxUnavailableError",
    "ValuationError",
    "LedgerIntegrityViolation",
    "SnapshotJobError",
    "JobReentrancyBlocked",
    "CircuitBreakerOpen",
]
