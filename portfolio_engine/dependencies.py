# portfolio_engine/dependencies.py
"""
Service wiring for the valuation engine.

This module provides singleton service instances shared by the scheduler,
ad hoc runs and any outer layer that embeds the engine. Sharing matters:
providers hold circuit breaker state and the snapshot job holds the
in-process reentrancy guard.

Services are lazily initialized on first use to avoid import-time side effects.

Usage:
    from portfolio_engine.dependencies import (
        get_valuation_service,
        get_snapshot_job,
        get_snapshot_scheduler,
    )

    scheduler = get_snapshot_scheduler()
    scheduler.start()
"""

import logging
from functools import lru_cache

from portfolio_engine.config import settings
from portfolio_engine.services.fx_rate_service import FXRateService
from portfolio_engine.services.market_data import (
    FinnhubFxProvider,
    FxRateProvider,
    YahooFinanceProvider,
)
from portfolio_engine.services.reports import ReportAggregator
from portfolio_engine.services.snapshots import DailySnapshotJob, DailySnapshotScheduler
from portfolio_engine.services.valuation import (
    HistoryReconstructor,
    PositionAggregator,
    PriceResolver,
    ValuationService,
)

logger = logging.getLogger(__name__)


# =============================================================================
# SINGLETON SERVICE INSTANCES
# =============================================================================
# Order matters: define dependencies before dependents
# 1. get_market_data_provider (no deps)
# 2. get_fx_rate_service (depends on providers)
# 3. get_price_resolver (depends on provider, fx_service)
# 4. get_valuation_service / get_report_aggregator (share the history reconstructor)
# 5. get_snapshot_job (depends on price_resolver, fx_service, report_aggregator)
# 6. get_snapshot_scheduler (depends on snapshot_job)


@lru_cache(maxsize=1)
def get_market_data_provider() -> YahooFinanceProvider:
    """
    Get the singleton Yahoo provider (prices, FX quotes and FX history).

    Shares the provider across all services so its breakers are global.
    """
    logger.debug("Initializing singleton YahooFinanceProvider")
    return YahooFinanceProvider(timeout=settings.external_api_timeout_seconds)


@lru_cache(maxsize=1)
def get_fx_rate_service() -> FXRateService:
    """
    Get the singleton FXRateService.

    Fallback chain: Finnhub (when FINNHUB_API_KEY is set), Yahoo, static defaults.
    """
    yahoo = get_market_data_provider()
    providers: list[FxRateProvider] = []
    if settings.is_finnhub_configured:
        providers.append(FinnhubFxProvider(
            api_key=settings.finnhub_api_key,
            timeout=settings.external_api_timeout_seconds,
        ))
    providers.append(yahoo)

    logger.debug("Initializing singleton FXRateService")
    return FXRateService(providers=providers, history_provider=yahoo)


@lru_cache(maxsize=1)
def get_price_resolver() -> PriceResolver:
    logger.debug("Initializing singleton PriceResolver")
    return PriceResolver(provider=get_market_data_provider(), fx_service=get_fx_rate_service())


@lru_cache(maxsize=1)
def get_history_reconstructor() -> HistoryReconstructor:
    return HistoryReconstructor(PositionAggregator())


@lru_cache(maxsize=1)
def get_valuation_service() -> ValuationService:
    """Get the singleton read façade (positions, closed trades, history, snapshots)."""
    logger.debug("Initializing singleton ValuationService")
    return ValuationService(history=get_history_reconstructor())


@lru_cache(maxsize=1)
def get_report_aggregator() -> ReportAggregator:
    logger.debug("Initializing singleton ReportAggregator")
    return ReportAggregator(history_provider=get_history_reconstructor())


@lru_cache(maxsize=1)
def get_snapshot_job() -> DailySnapshotJob:
    """
    Get the singleton DailySnapshotJob.

    A single instance per process is what makes the reentrancy guard work.
    """
    logger.debug("Initializing singleton DailySnapshotJob")
    return DailySnapshotJob(
        price_resolver=get_price_resolver(),
        fx_service=get_fx_rate_service(),
        report_hook=get_report_aggregator().generate_all_reports,
        zone=settings.snapshot_zone,
    )


@lru_cache(maxsize=1)
def get_snapshot_scheduler() -> DailySnapshotScheduler:
    logger.debug("Initializing singleton DailySnapshotScheduler")
    return DailySnapshotScheduler(get_snapshot_job())


# =============================================================================
# CACHE MANAGEMENT
# =============================================================================

def clear_service_caches() -> None:
    """
    Clear all service singletons.

    Useful for testing or after a settings reload.
    """
    get_market_data_provider.cache_clear()
    get_fx_rate_service.cache_clear()
    get_price_resolver.cache_clear()
    get_history_reconstructor.cache_clear()
    get_valuation_service.cache_clear()
    get_report_aggregator.cache_clear()
    get_snapshot_job.cache_clear()
    get_snapshot_scheduler.cache_clear()
    logger.info("Cleared all service singleton caches")
