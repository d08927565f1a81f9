# portfolio_engine/services/exceptions.py
"""
Service layer exceptions.

These exceptions represent domain-specific errors and contain NO transport
knowledge. Callers (an API layer, the scheduler) decide how to surface them.

Exception Hierarchy:
    ServiceError (base)
    ├── ValidationError
    ├── NotFoundError
    │   └── PortfolioNotFoundError
    ├── MarketDataError
    │   ├── ProviderUnavailableError
    │   ├── TickerNotFoundError
    │   ├── RateLimitError
    │   └── MissingPriceDataError
    ├── FXRateError
    │   ├── FXRateNotFoundError
    │   ├── FXProviderError
    │   └── FxUnavailableError
    ├── ValuationError
    │   └── LedgerIntegrityViolation
    └── SnapshotJobError
        └── JobReentrancyBlocked

    CircuitBreakerOpen (from circuit_breaker module)
        - Raised when circuit breaker is open and blocking requests

Propagation policy:
    Fetch failures (MarketDataError, FXRateError, CircuitBreakerOpen) are
    converted to "absent" results at component boundaries. Only
    LedgerIntegrityViolation and total job failures escalate.
"""

from datetime import date
from decimal import Decimal


class ServiceError(Exception):
    """
    Base exception for all service layer errors.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message


# =============================================================================
# VALIDATION ERRORS
# =============================================================================


class ValidationError(ServiceError):
    """
    Raised when input validation fails.

    Attributes:
        field: The field that failed validation (optional)
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        self.field = field
        super().__init__(message)


# =============================================================================
# NOT FOUND ERRORS
# =============================================================================


class NotFoundError(ServiceError):
    """
    Base exception for resource not found errors.

    Attributes:
        resource_type: Type of resource (e.g., "Portfolio")
        resource_id: Identifier of the resource
    """

    def __init__(
            self,
            message: str,
            resource_type: str | None = None,
            resource_id: int | str | None = None,
    ) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(message)


class PortfolioNotFoundError(NotFoundError):
    """Raised when a portfolio cannot be found for the given owner."""

    def __init__(self, portfolio_id: int) -> None:
        self.portfolio_id = portfolio_id
        super().__init__(
            f"Portfolio {portfolio_id} not found",
            resource_type="Portfolio",
            resource_id=portfolio_id,
        )


# =============================================================================
# MARKET DATA PROVIDER ERRORS
# =============================================================================


class MarketDataError(ServiceError):
    """
    Base exception for market data provider failures.

    Attributes:
        provider: Name of the provider that failed
    """

    def __init__(self, message: str, provider: str | None = None) -> None:
        self.provider = provider
        super().__init__(message)


class ProviderUnavailableError(MarketDataError):
    """
    Raised when a market data provider is temporarily unavailable.

    Examples:
    - Network timeout
    - Server errors (500, 502, 503)

    This is a retryable error.
    """

    def __init__(self, provider: str, reason: str) -> None:
        message = f"Provider '{provider}' is unavailable: {reason}"
        super().__init__(message, provider=provider)
        self.reason = reason


class TickerNotFoundError(MarketDataError):
    """
    Raised when a ticker symbol is not found by the provider.

    This is NOT a retryable error.
    """

    def __init__(self, ticker: str, provider: str) -> None:
        message = f"Ticker '{ticker}' not found by {provider}"
        super().__init__(message, provider=provider)
        self.ticker = ticker


class RateLimitError(MarketDataError):
    """
    Raised when the provider's rate limit has been exceeded.

    This is a retryable error (with backoff).

    Attributes:
        retry_after: Seconds to wait before retrying (if provided by API)
    """

    def __init__(self, provider: str, retry_after: int | None = None) -> None:
        message = f"Rate limit exceeded for provider '{provider}'"
        if retry_after:
            message += f" (retry after {retry_after}s)"
        super().__init__(message, provider=provider)
        self.retry_after = retry_after


class MissingPriceDataError(MarketDataError):
    """
    Raised when no close can be resolved for a position on a date.

    The snapshot job records it as a per-position failure and carries on
    with the rest of the portfolio.

    Attributes:
        position_key: Position identifier ("company|||symbol")
        price_date: The date for which a close was requested
    """

    def __init__(self, position_key: str, price_date: date) -> None:
        self.position_key = position_key
        self.price_date = price_date
        super().__init__(f"No close price for {position_key} on {price_date}")


# =============================================================================
# FX RATE ERRORS
# =============================================================================


class FXRateError(ServiceError):
    """
    Base exception for FX rate errors.

    Attributes:
        base_currency: The base currency code
        quote_currency: The quote currency code
    """

    def __init__(
            self,
            message: str,
            base_currency: str | None = None,
            quote_currency: str | None = None,
    ) -> None:
        self.base_currency = base_currency
        self.quote_currency = quote_currency
        super().__init__(message)


class FXRateNotFoundError(FXRateError):
    """
    Raised when no stored FX rate is available for the requested date/pair.

    Attributes:
        date: The date for which rate was requested
    """

    def __init__(
            self,
            base_currency: str,
            quote_currency: str,
            rate_date: date,
            message: str | None = None
    ) -> None:
        self.date = rate_date
        msg = message or f"No FX rate found for {base_currency}/{quote_currency} on {rate_date}"
        super().__init__(msg, base_currency=base_currency, quote_currency=quote_currency)


class FXProviderError(FXRateError):
    """
    Raised when an FX data provider fails.

    Attributes:
        provider: Name of the FX data provider
        reason: Specific reason for failure
    """

    def __init__(self, provider: str, reason: str) -> None:
        self.provider = provider
        self.reason = reason
        super().__init__(f"FX provider '{provider}' error: {reason}")


class FxUnavailableError(FXRateError):
    """
    Raised by a single provider step when it cannot produce a rate map.

    Never escapes FXRateService.get_eur_cross_rates(), which falls back to
    the next provider and finally to static defaults.
    """

    def __init__(self, provider: str, reason: str) -> None:
        self.provider = provider
        self.reason = reason
        super().__init__(f"FX rates unavailable from '{provider}': {reason}")


# =============================================================================
# VALUATION ERRORS
# =============================================================================


class ValuationError(ServiceError):
    """Base exception for ledger replay and valuation errors."""
    pass


class LedgerIntegrityViolation(ValuationError):
    """
    Raised when replaying the ledger yields a negative share count.

    This is a data-integrity condition of the ledger itself and is never
    clamped away.

    Attributes:
        position_key: Position whose replay went negative
        shares: Share count after the offending operation
        operation_id: Ledger id of the offending sale (if known)
    """

    def __init__(
            self,
            position_key: str,
            shares: Decimal,
            operation_id: int | None = None,
    ) -> None:
        self.position_key = position_key
        self.shares = shares
        self.operation_id = operation_id
        super().__init__(
            f"Ledger replay for {position_key} yields negative shares "
            f"({shares}) at operation {operation_id}"
        )


# =============================================================================
# SNAPSHOT JOB ERRORS
# =============================================================================


class SnapshotJobError(ServiceError):
    """Base exception for daily snapshot job errors."""
    pass


class JobReentrancyBlocked(SnapshotJobError):
    """
    Raised when a job run is requested while one is already in flight.

    The job converts it into an "already_running" outcome; it is a no-op,
    not a failure.
    """

    def __init__(self, job_name: str) -> None:
        self.job_name = job_name
        super().__init__(f"Job '{job_name}' is already running")


# =============================================================================
# CIRCUIT BREAKER (re-exported for convenience)
# =============================================================================

from portfolio_engine.services.circuit_breaker import CircuitBreakerOpen

__all__ = [
    # Base
    "ServiceError",
    # Validation
    "ValidationError",
    # Not Found
    "NotFoundError",
    "PortfolioNotFoundError",
    # Market Data
    "MarketDataError",
    "ProviderUnavailableError",
    "TickerNotFoundError",
    "RateLimitError",
    "MissingPriceDataError",
    # FX Rate
    "FXRateError",
    "FXRateNotFoundError",
    "FXProviderError",
    "FxUnavailableError",
    # Valuation
    "ValuationError",
    "LedgerIntegrityViolation",
    # Snapshot job
    "SnapshotJobError",
    "JobReentrancyBlocked",
    # Circuit Breaker
    "CircuitBreakerOpen",
]
