# portfolio_engine/services/constants.py
"""
Centralized constants for the valuation engine services.

Single source of truth for business constants used across the ledger
replay, price resolution, snapshot and reporting code.

Usage:
    from portfolio_engine.services.constants import (
        PRICE_FALLBACK_DAYS,
        POSITION_KEY_SEPARATOR,
        ZERO,
    )
"""

from decimal import Decimal


# =============================================================================
# LEDGER REPLAY
# =============================================================================

# Position identifier is "company|||symbol"
POSITION_KEY_SEPARATOR: str = "|||"

# Positions with shares at or below this are treated as closed.
# Also the tolerance before a negative share count is an integrity violation.
ACTIVE_SHARES_EPSILON: Decimal = Decimal("0.000001")


# =============================================================================
# PRICE & FX FALLBACK SETTINGS
# =============================================================================

# Maximum days to look back when a close is missing (weekends, holidays)
PRICE_FALLBACK_DAYS: int = 5

# Days past the requested date included in a provider fetch window.
# Absorbs market holidays where the provider only returns a later candle.
PRICE_FORWARD_TOLERANCE_DAYS: int = 3

# Maximum days to look back when a stored FX rate is missing
FX_FALLBACK_DAYS: int = 7

# Last-known EUR multipliers (1 unit of currency = X EUR).
# Used when every FX provider fails.
DEFAULT_EUR_CROSS_RATES: dict[str, Decimal] = {
    "EUR": Decimal("1.0"),
    "USD": Decimal("0.92"),
    "GBP": Decimal("0.86"),
}

# Currencies fetched from the FX providers for the cross-rate map
CROSS_RATE_CURRENCIES: tuple[str, ...] = ("USD", "GBP")

# Provider currency codes that denote a minor unit: code → (major, factor)
MINOR_UNIT_CURRENCIES: dict[str, tuple[str, int]] = {
    "GBp": ("GBP", 100),
    "GBX": ("GBP", 100),
    "ZAc": ("ZAR", 100),
    "ILA": ("ILS", 100),
}


# =============================================================================
# HISTORICAL BACKFILL
# =============================================================================

# A position's cache is under-covered when it holds fewer rows than this
# share of the business days since its first cached date
BACKFILL_COVERAGE_THRESHOLD: Decimal = Decimal("0.7")

# Days fetched when a position has no cached prices at all
DEFAULT_BACKFILL_DAYS: int = 365


# =============================================================================
# BENCHMARK SENTINEL
# =============================================================================

# Reserved identity for the market index snapshotted alongside user portfolios
BENCHMARK_OWNER_ID: int = 0
BENCHMARK_PORTFOLIO_ID: int = 0
BENCHMARK_COMPANY: str = "S&P 500"
BENCHMARK_SYMBOL: str = "^GSPC"
BENCHMARK_CURRENCY: str = "USD"


# =============================================================================
# SNAPSHOT JOB
# =============================================================================

DAILY_SNAPSHOT_JOB_NAME: str = "daily_snapshot"

# Report type written by the report hook
DAILY_REPORT_TYPE: str = "daily"

# History window used for report drawdown and monthly rollups (days)
REPORT_HISTORY_DAYS: int = 365 * 5


# =============================================================================
# CIRCUIT BREAKER SETTINGS
# =============================================================================

# Number of failures before circuit opens and blocks requests
CIRCUIT_BREAKER_FAILURE_THRESHOLD: int = 5

# Seconds to wait before testing if service has recovered
CIRCUIT_BREAKER_RECOVERY_TIMEOUT: float = 60.0

# Maximum calls allowed in half-open state to test recovery
CIRCUIT_BREAKER_HALF_OPEN_MAX_CALLS: int = 3

# Time window (seconds) for counting failures (0 = count all failures)
CIRCUIT_BREAKER_FAILURE_WINDOW: float = 300.0


# =============================================================================
# DECIMAL PRECISION CONSTANTS
# =============================================================================

# Currency amounts: 2 decimal places
CURRENCY_PRECISION: Decimal = Decimal("0.01")

# Share quantities and FX rates: 8 decimal places
SHARE_PRECISION: Decimal = Decimal("0.00000001")

# Percentage values in intermediate calculations: 4 decimal places
PERCENTAGE_PRECISION: Decimal = Decimal("0.0001")

# Display percentage: 2 decimal places (e.g., 45.16%)
DISPLAY_PERCENTAGE_PRECISION: Decimal = Decimal("0.01")


# =============================================================================
# UTILITY CONSTANTS
# =============================================================================

# Type-safe zero for Decimal comparisons
ZERO: Decimal = Decimal("0")

# Maximum window accepted by history reconstruction (days)
MAX_HISTORY_DAYS: int = 365 * 20 + 5
