# portfolio_engine/schemas/__init__.py
"""
Pydantic schemas for persisted payloads.

- reports: Daily portfolio report stored on PortfolioReport.data

Usage:
    from portfolio_engine.schemas import PortfolioReportData
"""

from portfolio_engine.schemas.reports import (
    DrawdownEntry,
    MonthExtreme,
    MonthlyPnLEntry,
    MonthlyRealizedEntry,
    PortfolioReportData,
    RealizedPeriods,
)

__all__ = [
    "PortfolioReportData",
    "MonthlyPnLEntry",
    "MonthlyRealizedEntry",
    "MonthExtreme",
    "DrawdownEntry",
    "RealizedPeriods",
]
