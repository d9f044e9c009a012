"""Reporting query package."""

from financebank.queries.reports import LedgerReports, month_bounds

__all__ = ["LedgerReports", "month_bounds"]
