"""
Clients for the upstream usage feeds.
"""

from .dashboard_client import DashboardClient, UsageBasedStatus, UsageLimit
from .exchange_rates import ExchangeRateClient

__all__ = ["DashboardClient", "ExchangeRateClient", "UsageBasedStatus", "UsageLimit"]
