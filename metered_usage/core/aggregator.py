"""
Usage aggregation.

Builds one consolidated snapshot per refresh: the premium quota plus the
usage-based charges of the active billing month and the month before it.
"""

from dataclasses import dataclass
from datetime import date
from typing import Awaitable, Callable, Optional

from metered_usage.config.logger import get_logger
from metered_usage.sdk.dashboard_client import DashboardClient
from .credentials import Credential
from .errors import AuthError
from .month_builder import MonthUsage, build_month_from_invoice
from .resolver import PremiumQuota, UsageResolver
from .unknown_models import UnknownModelTracker

LOGGER = get_logger("metered_usage.aggregator")

CredentialProvider = Callable[[], Awaitable[Optional[str]]]


@dataclass(frozen=True)
class BillingPeriod:
    """A calendar month used as a usage-based billing period."""
    month: int
    year: int

    def previous(self) -> "BillingPeriod":
        if self.month == 1:
            return BillingPeriod(month=12, year=self.year - 1)
        return BillingPeriod(month=self.month - 1, year=self.year)


def billing_period_anchor(today: date, cutoff_day: int = 3) -> BillingPeriod:
    """Active usage-based billing period for a given day.

    Before the cutoff day the previous calendar month is still active.
    """
    current = BillingPeriod(month=today.month, year=today.year)
    if today.day < cutoff_day:
        return current.previous()
    return current


@dataclass(frozen=True)
class UsageSnapshot:
    """Everything one refresh produced. Never mutated after return."""
    current_month: MonthUsage
    last_month: MonthUsage
    premium_quota: PremiumQuota

    @property
    def uses_fallback(self) -> bool:
        """True when the active month has no items yet."""
        return not self.current_month.items

    @property
    def active_month(self) -> MonthUsage:
        """The active month, or the month before it while it is still empty."""
        return self.last_month if self.uses_fallback else self.current_month


class UsageAggregator:
    """Orchestrates one refresh.

    Args:
        client: Dashboard API client
        resolver: Team/individual quota resolver
        tracker: Unknown model tracker shared for the process lifetime
        cutoff_day: First day of the month on which that month is active
        today: Returns the current local date
    """

    def __init__(
        self,
        client: DashboardClient,
        resolver: UsageResolver,
        tracker: Optional[UnknownModelTracker] = None,
        cutoff_day: int = 3,
        today: Callable[[], date] = date.today,
    ):
        self.client = client
        self.resolver = resolver
        self.tracker = tracker
        self.cutoff_day = cutoff_day
        self._today = today

    async def _build_month(self, credential: Credential, period: BillingPeriod) -> MonthUsage:
        invoice = await self.client.get_monthly_invoice(credential, period.month, period.year)
        return build_month_from_invoice(period.month, period.year, invoice, self.tracker)

    async def fetch_snapshot(self, credential: Credential) -> UsageSnapshot:
        """Build a complete snapshot for one credential.

        Raises:
            AuthError, TransportError, NotFoundError: Propagated from the
                feeds; no partial snapshot is returned
        """
        quota = await self.resolver.resolve_quota(credential)

        active = billing_period_anchor(self._today(), self.cutoff_day)
        previous = active.previous()
        current_month = await self._build_month(credential, active)
        last_month = await self._build_month(credential, previous)

        snapshot = UsageSnapshot(current_month=current_month, last_month=last_month, premium_quota=quota)
        LOGGER.info(
            "Usage snapshot built",
            extra={
                "activeMonth": f"{snapshot.active_month.month}/{snapshot.active_month.year}",
                "fallback": snapshot.uses_fallback,
            },
        )
        return snapshot

    async def refresh(self, credential_provider: CredentialProvider) -> UsageSnapshot:
        """Fetch a snapshot, re-resolving the credential once if it is rejected.

        Raises:
            AuthError: If no credential is available, or the retry is also
                rejected
            TransportError, NotFoundError: Propagated unchanged
        """
        token = await credential_provider()
        if not token:
            raise AuthError("No session token available")
        try:
            return await self.fetch_snapshot(Credential.from_session_token(token))
        except AuthError:
            LOGGER.warning("Credential rejected, re-resolving once")
            new_token = await credential_provider()
            if not new_token:
                raise
        return await self.fetch_snapshot(Credential.from_session_token(new_token))
