"""
Team and individual quota resolution.

Decides whether the premium request quota comes from the individual usage
feed or from the caller's entry in a team's aggregate usage.

States:
- Unresolved: no cached membership for the credential's subject
- Resolved: cached membership (individual or team) with a billing period
  start; no network access is needed to reuse it
"""

import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from metered_usage.config.logger import get_logger
from metered_usage.sdk.dashboard_client import DashboardClient
from metered_usage.storage.models import MembershipRecord
from metered_usage.storage.repository import MembershipCache
from .credentials import Credential
from .errors import NotFoundError

LOGGER = get_logger("metered_usage.resolver")


@dataclass(frozen=True)
class PremiumQuota:
    """Premium requests used against the included monthly count."""
    current_count: int
    limit: int
    period_start: str

    @property
    def percent_used(self) -> int:
        """Rounded percentage of the limit used; 0 when the limit is 0."""
        if self.limit <= 0:
            return 0
        return round(self.current_count * 100 / self.limit)


def _count(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return int(value)


def _int_or_none(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def individual_quota(usage: Dict[str, Any], tracked_model: str) -> PremiumQuota:
    """Read the tracked model's counters from the individual usage feed."""
    model_usage = usage.get(tracked_model)
    if not isinstance(model_usage, dict):
        model_usage = {}
    return PremiumQuota(
        current_count=_count(model_usage.get("numRequests")),
        limit=_count(model_usage.get("maxRequestUsage")),
        period_start=str(usage.get("startOfMonth") or ""),
    )


def member_quota(
    team_usage: Dict[str, Any],
    member_id: int,
    tracked_model: str,
    period_start: str,
) -> PremiumQuota:
    """Find one member's tracked model counters in a team usage response.

    Raises:
        NotFoundError: If the member or its tracked model entry is missing
    """
    members = team_usage.get("teamMemberUsage") or []
    member = next(
        (m for m in members if isinstance(m, dict) and m.get("id") == member_id),
        None,
    )
    if member is None:
        LOGGER.error(
            "Member missing from team usage",
            extra={"memberId": member_id, "available": [m.get("id") for m in members if isinstance(m, dict)]},
        )
        raise NotFoundError(f"Member {member_id} not found in team usage response")

    usage_data = member.get("usageData") or []
    model_usage = next(
        (u for u in usage_data if isinstance(u, dict) and u.get("modelType") == tracked_model),
        None,
    )
    if model_usage is None:
        LOGGER.error(
            "Tracked model missing from member usage",
            extra={"memberId": member_id, "model": tracked_model},
        )
        raise NotFoundError(f"No {tracked_model} usage for member {member_id}")

    return PremiumQuota(
        current_count=_count(model_usage.get("numRequests")),
        limit=_count(model_usage.get("maxRequestUsage")),
        period_start=period_start,
    )


class UsageResolver:
    """Resolves membership and premium quota for a credential.

    Args:
        client: Dashboard API client
        cache: Membership cache, shared for the process lifetime
        tracked_model: Model category whose counters form the quota
        clock: Returns the current aware datetime
    """

    def __init__(
        self,
        client: DashboardClient,
        cache: MembershipCache,
        tracked_model: str = "gpt-4",
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.client = client
        self.cache = cache
        self.tracked_model = tracked_model
        self._clock = clock

    def _cached(self, credential: Credential) -> Optional[MembershipRecord]:
        try:
            record = self.cache.load(credential.subject_id)
        except sqlite3.Error as e:
            LOGGER.warning("Membership cache unreadable", extra={"error": str(e)})
            return None
        if record is None or record.subject_id != credential.subject_id:
            return None
        if not record.billing_period_start:
            return None
        return record

    async def _resolve(self, credential: Credential) -> Tuple[MembershipRecord, Optional[Dict[str, Any]]]:
        cached = self._cached(credential)
        if cached is not None:
            return cached, None

        LOGGER.info("Membership cache miss, querying usage and teams")
        usage = await self.client.get_usage(credential)
        teams = await self.client.get_teams(credential)

        is_team_member = len(teams) > 0
        team_id = _int_or_none(teams[0].get("id")) if is_team_member else None
        member_id = None
        if is_team_member and team_id is not None:
            details = await self.client.get_team_details(credential, team_id)
            member_id = _int_or_none(details.get("userId"))
        LOGGER.info(
            "Membership resolved",
            extra={"isTeamMember": is_team_member, "teamId": team_id, "teamCount": len(teams)},
        )

        record = MembershipRecord(
            subject_id=credential.subject_id,
            is_team_member=is_team_member,
            billing_period_start=str(usage.get("startOfMonth") or ""),
            last_checked_at=self._clock(),
            team_id=team_id,
            member_id=member_id,
        )
        try:
            self.cache.save(record)
        except sqlite3.Error as e:
            LOGGER.warning("Could not save membership cache", extra={"error": str(e)})
        return record, usage

    async def resolve_membership(self, credential: Credential) -> MembershipRecord:
        """Return cached membership, querying the feeds on a miss.

        Raises:
            AuthError, TransportError: If any feed call fails; nothing is
                cached in that case
        """
        record, _ = await self._resolve(credential)
        return record

    async def resolve_quota(self, credential: Credential) -> PremiumQuota:
        """Return the premium quota from the team or individual feed.

        Raises:
            NotFoundError: If the team usage response lacks the member
            AuthError, TransportError: If any feed call fails
        """
        record, usage = await self._resolve(credential)

        if record.is_team_member and record.team_id is not None and record.member_id is not None:
            team_usage = await self.client.get_team_usage(credential, record.team_id)
            return member_quota(team_usage, record.member_id, self.tracked_model, record.billing_period_start)

        if usage is None:
            usage = await self.client.get_usage(credential)
        return individual_quota(usage, self.tracked_model)
