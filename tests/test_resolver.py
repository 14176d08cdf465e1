"""
Unit tests for team and individual quota resolution.
"""

import sqlite3
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from metered_usage.core.credentials import Credential
from metered_usage.core.errors import NotFoundError, TransportError
from metered_usage.core.resolver import (
    PremiumQuota,
    UsageResolver,
    individual_quota,
    member_quota,
)
from metered_usage.sdk.dashboard_client import DashboardClient
from metered_usage.storage.models import MembershipRecord
from metered_usage.storage.repository import MembershipCache

NOW = datetime(2025, 6, 10, 12, 0, tzinfo=timezone.utc)
PERIOD_START = "2025-06-01T00:00:00.000Z"

USAGE = {
    "gpt-4": {"numRequests": 120, "maxRequestUsage": 500},
    "startOfMonth": PERIOD_START,
}
TEAM_USAGE = {
    "teamMemberUsage": [
        {"id": 3, "usageData": [{"modelType": "gpt-4", "numRequests": 1, "maxRequestUsage": 500}]},
        {"id": 7, "usageData": [
            {"modelType": "gpt-3.5", "numRequests": 99},
            {"modelType": "gpt-4", "numRequests": 250, "maxRequestUsage": 500},
        ]},
    ]
}


def _client(teams=None, usage=USAGE, team_usage=TEAM_USAGE, member_id=7):
    client = AsyncMock(spec=DashboardClient)
    client.get_usage.return_value = usage
    client.get_teams.return_value = teams or []
    client.get_team_details.return_value = {"userId": member_id}
    client.get_team_usage.return_value = team_usage
    return client


class TestPremiumQuota:
    """Percentage of the included requests used."""

    def test_percent_rounds(self):
        assert PremiumQuota(current_count=1, limit=3, period_start="").percent_used == 33
        assert PremiumQuota(current_count=2, limit=3, period_start="").percent_used == 67

    def test_zero_limit(self):
        assert PremiumQuota(current_count=10, limit=0, period_start="").percent_used == 0

    def test_over_limit(self):
        assert PremiumQuota(current_count=600, limit=500, period_start="").percent_used == 120


class TestQuotaReaders:
    """Reading counters out of the feeds."""

    def test_individual_quota(self):
        quota = individual_quota(USAGE, "gpt-4")
        assert quota == PremiumQuota(current_count=120, limit=500, period_start=PERIOD_START)

    def test_individual_quota_missing_model(self):
        quota = individual_quota({"startOfMonth": PERIOD_START}, "gpt-4")
        assert quota.current_count == 0
        assert quota.limit == 0

    def test_member_quota(self):
        quota = member_quota(TEAM_USAGE, 7, "gpt-4", PERIOD_START)
        assert quota == PremiumQuota(current_count=250, limit=500, period_start=PERIOD_START)

    def test_member_missing(self):
        with pytest.raises(NotFoundError, match="Member 9"):
            member_quota(TEAM_USAGE, 9, "gpt-4", PERIOD_START)

    def test_member_model_missing(self):
        with pytest.raises(NotFoundError, match="claude"):
            member_quota(TEAM_USAGE, 7, "claude", PERIOD_START)


class TestUsageResolver:
    """Membership resolution and caching."""

    @pytest.mark.asyncio
    async def test_individual_cache_miss(self, credential, db_path):
        client = _client()
        cache = MembershipCache(db_path)
        resolver = UsageResolver(client, cache, clock=lambda: NOW)

        quota = await resolver.resolve_quota(credential)

        assert quota == PremiumQuota(current_count=120, limit=500, period_start=PERIOD_START)
        # usage fetched once and reused for the quota
        assert client.get_usage.await_count == 1
        client.get_team_details.assert_not_called()
        record = cache.load(credential.subject_id)
        assert record.is_team_member is False
        assert record.billing_period_start == PERIOD_START
        assert record.last_checked_at == NOW

    @pytest.mark.asyncio
    async def test_team_member(self, credential, db_path):
        client = _client(teams=[{"id": 42, "name": "Acme"}])
        cache = MembershipCache(db_path)
        resolver = UsageResolver(client, cache, clock=lambda: NOW)

        quota = await resolver.resolve_quota(credential)

        assert quota.current_count == 250
        assert quota.period_start == PERIOD_START
        client.get_team_details.assert_awaited_once_with(credential, 42)
        client.get_team_usage.assert_awaited_once_with(credential, 42)
        record = cache.load(credential.subject_id)
        assert (record.team_id, record.member_id) == (42, 7)

    @pytest.mark.asyncio
    async def test_cache_hit_skips_membership_calls(self, credential, db_path):
        cache = MembershipCache(db_path)
        cache.save(MembershipRecord(
            subject_id=credential.subject_id,
            is_team_member=True,
            billing_period_start=PERIOD_START,
            last_checked_at=NOW,
            team_id=42,
            member_id=7,
        ))
        client = _client()
        resolver = UsageResolver(client, cache)

        quota = await resolver.resolve_quota(credential)

        assert quota.current_count == 250
        client.get_usage.assert_not_called()
        client.get_teams.assert_not_called()
        client.get_team_details.assert_not_called()

    @pytest.mark.asyncio
    async def test_other_subject_is_a_miss(self, credential, db_path):
        cache = MembershipCache(db_path)
        cache.save(MembershipRecord(
            subject_id="auth0|someone_else",
            is_team_member=True,
            billing_period_start=PERIOD_START,
            last_checked_at=NOW,
            team_id=1,
            member_id=1,
        ))
        client = _client()
        record = await UsageResolver(client, cache, clock=lambda: NOW).resolve_membership(credential)

        assert record.subject_id == credential.subject_id
        assert record.is_team_member is False
        client.get_teams.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_record_without_period_start_is_a_miss(self, credential, db_path):
        cache = MembershipCache(db_path)
        cache.save(MembershipRecord(
            subject_id=credential.subject_id,
            is_team_member=False,
            billing_period_start="",
            last_checked_at=NOW,
        ))
        client = _client()
        await UsageResolver(client, cache, clock=lambda: NOW).resolve_membership(credential)
        client.get_usage.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failure_caches_nothing(self, credential, db_path):
        client = _client()
        client.get_teams.side_effect = TransportError("down", status_code=502)
        cache = MembershipCache(db_path)

        with pytest.raises(TransportError):
            await UsageResolver(client, cache).resolve_quota(credential)
        assert cache.load(credential.subject_id) is None

    @pytest.mark.asyncio
    async def test_member_missing_propagates(self, credential, db_path):
        client = _client(teams=[{"id": 42}], member_id=99)
        with pytest.raises(NotFoundError):
            await UsageResolver(client, MembershipCache(db_path)).resolve_quota(credential)

    @pytest.mark.asyncio
    async def test_cache_errors_are_not_fatal(self, credential):
        cache = MagicMock(spec=MembershipCache)
        cache.load.side_effect = sqlite3.OperationalError("locked")
        cache.save.side_effect = sqlite3.OperationalError("locked")
        client = _client()

        quota = await UsageResolver(client, cache, clock=lambda: NOW).resolve_quota(credential)

        assert quota.current_count == 120

    @pytest.mark.asyncio
    async def test_tracked_model_is_configurable(self, db_path):
        credential = Credential(token="t", user_id="u", subject_id="auth0|u")
        usage = dict(USAGE, **{"gpt-4o": {"numRequests": 5, "maxRequestUsage": 50}})
        resolver = UsageResolver(_client(usage=usage), MembershipCache(db_path), tracked_model="gpt-4o")
        quota = await resolver.resolve_quota(credential)
        assert (quota.current_count, quota.limit) == (5, 50)

    @pytest.mark.asyncio
    async def test_unusable_cache_directory_is_not_fatal(self, credential, blocked_db_path):
        client = _client()
        resolver = UsageResolver(client, MembershipCache(blocked_db_path), clock=lambda: NOW)

        quota = await resolver.resolve_quota(credential)

        assert quota == PremiumQuota(current_count=120, limit=500, period_start=PERIOD_START)
