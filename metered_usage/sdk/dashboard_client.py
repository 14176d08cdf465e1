"""
Dashboard API client.

Async access to the quota, team, invoice and spending-limit feeds. Every
call authenticates with the session token cookie.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from metered_usage.config.logger import get_logger
from metered_usage.core.credentials import Credential
from metered_usage.core.errors import TransportError, UsageError
from .http import decode_json, send_request

LOGGER = get_logger("metered_usage.sdk.dashboard")

DEFAULT_BASE_URL = "https://www.cursor.com"
SESSION_COOKIE = "WorkosCursorSessionToken"


@dataclass(frozen=True)
class UsageLimit:
    """Spending cap for usage-based billing."""
    hard_limit: Optional[float]
    no_usage_based_allowed: bool


@dataclass(frozen=True)
class UsageBasedStatus:
    """Whether usage-based billing is switched on, and its cap."""
    is_enabled: bool
    limit: Optional[float] = None


class DashboardClient:
    """Client for the dashboard feeds.

    Args:
        base_url: Scheme and host of the dashboard API
        timeout: Per-request timeout in seconds
        transport: Optional httpx transport, used by tests
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def _call(
        self,
        method: str,
        path: str,
        credential: Credential,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
    ) -> httpx.Response:
        return await send_request(
            method,
            f"{self.base_url}{path}",
            headers={"Cookie": f"{SESSION_COOKIE}={credential.token}"},
            params=params,
            json=json,
            timeout=self.timeout,
            transport=self._transport,
        )

    async def _call_json(self, method: str, path: str, credential: Credential, **kwargs) -> Dict[str, Any]:
        payload = decode_json(await self._call(method, path, credential, **kwargs))
        if not isinstance(payload, dict):
            raise TransportError(f"{path} did not return an object")
        return payload

    async def get_usage(self, credential: Credential) -> Dict[str, Any]:
        """Individual premium quota feed, keyed by model category."""
        return await self._call_json("GET", "/api/usage", credential, params={"user": credential.user_id})

    async def get_teams(self, credential: Credential) -> List[Dict[str, Any]]:
        """Teams the subject belongs to, possibly empty."""
        payload = await self._call_json("POST", "/api/dashboard/teams", credential, json={})
        teams = payload.get("teams") or []
        return [team for team in teams if isinstance(team, dict)]

    async def get_team_details(self, credential: Credential, team_id: int) -> Dict[str, Any]:
        """Team membership feed; ``userId`` is the caller's member id."""
        return await self._call_json("POST", "/api/dashboard/team", credential, json={"teamId": team_id})

    async def get_team_usage(self, credential: Credential, team_id: int) -> Dict[str, Any]:
        """Aggregate usage of every team member."""
        return await self._call_json(
            "POST", "/api/dashboard/get-team-usage", credential, json={"teamId": team_id}
        )

    async def get_monthly_invoice(self, credential: Credential, month: int, year: int) -> Dict[str, Any]:
        """Invoice lines for one calendar month."""
        LOGGER.info("Fetching monthly invoice", extra={"month": month, "year": year})
        return await self._call_json(
            "POST",
            "/api/dashboard/get-monthly-invoice",
            credential,
            json={"month": month, "year": year, "includeUsageEvents": False},
        )

    async def get_usage_limit(self, credential: Credential) -> UsageLimit:
        payload = await self._call_json("POST", "/api/dashboard/get-hard-limit", credential, json={})
        hard_limit = payload.get("hardLimit")
        if isinstance(hard_limit, bool) or not isinstance(hard_limit, (int, float)):
            hard_limit = None
        return UsageLimit(
            hard_limit=hard_limit,
            no_usage_based_allowed=bool(payload.get("noUsageBasedAllowed", False)),
        )

    async def set_usage_limit(
        self,
        credential: Credential,
        hard_limit: float,
        no_usage_based_allowed: bool,
    ) -> None:
        """Set the usage-based spending cap, or switch usage-based billing off."""
        await self._call(
            "POST",
            "/api/dashboard/set-hard-limit",
            credential,
            json={"hardLimit": hard_limit, "noUsageBasedAllowed": no_usage_based_allowed},
        )
        LOGGER.info(
            "Usage limit updated",
            extra={"hardLimit": hard_limit, "enabled": not no_usage_based_allowed},
        )

    async def check_usage_based_status(self, credential: Credential) -> UsageBasedStatus:
        """Usage-based billing status; reports disabled when the feed fails."""
        try:
            limit = await self.get_usage_limit(credential)
        except UsageError as e:
            LOGGER.warning("Could not check usage-based status", extra={"error": str(e)})
            return UsageBasedStatus(is_enabled=False)
        return UsageBasedStatus(is_enabled=not limit.no_usage_based_allowed, limit=limit.hard_limit)

    async def get_billing_portal_url(self, credential: Credential) -> str:
        response = await self._call("GET", "/api/stripeSession", credential)
        return response.text.replace('"', "")
