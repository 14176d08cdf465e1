"""
Data models for storage layer.

Records persisted by the local caches. Stored payloads carry no version;
readers fill absent fields with defaults.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _optional_int(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


@dataclass(frozen=True)
class MembershipRecord:
    """Cached answer to "is this subject billed individually or via a team".

    Valid only while ``subject_id`` matches the current credential.
    """
    subject_id: str
    is_team_member: bool
    billing_period_start: str
    last_checked_at: datetime
    team_id: Optional[int] = None
    member_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subjectId": self.subject_id,
            "isTeamMember": self.is_team_member,
            "teamId": self.team_id,
            "memberId": self.member_id,
            "billingPeriodStart": self.billing_period_start,
            "lastCheckedAt": self.last_checked_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MembershipRecord":
        """Rebuild a record; only ``subjectId`` is required."""
        subject_id = data.get("subjectId")
        if not isinstance(subject_id, str) or not subject_id:
            raise ValueError("Membership record has no subjectId")
        return cls(
            subject_id=subject_id,
            is_team_member=bool(data.get("isTeamMember", False)),
            billing_period_start=str(data.get("billingPeriodStart") or ""),
            last_checked_at=_parse_datetime(data.get("lastCheckedAt")) or EPOCH,
            team_id=_optional_int(data.get("teamId")),
            member_id=_optional_int(data.get("memberId")),
        )


@dataclass(frozen=True)
class ExchangeRateSnapshot:
    """USD-based exchange rates as fetched at one point in time."""
    rates: Dict[str, Decimal]
    fetched_at: datetime
    date: Optional[str] = None
    base_currency: str = "USD"

    def is_fresh(self, now: datetime, ttl: timedelta = timedelta(hours=24)) -> bool:
        """True while less than ``ttl`` has passed since the fetch."""
        return now - self.fetched_at < ttl

    def rate_for(self, currency: str) -> Optional[Decimal]:
        return self.rates.get(currency.lower())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "baseCurrency": self.base_currency,
            "date": self.date,
            "rates": {code: str(rate) for code, rate in self.rates.items()},
            "fetchedAt": self.fetched_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExchangeRateSnapshot":
        """Rebuild a snapshot; a missing ``fetchedAt`` makes it stale."""
        date = data.get("date")
        return cls(
            rates=parse_rates(data.get("rates")),
            fetched_at=_parse_datetime(data.get("fetchedAt")) or EPOCH,
            date=date if isinstance(date, str) else None,
            base_currency=str(data.get("baseCurrency") or "USD"),
        )


def parse_rates(raw: Any) -> Dict[str, Decimal]:
    """Keep the numeric entries of a currency-code to rate mapping."""
    if not isinstance(raw, dict):
        return {}
    rates: Dict[str, Decimal] = {}
    for code, value in raw.items():
        if isinstance(value, bool) or not isinstance(value, (int, float, str)):
            continue
        try:
            rates[str(code).lower()] = Decimal(str(value))
        except InvalidOperation:
            continue
    return rates
