"""
Repository pattern for the local caches.

Both caches store one JSON payload per key. A payload that cannot be read
back is treated as a cache miss.
"""

import json
import sqlite3
from typing import Optional

from metered_usage.config.logger import get_logger
from .db import get_connection
from .models import ExchangeRateSnapshot, MembershipRecord

LOGGER = get_logger("metered_usage.storage")

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS membership_cache (
        subject_id TEXT PRIMARY KEY,
        payload TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS exchange_rate_cache (
        base_currency TEXT PRIMARY KEY,
        payload TEXT NOT NULL,
        fetched_at TEXT NOT NULL
    )
    """,
)


def _create_tables(conn: sqlite3.Connection) -> None:
    for statement in _SCHEMA:
        conn.execute(statement)


def initialize_schema(db_path: str = "metered_usage.db") -> None:
    """Create the cache tables if they don't exist.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        _create_tables(conn)
        conn.commit()
    finally:
        conn.close()


def _decode(payload: str, table: str) -> Optional[dict]:
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        LOGGER.warning("Cache payload is not valid JSON", extra={"table": table, "error": str(e)})
        return None
    if not isinstance(data, dict):
        LOGGER.warning("Cache payload is not an object", extra={"table": table})
        return None
    return data


class MembershipCache:
    """Single-subject cache of team membership.

    Saving a record for a new subject drops the previous subject's record.
    """

    def __init__(self, db_path: str = "metered_usage.db"):
        self.db_path = db_path

    def load(self, subject_id: str) -> Optional[MembershipRecord]:
        """Return the cached record for ``subject_id``, or None on a miss."""
        conn = get_connection(self.db_path)
        try:
            _create_tables(conn)
            row = conn.execute(
                "SELECT payload FROM membership_cache WHERE subject_id = ?",
                (subject_id,),
            ).fetchone()
        finally:
            conn.close()

        if row is None:
            LOGGER.info("Membership cache miss", extra={"subjectId": subject_id})
            return None
        data = _decode(row[0], "membership_cache")
        if data is None:
            return None
        try:
            return MembershipRecord.from_dict(data)
        except ValueError as e:
            LOGGER.warning("Membership cache entry unreadable", extra={"error": str(e)})
            return None

    def save(self, record: MembershipRecord) -> None:
        """Replace the cached record atomically.

        Raises:
            sqlite3.Error: If the write fails
        """
        conn = get_connection(self.db_path)
        try:
            _create_tables(conn)
            conn.execute("BEGIN")
            conn.execute("DELETE FROM membership_cache")
            conn.execute(
                "INSERT INTO membership_cache (subject_id, payload, updated_at) VALUES (?, ?, ?)",
                (
                    record.subject_id,
                    json.dumps(record.to_dict()),
                    record.last_checked_at.isoformat(),
                ),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        LOGGER.info(
            "Membership cache saved",
            extra={"isTeamMember": record.is_team_member, "teamId": record.team_id},
        )


class ExchangeRateCache:
    """Cache of the latest exchange rate snapshot per base currency."""

    def __init__(self, db_path: str = "metered_usage.db"):
        self.db_path = db_path

    def load(self, base_currency: str = "USD") -> Optional[ExchangeRateSnapshot]:
        """Return the stored snapshot regardless of age, or None."""
        conn = get_connection(self.db_path)
        try:
            _create_tables(conn)
            row = conn.execute(
                "SELECT payload FROM exchange_rate_cache WHERE base_currency = ?",
                (base_currency,),
            ).fetchone()
        finally:
            conn.close()

        if row is None:
            LOGGER.info("Exchange rate cache miss", extra={"base": base_currency})
            return None
        data = _decode(row[0], "exchange_rate_cache")
        if data is None:
            return None
        return ExchangeRateSnapshot.from_dict(data)

    def save(self, snapshot: ExchangeRateSnapshot) -> None:
        """Store a snapshot, replacing the previous one.

        Raises:
            sqlite3.Error: If the write fails
        """
        conn = get_connection(self.db_path)
        try:
            _create_tables(conn)
            conn.execute(
                """
                INSERT OR REPLACE INTO exchange_rate_cache (base_currency, payload, fetched_at)
                VALUES (?, ?, ?)
                """,
                (
                    snapshot.base_currency,
                    json.dumps(snapshot.to_dict()),
                    snapshot.fetched_at.isoformat(),
                ),
            )
            conn.commit()
        finally:
            conn.close()
        LOGGER.info("Exchange rates cached", extra={"date": snapshot.date, "currencies": len(snapshot.rates)})

