"""
Database connection management.

Provides the SQLite connection backing the local caches.
"""

import sqlite3
from pathlib import Path


def get_connection(db_path: str = "metered_usage.db") -> sqlite3.Connection:
    """Create and return a SQLite connection, creating parent directories.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection

    Raises:
        sqlite3.OperationalError: If the parent directory cannot be created
    """
    path = Path(db_path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise sqlite3.OperationalError(f"Cannot use cache directory {path.parent}: {e}") from e
    return sqlite3.connect(str(path))
