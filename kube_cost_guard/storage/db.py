"""
Database connection management.

Provides SQLite connection for the cost record ledger.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "kube_cost_guard.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with a busy timeout suited to concurrent writers
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=30.0)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
