"""
Repository pattern for the cost record ledger.

Persists aggregated cost records to SQLite. Every mapped dimension gets its
own ``dim_<name>`` column next to a JSON copy of all dimensions, so the
ledger can be grouped by dimension with plain SQL.
"""

import json
import re
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import CostRecord

TABLE_NAME = "cost_record"

_BASE_COLUMNS = ["id", "kind", "strategy", "value", "end_time", "dimensions"]


def dimension_column(name: str) -> str:
    """Column name used to store the dimension ``name``."""
    return "dim_" + re.sub(r"[^A-Za-z0-9_]", "_", name)


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


def _table_columns(conn) -> List[str]:
    cursor = conn.execute(f"PRAGMA table_info({TABLE_NAME})")
    return [row[1] for row in cursor.fetchall()]


def initialize_schema(dimension_names: Iterable[str] = (), db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the cost_record table and any missing dimension columns.

    Args:
        dimension_names: Dimension names produced by the configured mapper
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                kind TEXT NOT NULL,
                strategy TEXT NOT NULL,
                value INTEGER NOT NULL,
                end_time TEXT NOT NULL,
                dimensions TEXT NOT NULL
            )
        """)
        existing = set(_table_columns(conn))
        for name in dimension_names:
            column = dimension_column(name)
            if column not in existing:
                conn.execute(f"ALTER TABLE {TABLE_NAME} ADD COLUMN {_quote(column)} TEXT")
                existing.add(column)
        conn.commit()
    finally:
        conn.close()


def _insert(conn, record: CostRecord, columns: List[str]) -> None:
    values: Dict[str, Any] = {
        "kind": record.kind,
        "strategy": record.strategy,
        "value": record.value,
        "end_time": record.end_time.isoformat(),
        "dimensions": json.dumps(record.dimensions, sort_keys=True),
    }
    for name, value in record.dimensions.items():
        column = dimension_column(name)
        if column in columns:
            values[column] = value

    names = ", ".join(_quote(column) for column in values)
    placeholders = ", ".join("?" for _ in values)
    conn.execute(
        f"INSERT INTO {TABLE_NAME} ({names}) VALUES ({placeholders})",
        list(values.values()),
    )


def insert_cost_record(record: CostRecord, db_path: str = DEFAULT_DB_PATH) -> None:
    """Append a single cost record to the ledger.

    Args:
        record: The cost record to persist
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        _insert(conn, record, _table_columns(conn))
        conn.commit()
    finally:
        conn.close()


def insert_cost_records(records: List[CostRecord], db_path: str = DEFAULT_DB_PATH) -> None:
    """Append multiple cost records atomically.

    All records are inserted in a single transaction.

    Args:
        records: Cost records to persist
        db_path: Path to SQLite database file
    """
    if not records:
        return

    conn = get_connection(db_path)
    try:
        columns = _table_columns(conn)
        conn.execute("BEGIN TRANSACTION")
        for record in records:
            _insert(conn, record, columns)
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def _row_to_record(row) -> CostRecord:
    return CostRecord(
        kind=row[0],
        strategy=row[1],
        value=row[2],
        end_time=datetime.fromisoformat(row[3]),
        dimensions=json.loads(row[4]),
    )


def fetch_recent_cost_records(
    kind: Optional[str] = None,
    strategy: Optional[str] = None,
    limit: int = 100,
    db_path: str = DEFAULT_DB_PATH
) -> List[CostRecord]:
    """Fetch recent cost records, optionally filtered by kind and strategy.

    Args:
        kind: Optional filter for a cost kind
        strategy: Optional filter for a pricing strategy
        limit: Maximum number of records to return
        db_path: Path to SQLite database file

    Returns:
        List of cost records ordered by end time (newest first)
    """
    conn = get_connection(db_path)
    try:
        query = f"SELECT kind, strategy, value, end_time, dimensions FROM {TABLE_NAME}"
        params: List[Any] = []
        conditions = []

        if kind:
            conditions.append("kind = ?")
            params.append(kind)
        if strategy:
            conditions.append("strategy = ?")
            params.append(strategy)

        if conditions:
            query += " WHERE " + " AND ".join(conditions)

        query += " ORDER BY end_time DESC, id DESC LIMIT ?"
        params.append(limit)

        cursor = conn.execute(query, params)
        return [_row_to_record(row) for row in cursor.fetchall()]
    finally:
        conn.close()


class CostRepository:
    """Read access to aggregated totals in the cost ledger."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def get_cost_totals(
        self,
        dimension: Optional[str] = None,
        since: Optional[datetime] = None,
        strategy: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Sum recorded costs grouped by kind, strategy and optionally a dimension.

        Args:
            dimension: Optional dimension name to break totals down by
            since: Only include records ending at or after this time
            strategy: Optional filter for a pricing strategy

        Returns:
            One dictionary per group with ``kind``, ``strategy``, ``total`` and,
            when requested, the dimension value; ordered by total descending

        Raises:
            ValueError: If the dimension has no column in the ledger
        """
        conn = get_connection(self.db_path)
        try:
            group_columns = ["kind", "strategy"]
            if dimension is not None:
                column = dimension_column(dimension)
                if column not in _table_columns(conn):
                    raise ValueError(f"Unknown dimension: {dimension}")
                group_columns.append(_quote(column))

            query = f"SELECT {', '.join(group_columns)}, SUM(value) FROM {TABLE_NAME}"
            params: List[Any] = []
            conditions = []
            if since is not None:
                conditions.append("end_time >= ?")
                params.append(since.isoformat())
            if strategy:
                conditions.append("strategy = ?")
                params.append(strategy)
            if conditions:
                query += " WHERE " + " AND ".join(conditions)
            query += f" GROUP BY {', '.join(group_columns)} ORDER BY SUM(value) DESC"

            totals = []
            for row in conn.execute(query, params).fetchall():
                total = {"kind": row[0], "strategy": row[1], "total": row[-1] or 0}
                if dimension is not None:
                    total[dimension] = row[2]
                totals.append(total)
            return totals
        finally:
            conn.close()
