"""Deduplication keys and insert-once SQL for glucose readings.

Dedup key:
    - glucose_readings: (user_id, recorded_at, source) — UNIQUE constraint

Replayed or overlapping fetch windows hit this constraint and become no-ops
rather than errors; the constraint is the authoritative dedup mechanism.
"""

from __future__ import annotations

from datetime import datetime, timezone
from uuid import UUID

READINGS_TABLE = "glucose_readings"
READING_COLUMNS = ["user_id", "recorded_at", "value_mgdl", "trend", "source", "raw"]
READING_CONFLICT_COLUMNS = ["user_id", "recorded_at", "source"]


def reading_key(user_id: UUID, recorded_at: datetime, source: str) -> str:
    """Generate the dedup key for a glucose reading.

    Matches the UNIQUE constraint on glucose_readings:
    (user_id, recorded_at, source).  Timestamps are rendered in UTC so the
    same instant expressed in two offsets yields one key.
    """
    instant = recorded_at.astimezone(timezone.utc).isoformat()
    return f"{user_id}:{source}:{instant}"


def build_insert_ignore_query(
    table: str,
    columns: list[str],
    conflict_columns: list[str],
    returning: str | None = None,
    casts: dict[str, str] | None = None,
) -> str:
    """Build a PostgreSQL INSERT ... ON CONFLICT DO NOTHING query.

    Rows already present are left untouched, so the write is safe to repeat
    with the same data.  With ``returning``, a conflicting insert returns no
    row, which is how callers tell an insert from a duplicate.

    Args:
        table:            Target table name.
        columns:          All columns to insert.
        conflict_columns: Columns that define the UNIQUE constraint.
        returning:        Column to return for newly inserted rows.
        casts:            Optional column → SQL type casts (e.g. raw → jsonb).

    Returns:
        Parameterized SQL string.
    """
    casts = casts or {}
    placeholders = ", ".join(
        f"${i + 1}::{casts[col]}" if col in casts else f"${i + 1}"
        for i, col in enumerate(columns)
    )
    col_list = ", ".join(columns)
    conflict_target = ", ".join(conflict_columns)

    query = (
        f"INSERT INTO {table} ({col_list}) "
        f"VALUES ({placeholders}) "
        f"ON CONFLICT ({conflict_target}) DO NOTHING"
    )
    if returning:
        query += f" RETURNING {returning}"
    return query


INSERT_READING_SQL = build_insert_ignore_query(
    READINGS_TABLE,
    READING_COLUMNS,
    READING_CONFLICT_COLUMNS,
    returning="id",
    casts={"raw": "jsonb"},
)
