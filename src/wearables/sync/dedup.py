"""Deduplication logic for Whoop data ingestion.

Whoop can return several records that land on the same natural key (a
re-scored cycle, two overnight sleeps that both start after midnight UTC).
Only one row per key may be written, so each batch is collapsed in memory
before the upsert.  The database UNIQUE constraints stay authoritative.

Dedup keys and tie-break rules:
    - cycle_metrics:    (user_id, date)                          highest strain
    - recovery_metrics: (user_id, source_platform, metric_date)  highest recovery_score
    - sleep_metrics:    (user_id, source_platform, metric_date)  longest sleep
    - workout_metrics:  (workout_id)                             not deduped

On an exact tie the record seen first wins.
"""

from __future__ import annotations

import logging
from typing import Callable, Hashable, TypeVar

from src.wearables.base import CycleMetric, RecoveryMetric, SleepMetric

logger = logging.getLogger("prime.wearables.sync.dedup")

T = TypeVar("T")


def keep_best_per_key(
    records: list[T],
    key: Callable[[T], Hashable],
    score: Callable[[T], float],
) -> list[T]:
    """Collapse records sharing a key, keeping the one with the highest score.

    A later record replaces the current winner only when its score is strictly
    greater.  Output order follows the first appearance of each key.

    Args:
        records: Canonical records in the order they were fetched.
        key:     Natural-key extractor.
        score:   Tie-break value; bigger wins.

    Returns:
        One record per distinct key.
    """
    best: dict[Hashable, T] = {}
    for record in records:
        k = key(record)
        current = best.get(k)
        if current is None or score(record) > score(current):
            best[k] = record

    dropped = len(records) - len(best)
    if dropped:
        logger.debug("Collapsed %d duplicate record(s) by natural key", dropped)
    return list(best.values())


def dedupe_cycles(records: list[CycleMetric]) -> list[CycleMetric]:
    return keep_best_per_key(records, lambda r: r.natural_key, lambda r: r.strain or 0.0)


def dedupe_recovery(records: list[RecoveryMetric]) -> list[RecoveryMetric]:
    return keep_best_per_key(
        records, lambda r: r.natural_key, lambda r: r.recovery_score or 0.0
    )


def dedupe_sleep(records: list[SleepMetric]) -> list[SleepMetric]:
    return keep_best_per_key(
        records, lambda r: r.natural_key, lambda r: r.sleep_duration_minutes or 0
    )


def build_upsert_query(
    table: str,
    columns: list[str],
    conflict_columns: list[str],
    update_columns: list[str] | None = None,
    touch_column: str | None = None,
) -> str:
    """Build a PostgreSQL INSERT ... ON CONFLICT DO UPDATE (upsert) query.

    Generates idempotent writes — safe to call multiple times with the same
    data.  On conflict, updates the non-key columns.

    Args:
        table:            Target table name.
        columns:          All columns to insert.
        conflict_columns: Columns that define the UNIQUE constraint.
        update_columns:   Columns to update on conflict (defaults to non-key columns).
        touch_column:     Optional timestamp column set to NOW() on update.

    Returns:
        Parameterized SQL string.
    """
    if update_columns is None:
        update_columns = [c for c in columns if c not in conflict_columns]

    placeholders = ", ".join(f"${i + 1}" for i in range(len(columns)))
    col_list = ", ".join(columns)
    conflict_target = ", ".join(conflict_columns)

    if update_columns:
        update_set = ", ".join(
            f"{col} = EXCLUDED.{col}" for col in update_columns
        )
        if touch_column:
            update_set += f", {touch_column} = NOW()"
        do_clause = f"DO UPDATE SET {update_set}"
    else:
        do_clause = "DO NOTHING"

    return (
        f"INSERT INTO {table} ({col_list}) "
        f"VALUES ({placeholders}) "
        f"ON CONFLICT ({conflict_target}) {do_clause}"
    )
