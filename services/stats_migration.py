"""
One-time reconciliation of the legacy stats file into the database.

The merge takes the maximum of every counter, so it never lowers a value:
running it again, or with the arguments swapped, gives the same result.
"""

from __future__ import annotations

import logging

from services.counter_state import CounterState
from services.stats_storage import FileBackend, SqlBackend

logger = logging.getLogger(__name__)


def _merge_counts(left: dict[str, int], right: dict[str, int]) -> dict[str, int]:
    merged = dict(left)
    for key, count in right.items():
        merged[key] = max(merged.get(key, 0), count)
    return merged


def merge_states(left: CounterState, right: CounterState) -> CounterState:
    """Key-wise maximum of two states; watermarks take the later period."""
    return CounterState(
        total_calls=max(left.total_calls, right.total_calls),
        daily_calls=_merge_counts(left.daily_calls, right.daily_calls),
        hourly_calls=_merge_counts(left.hourly_calls, right.hourly_calls),
        weekly_calls=_merge_counts(left.weekly_calls, right.weekly_calls),
        monthly_calls=_merge_counts(left.monthly_calls, right.monthly_calls),
        last_updated=max(left.last_updated, right.last_updated),
        last_reset_date=max(left.last_reset_date, right.last_reset_date),
        last_weekly_reset=max(left.last_weekly_reset, right.last_weekly_reset),
        last_monthly_reset=max(left.last_monthly_reset, right.last_monthly_reset),
    )


async def migrate(
    file_backend: FileBackend,
    sql_backend: SqlBackend,
) -> CounterState | None:
    """
    Merge the file snapshot into the database snapshot, save the result and
    record the migration in the database.

    Returns the merged state, or None when there is no file snapshot. The
    source file is left in place. Storage errors propagate to the caller.
    """
    file_state = await file_backend.load()
    if file_state is None:
        logger.info("No legacy stats file at %s, nothing to migrate", file_backend.path)
        return None

    db_state = await sql_backend.load()
    merged = merge_states(db_state, file_state) if db_state else file_state.copy()
    await sql_backend.save(merged)
    await sql_backend.record_migration(str(file_backend.path), merged.total_calls)

    logger.info(
        "Migrated stats from %s: total_calls file=%s db=%s merged=%s",
        file_backend.path,
        file_state.total_calls,
        db_state.total_calls if db_state else 0,
        merged.total_calls,
    )
    return merged


__all__ = ["merge_states", "migrate"]
