"""
Service layer: call statistics (clock, storage, backups, migration) and the
upstream API client.
"""

__all__ = [
    "clock",
    "counter_state",
    "stats",
    "stats_backups",
    "stats_migration",
    "stats_storage",
    "upstream_client",
]
