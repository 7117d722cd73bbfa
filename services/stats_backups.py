"""
Rotating on-disk backups of the counter state.

Backups are best-effort: failures are logged and reported as ``None`` so the
caller's rollover or reset still goes ahead.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from services.clock import Clock
from services.counter_state import CounterState

logger = logging.getLogger(__name__)

BACKUP_PREFIX = "stats-backup-"
BACKUP_SUFFIX = ".json"
ORIGINAL_SUFFIX = ".original"
DEFAULT_MAX_BACKUPS = 3


def _format_bytes(num_bytes: float) -> str:
    """Format bytes as human-readable string."""
    for unit in ("B", "KB", "MB", "GB"):
        if abs(num_bytes) < 1024.0:
            return f"{num_bytes:.1f} {unit}"
        num_bytes /= 1024.0
    return f"{num_bytes:.1f} TB"


def _timestamp_slug(when: datetime) -> str:
    """Sortable, filename-safe UTC timestamp, e.g. 2025-01-01T08-30-00-123Z."""
    utc = when.astimezone(timezone.utc)
    return utc.strftime("%Y-%m-%dT%H-%M-%S-") + f"{utc.microsecond // 1000:03d}Z"


class BackupManager:
    """Writes timestamped copies of the state and keeps only the newest N."""

    def __init__(
        self,
        backup_dir: str | os.PathLike[str],
        clock: Clock,
        max_backups: int = DEFAULT_MAX_BACKUPS,
        enabled: bool = True,
    ) -> None:
        self.backup_dir = Path(backup_dir)
        self.max_backups = max_backups
        self.enabled = enabled
        self._clock = clock

    def _backup_files(self) -> list[Path]:
        if not self.backup_dir.is_dir():
            return []
        return [
            path
            for path in self.backup_dir.iterdir()
            if path.is_file()
            and path.name.startswith(BACKUP_PREFIX)
            and path.name.endswith(BACKUP_SUFFIX)
        ]

    @staticmethod
    def _creation_key(path: Path) -> tuple[str, int]:
        """(timestamp slug, collision counter) parsed from a backup name."""
        stem = path.name[len(BACKUP_PREFIX):-len(BACKUP_SUFFIX)]
        slug, sep, counter = stem.rpartition("Z-")
        if sep and counter.isdigit():
            return f"{slug}Z", int(counter)
        return stem, 0

    @classmethod
    def _age_key(cls, path: Path) -> tuple[int, str, int]:
        # Names break mtime ties: slug first, then the collision counter.
        return (path.stat().st_mtime_ns, *cls._creation_key(path))

    @staticmethod
    def original_path(backup: Path) -> Path:
        """Where the source-file copy taken alongside ``backup`` lives."""
        return backup.with_name(backup.name + ORIGINAL_SUFFIX)

    def _next_path(self) -> Path:
        slug = _timestamp_slug(self._clock.utc_now())
        counters = [
            counter
            for other_slug, counter in map(self._creation_key, self._backup_files())
            if other_slug == slug
        ]
        if not counters:
            return self.backup_dir / f"{BACKUP_PREFIX}{slug}{BACKUP_SUFFIX}"
        # Counters only grow within a slug, so a pruned slot is never reused.
        return self.backup_dir / f"{BACKUP_PREFIX}{slug}-{max(counters) + 1}{BACKUP_SUFFIX}"

    def create_backup(self, state: CounterState) -> Path | None:
        """Write a backup of ``state`` and prune old ones. Returns the new path."""
        if not self.enabled:
            logger.debug("Backups disabled, skipping")
            return None
        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            path = self._next_path()
            with path.open("w", encoding="utf-8") as f:
                json.dump(state.to_dict(), f, indent=2, ensure_ascii=False)
        except OSError:
            logger.error("Failed to create stats backup in %s", self.backup_dir, exc_info=True)
            return None

        logger.info("Created stats backup %s", path.name)
        self.prune()
        return path

    def _unlink(self, path: Path) -> bool:
        try:
            path.unlink(missing_ok=True)
        except OSError:
            logger.warning("Could not delete old backup %s", path, exc_info=True)
            return False
        return True

    def prune(self) -> int:
        """
        Delete all but the newest ``max_backups`` backups, each together with
        its ``.original`` copy, plus copies whose backup is gone. Returns how
        many backups went.
        """
        try:
            files = sorted(self._backup_files(), key=self._age_key)
            orphans = [
                path
                for path in self.backup_dir.glob(f"{BACKUP_PREFIX}*{BACKUP_SUFFIX}{ORIGINAL_SUFFIX}")
                if not path.with_name(path.name[: -len(ORIGINAL_SUFFIX)]).exists()
            ]
        except OSError:
            logger.error("Failed to list stats backups in %s", self.backup_dir, exc_info=True)
            return 0

        removed = 0
        for path in files[: max(0, len(files) - self.max_backups)]:
            if not self._unlink(path):
                continue
            self._unlink(self.original_path(path))
            removed += 1
            logger.info("Deleted old stats backup %s", path.name)
        for path in orphans:
            if self._unlink(path):
                logger.info("Deleted orphaned source copy %s", path.name)
        return removed

    def count(self) -> int:
        try:
            return len(self._backup_files())
        except OSError:
            logger.error("Failed to count stats backups", exc_info=True)
            return 0

    def list_backups(self) -> list[dict[str, Any]]:
        """Backup metadata, newest first."""
        entries = []
        for path in sorted(self._backup_files(), key=self._age_key, reverse=True):
            info = path.stat()
            modified = datetime.fromtimestamp(info.st_mtime, tz=timezone.utc)
            entries.append({
                "filename": path.name,
                "size": info.st_size,
                "sizeHuman": _format_bytes(info.st_size),
                "created": modified.isoformat(),
                "createdLocal": modified.astimezone(self._clock.tz).strftime("%Y-%m-%d %H:%M:%S"),
            })
        return entries


__all__ = ["BACKUP_PREFIX", "BackupManager", "DEFAULT_MAX_BACKUPS", "ORIGINAL_SUFFIX"]
