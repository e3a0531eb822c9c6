"""
Retention policy enforcement for backups.

Backups are aged by the timestamp embedded in their object key, not by the
object's LastModified date, so re-uploaded or copied backups keep their age.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from .keys import parse_backup_timestamp
from .storage import S3Storage, StorageError


logger = logging.getLogger(__name__)


class RetentionError(Exception):
    """
    Raised when old backups cannot be listed or deleted.

    deleted_count holds the number of backups removed before the failure.
    """

    def __init__(self, message: str, deleted_count: int = 0):
        super().__init__(message)
        self.deleted_count = deleted_count


class RetentionManager:
    """
    Deletes a database's backups once they fall out of its retention window.
    """

    def __init__(self, storage: S3Storage, page_size: Optional[int] = None):
        """
        Initialize retention manager.

        Args:
            storage: Storage holding the backups
            page_size: Keys per list request (default: S3's own page size)
        """
        self.storage = storage
        self.page_size = page_size

    @staticmethod
    def cutoff(retention_days: int, now: Optional[datetime] = None) -> datetime:
        """Backups strictly older than the returned time are expired."""
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now - timedelta(days=retention_days)

    def delete_old_backups(self, name: str, folder: Optional[str], retention_days: int,
                           now: Optional[datetime] = None) -> int:
        """
        Delete backups of a database older than the retention period.

        Objects under the prefix that are not backups of `name` are left alone.
        Deletions happen one at a time; the first failed delete stops the run.

        Args:
            name: Database name used in backup keys
            folder: Folder the database's backups are stored in
            retention_days: Days to keep backups
            now: Reference time (default: current UTC time)

        Returns:
            Number of backups deleted

        Raises:
            RetentionError: If listing or deleting fails
        """
        prefix = self.storage.backup_prefix(folder)
        cutoff_date = self.cutoff(retention_days, now)

        logger.info(f"Checking for old backups in {prefix or '<bucket root>'} (retention: {retention_days} days)")
        logger.debug(f"Cutoff date: {cutoff_date.isoformat()}")

        try:
            objects = self.storage.list_objects(prefix, page_size=self.page_size)
        except StorageError as e:
            raise RetentionError(f"Failed to list backups of {name}: {e}") from e

        deleted_count = 0
        for obj in objects:
            key = obj['Key']
            backup_date = parse_backup_timestamp(name, key)
            if backup_date is None or backup_date >= cutoff_date:
                continue

            logger.info(f"Deleting old backup: {key}")
            try:
                self.storage.delete(key)
            except StorageError as e:
                raise RetentionError(
                    f"Failed to delete {key} after deleting {deleted_count} old backups: {e}",
                    deleted_count=deleted_count
                ) from e
            deleted_count += 1

        logger.info(f"Deleted {deleted_count} old backups")
        return deleted_count
