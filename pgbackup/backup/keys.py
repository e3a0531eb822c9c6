"""
Object key naming for backups.

Keys look like ``[prefix/][folder/]<name>_<YYYYMMDD>_<HHMMSS>.dump``. Key
generation and the retention parser both use TIMESTAMP_FORMAT, so keys that
are written can always be read back.
"""

import re
from datetime import datetime, timezone
from typing import Optional


TIMESTAMP_FORMAT = '%Y%m%d_%H%M%S'
BACKUP_EXTENSION = '.dump'


def _segment(value: Optional[str]) -> str:
    return value.strip('/') if value else ''


def backup_prefix(global_prefix: Optional[str] = None, folder: Optional[str] = None) -> str:
    """
    Build the key prefix under which a database's backups live.

    Args:
        global_prefix: Bucket-wide prefix (optional)
        folder: Per-database folder (optional)

    Returns:
        '' or a prefix ending with '/'
    """
    prefix = ''
    for segment in (_segment(global_prefix), _segment(folder)):
        if segment:
            prefix += f"{segment}/"
    return prefix


def backup_filename(name: str, when: datetime) -> str:
    """Return '<name>_<YYYYMMDD>_<HHMMSS>.dump' for a UTC point in time."""
    if when.tzinfo is not None:
        when = when.astimezone(timezone.utc)
    return f"{name}_{when.strftime(TIMESTAMP_FORMAT)}{BACKUP_EXTENSION}"


def build_backup_key(name: str, global_prefix: Optional[str] = None,
                     folder: Optional[str] = None, when: Optional[datetime] = None) -> str:
    """
    Build the full object key of a new backup.

    Args:
        name: Database name from the connections file
        global_prefix: Bucket-wide prefix (optional)
        folder: Per-database folder (optional)
        when: Backup start time (default: now, UTC)

    Returns:
        Object key
    """
    when = when or datetime.now(timezone.utc)
    return backup_prefix(global_prefix, folder) + backup_filename(name, when)


def backup_pattern(name: str) -> re.Pattern:
    return re.compile(rf'{re.escape(name)}_(\d{{8}})_(\d{{6}}){re.escape(BACKUP_EXTENSION)}')


def parse_backup_timestamp(name: str, key: str) -> Optional[datetime]:
    """
    Extract the backup time from an object key.

    Only the trailing file name is considered and it must belong to the given
    database exactly: 'mydb_20240101_000000.dump' is not a backup of 'db'.

    Args:
        name: Database name
        key: Object key or bare file name

    Returns:
        Timezone-aware UTC datetime, or None if the key is not a backup of `name`
    """
    filename = key.rsplit('/', 1)[-1]
    match = backup_pattern(name).fullmatch(filename)
    if not match:
        return None

    try:
        stamp = datetime.strptime(f"{match.group(1)}_{match.group(2)}", TIMESTAMP_FORMAT)
    except ValueError:
        # Digits in the right places but not a real date, e.g. 20241399
        return None

    return stamp.replace(tzinfo=timezone.utc)
