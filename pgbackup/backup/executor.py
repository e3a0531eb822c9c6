"""
Backup executor - orchestrates the backup workflow for every database.

Workflow per database:
1. Parse the connection string
2. Check the server version against the local pg_dump (warning only)
3. Compute the object key
4. Start pg_dump and stream its output to S3
5. Delete backups older than the retention window

Databases are processed one at a time, in configuration order. A failure is
recorded in that database's BackupResult and the next database still runs.
"""

import logging
import time
from typing import Iterable, List, Optional

from pgbackup.models import DatabaseConfig, BackupResult
from .connection import parse_connection_string
from .dump import PgDump
from .retention import RetentionManager, RetentionError
from .storage import S3Storage


logger = logging.getLogger(__name__)


class BackupExecutor:
    """
    Runs the backup workflow over a list of databases.
    """

    def __init__(self, databases: Iterable[DatabaseConfig], dump: PgDump, storage: S3Storage,
                 retention: Optional[RetentionManager] = None, client_version: Optional[int] = None):
        """
        Initialize backup executor.

        Args:
            databases: Databases to back up, in order
            dump: pg_dump wrapper
            storage: Destination storage
            retention: Retention enforcer (default: one over `storage`)
            client_version: Local pg_dump major version, if already known
        """
        self.databases = list(databases)
        self.dump = dump
        self.storage = storage
        self.retention = retention or RetentionManager(storage)
        self.client_version = client_version

    def prepare(self) -> int:
        """
        Resolve the local pg_dump version once per run.

        Raises:
            ToolUnavailableError: If pg_dump cannot be run
            VersionParseError: If its version cannot be determined
        """
        self.client_version = self.dump.get_client_version()
        return self.client_version

    def run(self) -> List[BackupResult]:
        """
        Back up every configured database.

        Returns:
            One BackupResult per database, in configuration order
        """
        if self.client_version is None:
            self.prepare()

        logger.info(f"Found {len(self.databases)} database connections")

        results = []
        for db_config in self.databases:
            results.append(self.backup_database(db_config))
        return results

    def backup_database(self, db_config: DatabaseConfig) -> BackupResult:
        """
        Back up a single database and apply its retention policy.

        Never raises; failures are reported in the result.
        """
        logger.info(f"Processing database: {db_config.name}")
        start_time = time.monotonic()

        try:
            key, deleted_count = self._execute_workflow(db_config)
        except Exception as e:
            logger.error(f"Error processing {db_config.name}: {e}", exc_info=True)
            return BackupResult(
                database=db_config.name,
                success=False,
                error=e,
                deleted_backups=e.deleted_count if isinstance(e, RetentionError) else None,
                duration_seconds=time.monotonic() - start_time
            )

        return BackupResult(
            database=db_config.name,
            success=True,
            path=key,
            deleted_backups=deleted_count,
            duration_seconds=time.monotonic() - start_time
        )

    def _execute_workflow(self, db_config: DatabaseConfig):
        details = parse_connection_string(db_config.connection)

        server_version = self.dump.check_server_version(details)
        self.dump.check_compatibility(self.client_version, server_version)

        s3_key = self.storage.create_s3_path(db_config.name, db_config.folder)
        logger.info(f"Backup path: {s3_key}")

        logger.info(f"Creating dump for {details.database}")
        with self.dump.create_dump_stream(details) as dump_stream:
            logger.info(f"Uploading to S3: {db_config.name}")
            uploaded_key = self.storage.upload_stream(dump_stream, s3_key)
        logger.info(f"Backup completed: {uploaded_key}")

        logger.info(f"Applying retention policy ({db_config.retention_days} days) for {db_config.name}")
        deleted_count = self.retention.delete_old_backups(
            db_config.name,
            db_config.folder,
            db_config.retention_days
        )

        return uploaded_key, deleted_count


def all_succeeded(results: Iterable[BackupResult]) -> bool:
    return all(result.success for result in results)


def log_summary(results: List[BackupResult]):
    """Log the outcome of every database and the overall status."""
    logger.info("Backup results:")
    for result in results:
        if result.success:
            logger.info(str(result))
        else:
            logger.error(str(result))

        if result.deleted_backups:
            logger.info(f"  - Deleted {result.deleted_backups} old backups")

    failed_count = sum(1 for result in results if not result.success)
    if failed_count:
        logger.error(f"{failed_count} of {len(results)} backups failed")
    else:
        logger.info("All backups completed successfully")
