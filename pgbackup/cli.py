"""
Command line entry point.

Usage:
    pgbackup                          # Back up every database once
    pgbackup --connections conf.json  # Use another connections file
    pgbackup --schedule "0 3 * * *"   # Stay resident, back up daily at 03:00 UTC
"""

import argparse
import logging
import sys
from typing import List, Optional

from dotenv import load_dotenv

from pgbackup import configure_logging
from pgbackup.backup import (
    BackupExecutor,
    PgDump,
    S3Storage,
    ToolUnavailableError,
    VersionParseError,
    all_succeeded,
    log_summary
)
from pgbackup.config import Config, ConfigError, load_connections


logger = logging.getLogger(__name__)


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog='pgbackup',
        description='Stream PostgreSQL dumps to S3 and prune old backups'
    )
    parser.add_argument(
        '--connections',
        metavar='PATH',
        help='JSON file listing the databases (default: $CONNECTIONS_FILE or /app/connections.json)'
    )
    parser.add_argument(
        '--schedule',
        metavar='CRON',
        help='Run on a crontab schedule (UTC) instead of once (default: $BACKUP_SCHEDULE)'
    )
    parser.add_argument(
        '--log-level',
        type=str.upper,
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        help='Logging level (default: $LOG_LEVEL or INFO)'
    )
    return parser.parse_args(argv)


def run_backups(config: Config, connections_file: Optional[str] = None) -> int:
    """
    Run one backup batch.

    Args:
        config: Runtime configuration
        connections_file: Overrides config.connections_file

    Returns:
        Process exit code: 0 if every database was backed up, 1 otherwise
    """
    dump = PgDump(
        binary=config.pg_dump_binary,
        connect_timeout=config.pg_connect_timeout,
        sslmode=config.pg_sslmode
    )

    try:
        client_version = dump.get_client_version()
    except (ToolUnavailableError, VersionParseError) as e:
        logger.error(f"Backup process failed: {e}")
        return 1

    path = connections_file or config.connections_file
    logger.info(f"Reading connections from {path}")
    try:
        databases = load_connections(path)
    except ConfigError as e:
        logger.error(f"Backup process failed: {e}")
        return 1

    storage = S3Storage(config.storage, part_size=config.part_size)

    executor = BackupExecutor(databases, dump, storage, client_version=client_version)
    results = executor.run()

    log_summary(results)

    if not all_succeeded(results):
        logger.error("Backup process failed: one or more backups failed")
        return 1

    logger.info("All backups completed successfully - see ya later!")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point of the pgbackup command."""
    args = parse_arguments(argv)

    # .env in the working directory, if any; real environment variables win
    load_dotenv()

    try:
        config = Config.from_env()
    except ConfigError as e:
        configure_logging(args.log_level or 'INFO')
        logger.error(f"Backup process failed: {e}")
        return 1

    configure_logging(args.log_level or config.log_level, config.log_dir)

    schedule = args.schedule or config.schedule
    if schedule:
        from pgbackup.scheduler import run_forever
        try:
            run_forever(lambda: run_backups(config, args.connections), schedule)
        except ValueError as e:
            logger.error(f"Invalid schedule {schedule!r}: {e}")
            return 1
        return 0

    try:
        return run_backups(config, args.connections)
    except Exception:
        logger.exception("Backup process failed")
        return 1


if __name__ == '__main__':
    sys.exit(main())
