"""
APScheduler configuration for resident mode.

Runs the backup batch on a cron schedule instead of once. Each run is
independent: a failed run is logged and the next one still fires.
"""

import logging
from typing import Callable

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger


logger = logging.getLogger(__name__)

BACKUP_JOB_ID = 'database_backups'


def create_scheduler(run_backups: Callable[[], int], cron_expression: str) -> BlockingScheduler:
    """
    Create a scheduler that runs the backups on a cron expression (UTC).

    Args:
        run_backups: Callable running one batch and returning its exit code
        cron_expression: Standard 5-field crontab expression, e.g. '0 3 * * *'

    Returns:
        Configured, not yet started, BlockingScheduler

    Raises:
        ValueError: If the cron expression is invalid
    """
    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one batch at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BlockingScheduler(job_defaults=job_defaults, timezone='UTC')

    trigger = CronTrigger.from_crontab(cron_expression, timezone='UTC')

    scheduler.add_job(
        func=_run_scheduled_backups,
        args=[run_backups],
        trigger=trigger,
        id=BACKUP_JOB_ID,
        name='Database backups',
        replace_existing=True
    )

    return scheduler


def _run_scheduled_backups(run_backups: Callable[[], int]):
    """Run one scheduled batch, keeping the scheduler alive whatever happens."""
    logger.info("Scheduled backup run starting")
    try:
        exit_code = run_backups()
    except Exception:
        logger.exception("Scheduled backup run crashed")
        return

    if exit_code == 0:
        logger.info("Scheduled backup run finished successfully")
    else:
        logger.error(f"Scheduled backup run finished with failures (exit code {exit_code})")


def run_forever(run_backups: Callable[[], int], cron_expression: str):
    """Block, running the backups on schedule until interrupted."""
    scheduler = create_scheduler(run_backups, cron_expression)

    for job in scheduler.get_jobs():
        logger.info(f"Scheduled {job.name} ({cron_expression} UTC)")

    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler stopped")
