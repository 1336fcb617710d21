"""
APScheduler configuration for running the agent as a long-lived daemon.

Manages:
- The scheduled backup run (cron expression, daily at 2 AM UTC by default)
- Periodic retry queue draining
"""

import logging

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger


logger = logging.getLogger(__name__)


def crontab_lines(binary_path: str, log_path: str = '/var/log/backup-agent.log'):
    """Crontab entries for running the agent from cron instead of the daemon."""
    return [
        ('Run backups daily at 2:00 AM', f"0 2 * * * {binary_path} backup >> {log_path} 2>&1"),
        ('Alternative: Run backups every 6 hours', f"0 */6 * * * {binary_path} backup >> {log_path} 2>&1"),
        ('Process retry queue every 5 minutes', f"*/5 * * * * {binary_path} retry >> {log_path} 2>&1"),
    ]


def run_backups(agent):
    """Scheduled backup run. Errors are logged so the scheduler keeps running."""
    try:
        result = agent.runner.run()
        logger.info(
            f"Scheduled backup run finished: {result.successful} successful, "
            f"{result.failed} failed, {result.queue_depth} queued"
        )
    except Exception as e:
        logger.exception(f"Scheduled backup run aborted: {e}")


def drain_retry_queue(agent):
    """Scheduled retry queue pass."""
    try:
        agent.runner.drain_retry_queue()
    except Exception as e:
        logger.exception(f"Retry queue pass aborted: {e}")


def init_scheduler(agent):
    """
    Create a blocking scheduler with the backup and retry jobs.

    Args:
        agent: Agent built by create_agent()

    Returns:
        Configured (not yet started) BlockingScheduler
    """
    config = agent.config

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BlockingScheduler(
        job_defaults=job_defaults,
        timezone=config.get('SCHEDULER_TIMEZONE', 'UTC')
    )

    scheduler.add_job(
        func=run_backups,
        args=[agent],
        trigger=CronTrigger.from_crontab(config['BACKUP_SCHEDULE'], timezone=config.get('SCHEDULER_TIMEZONE', 'UTC')),
        id='backup_run',
        name='Backup Run',
        replace_existing=True
    )

    scheduler.add_job(
        func=drain_retry_queue,
        args=[agent],
        trigger=IntervalTrigger(minutes=config['RETRY_INTERVAL_MINUTES']),
        id='retry_queue',
        name='Retry Queue',
        replace_existing=True
    )

    return scheduler


def start_scheduler(scheduler):
    """Run the scheduler until interrupted."""
    for job in scheduler.get_jobs():
        logger.info(f"Scheduled job: {job.id} ({job.name}, trigger: {job.trigger})")

    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler stopped")
