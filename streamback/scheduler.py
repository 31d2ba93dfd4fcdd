"""
APScheduler configuration for periodic streaming backups.

Manages:
- The interval job that triggers a backup every BACKUP_INTERVAL_MINUTES
- The next-run time reported in the run state
"""

import logging

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, EVENT_JOB_MISSED
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from streamback.backup.executor import BackupBusyError


logger = logging.getLogger(__name__)

BACKUP_JOB_ID = 'streaming_backup'

# Global scheduler instance and the executor it drives
scheduler = None
backup_executor = None


def init_scheduler(executor, interval_minutes: int):
    """
    Initialize and configure APScheduler.

    Args:
        executor: BackupExecutor whose trigger() runs each cycle
        interval_minutes: Minutes between scheduled cycles
    """
    global scheduler, backup_executor

    if scheduler is not None:
        return scheduler

    backup_executor = executor

    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BackgroundScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone='UTC'
    )

    scheduler.add_job(
        func=run_scheduled_backup,
        trigger=IntervalTrigger(minutes=interval_minutes),
        id=BACKUP_JOB_ID,
        name='Streaming Backup',
        replace_existing=True
    )
    scheduler.add_listener(_on_job_event, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR | EVENT_JOB_MISSED)

    return scheduler


def start_scheduler():
    """Start the APScheduler."""
    global scheduler

    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if not scheduler.running:
        scheduler.start()
        logger.info("Scheduler started (state=%s)", scheduler.state)
        refresh_next_backup()
    else:
        logger.info("Scheduler already running (state=%s)", scheduler.state)


def stop_scheduler():
    """Stop the APScheduler."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("Scheduler stopped")


def run_scheduled_backup():
    """Scheduled cycle. A busy executor skips the cycle; the next tick is the retry."""
    logger.info("Scheduled cycle starting...")
    try:
        backup_executor.trigger()
    except BackupBusyError:
        logger.warning("Backup already running, skipping scheduled cycle")


def refresh_next_backup():
    """Copy the backup job's next run time into the run state."""
    if scheduler is None or backup_executor is None:
        return

    job = scheduler.get_job(BACKUP_JOB_ID)
    next_run = job.next_run_time if job else None
    backup_executor.run_state.set_next_backup(next_run)


def _on_job_event(event):
    if event.job_id == BACKUP_JOB_ID:
        refresh_next_backup()


def is_scheduler_running() -> bool:
    return scheduler is not None and scheduler.running
