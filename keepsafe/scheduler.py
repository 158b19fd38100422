"""
APScheduler configuration and job polling for keepsafe.

Manages:
- One polling job per backup plan and per pending restore plan
- Manual backup triggers
- Removal of jobs whose plans disappeared or finished

Each polling job calls BackupJob.execute / RestoreJob.execute; the due
check and the in-flight guard live in the job, the loop is APScheduler's.
"""

import logging
from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.pool import ThreadPoolExecutor

from keepsafe.models import find_plan


logger = logging.getLogger(__name__)

BACKUP_PREFIX = 'backup_'
RESTORE_PREFIX = 'restore_'

# Global scheduler instance and service reference
scheduler = None
service_ref = None


def init_scheduler(service):
    """
    Initialize and configure APScheduler.

    Args:
        service: keepsafe Service instance
    """
    global scheduler, service_ref

    if scheduler is not None:
        return scheduler

    # Store service reference for use in background threads
    service_ref = service

    jobstores = {
        'default': MemoryJobStore()
    }

    executors = {
        'default': ThreadPoolExecutor(max_workers=service.config.get('SCHEDULER_MAX_WORKERS', 3))
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending polls into one
        'max_instances': 1,  # Only one poll of a job at a time
        'misfire_grace_time': 30
    }

    scheduler = BackgroundScheduler(
        jobstores=jobstores,
        executors=executors,
        job_defaults=job_defaults,
        timezone=service.config.get('SCHEDULER_TIMEZONE', 'UTC')
    )

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after the service is created.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if not scheduler.running:
        scheduler.start()
        logger.info(f"APScheduler started successfully (state={scheduler.state})")

        jobs = scheduler.get_jobs()
        if jobs:
            logger.info(f"Loaded {len(jobs)} polling jobs")
        else:
            logger.info("No polling jobs loaded")
    else:
        logger.info(f"Scheduler already running (state={scheduler.state})")


def stop_scheduler():
    """Stop the APScheduler."""
    global scheduler, service_ref

    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")

    scheduler = None
    service_ref = None


def sync_jobs(service=None):
    """
    Synchronize plans to scheduler polling jobs.

    Adds a polling job for each backup plan and each restore plan that has
    not been retired, and removes jobs whose plan no longer exists.

    This function should be called:
    - After startup
    - After the plans file changed
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    service = service or service_ref
    backups, restores = service.get_plans()
    interval = service.config.get('SCHEDULER_POLL_SECONDS', 10)

    wanted = {}
    for plan in backups:
        wanted[f"{BACKUP_PREFIX}{plan.id}"] = (_poll_backup, plan.id, f"Backup: {plan.name}")
    for plan in restores:
        wanted[f"{RESTORE_PREFIX}{plan.id}"] = (_poll_restore, plan.id, f"Restore: {plan.name}")

    scheduled_ids = {
        job.id for job in scheduler.get_jobs()
        if job.id.startswith(BACKUP_PREFIX) or job.id.startswith(RESTORE_PREFIX)
    }

    for job_id, (func, plan_id, name) in wanted.items():
        if job_id in scheduled_ids:
            scheduled_ids.remove(job_id)
            continue

        scheduler.add_job(
            func=func,
            args=[plan_id],
            trigger=IntervalTrigger(seconds=interval),
            id=job_id,
            name=name,
            next_run_time=datetime.now(timezone.utc),
            replace_existing=True
        )
        logger.info(f"Scheduled polling job {job_id} (every {interval}s)")

    # Remove any leftover jobs whose plans no longer exist
    for leftover_id in scheduled_ids:
        _remove_job(leftover_id)


def _remove_job(job_id: str):
    try:
        scheduler.remove_job(job_id)
        logger.info(f"Removed polling job: {job_id}")
    except Exception as e:
        logger.warning(f"Failed to remove polling job {job_id}: {e}")


def _poll_backup(plan_id: str):
    """
    Poll one backup job in scheduler context.

    Failures are recorded on the job run; anything escaping is logged so the
    polling job keeps running.
    """
    try:
        run = service_ref.backup_job(plan_id).execute()
        if run is not None:
            logger.info(f"Backup {plan_id} finished with status: {run.status.value}")
    except Exception as e:
        logger.exception(f"Polling backup {plan_id} failed: {e}")


def _poll_restore(restore_id: str):
    """Poll one restore job; drop its polling job once it finished."""
    try:
        job = service_ref.restore_job(restore_id)
        run = job.execute()
        if run is not None:
            logger.info(f"Restore {restore_id} finished with status: {run.status.value}")
        if job.finished and scheduler is not None:
            _remove_job(f"{RESTORE_PREFIX}{restore_id}")
    except Exception as e:
        logger.exception(f"Polling restore {restore_id} failed: {e}")


def trigger_backup_now(plan_id: str):
    """
    Manually trigger a backup immediately.

    The job is forced so it runs on the next poll regardless of its
    schedule or enabled flag, and that poll is brought forward.

    Args:
        plan_id: Backup plan identifier

    Raises:
        ValueError: If the plan is not found
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    backups, _ = service_ref.get_plans()
    plan = find_plan(backups, plan_id)
    if not plan:
        raise ValueError(f"Backup plan not found: {plan_id}")

    service_ref.backup_job(plan.id).force_run()

    # 1 second delay to avoid racing the regular poll
    scheduler.add_job(
        func=_poll_backup,
        args=[plan.id],
        trigger='date',
        run_date=datetime.now(timezone.utc) + timedelta(seconds=1),
        id=f"manual_{plan.id}_{int(datetime.now(timezone.utc).timestamp())}",
        name=f"Manual: {plan.name}",
        replace_existing=False
    )

    logger.info(f"Manually triggered backup: {plan.name}")


def cancel_backup(plan_id: str) -> bool:
    """
    Request cancellation of a running backup.

    Returns:
        True if a run was in flight
    """
    if service_ref is None:
        return False
    return service_ref.backup_job(plan_id).cancel()


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled polling jobs.

    Returns:
        List of dicts with job information
    """
    if scheduler is None:
        return []

    jobs = []

    for job in scheduler.get_jobs():
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
            'trigger': str(job.trigger)
        })

    return jobs


def is_scheduler_running() -> bool:
    return scheduler is not None and scheduler.running
