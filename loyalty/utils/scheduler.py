"""
Background scheduler for automated tasks.

Handles:
- Points expiration sweep (daily at LOYALTY_EXPIRY_CRON_HOUR, default 1 AM UTC)
- Broken streak reset (daily at 0:30 UTC)
"""
import os
import atexit
import logging
from typing import Dict, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

logger = logging.getLogger(__name__)

# Global scheduler instance
_scheduler = None
_flask_app = None  # Store Flask app reference for context


def init_scheduler(app) -> Optional[BackgroundScheduler]:
    """
    Initialize the background scheduler.

    Only runs when ENABLE_SCHEDULER is set (default on in production).
    Only the first process of a multi-worker server should run the scheduler.
    """
    global _scheduler, _flask_app

    # Store app reference for context in job functions
    _flask_app = app

    # Don't run scheduler in testing
    if app.config.get('TESTING'):
        logger.info('[Scheduler] Disabled in testing mode')
        return None

    if not app.config.get('ENABLE_SCHEDULER'):
        logger.info('[Scheduler] Disabled (set ENABLE_SCHEDULER=true)')
        return None

    # Prevent multiple scheduler instances across server workers
    if os.getenv('SCHEDULER_RUNNING') == 'true':
        logger.info('[Scheduler] Already running in another process')
        return None

    expiry_hour = app.config.get('LOYALTY_EXPIRY_CRON_HOUR', 1)

    try:
        _scheduler = BackgroundScheduler(
            timezone='UTC',
            job_defaults={
                'coalesce': True,  # Combine missed runs
                'max_instances': 1,  # Prevent concurrent runs
                'misfire_grace_time': 3600  # 1 hour grace period
            }
        )

        _scheduler.add_job(
            run_points_expiration,
            trigger=CronTrigger(hour=expiry_hour, minute=0),
            id='points_expiration',
            name='Expire aged loyalty points',
            replace_existing=True
        )

        _scheduler.add_job(
            run_streak_reset,
            trigger=CronTrigger(hour=0, minute=30),
            id='streak_reset',
            name='Reset broken activity streaks',
            replace_existing=True
        )

        _scheduler.start()
        os.environ['SCHEDULER_RUNNING'] = 'true'

        logger.info('[Scheduler] Started with 2 scheduled jobs:')
        logger.info(f'  - Points expiration: Daily at {expiry_hour}:00 UTC')
        logger.info('  - Streak reset: Daily at 0:30 UTC')

        atexit.register(shutdown_scheduler)

    except Exception as e:
        logger.error(f'[Scheduler] Failed to initialize: {e}')
        _scheduler = None

    return _scheduler


def shutdown_scheduler():
    """Gracefully shutdown the scheduler."""
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info('[Scheduler] Shutdown complete')
    _scheduler = None
    os.environ.pop('SCHEDULER_RUNNING', None)


def run_points_expiration():
    """
    Expire aged points for all tenants.
    Runs daily; safe to re-run.
    """
    global _flask_app

    if not _flask_app:
        logger.error('[Scheduler] Flask app not initialized')
        return None

    logger.info('[Scheduler] Processing points expiration...')

    with _flask_app.app_context():
        try:
            from ..services.scheduled_tasks import scheduled_tasks_service

            result = scheduled_tasks_service.expire_points()

            logger.info(
                f"[Scheduler] Points expiration complete: "
                f"{result['entries_expired']} entries, {result['total_points_expired']} pts "
                f"for {result['users_processed']} users, {len(result['errors'])} errors"
            )
            return result

        except Exception as e:
            logger.error(f'[Scheduler] Points expiration failed: {e}')
            return None


def run_streak_reset():
    """
    Zero streaks of users who skipped a day.
    Runs daily shortly after midnight UTC.
    """
    global _flask_app

    if not _flask_app:
        logger.error('[Scheduler] Flask app not initialized')
        return None

    with _flask_app.app_context():
        try:
            from ..services.scheduled_tasks import scheduled_tasks_service

            result = scheduled_tasks_service.reset_broken_streaks()
            logger.info(f"[Scheduler] Streak reset complete: {result['users_reset']} users")
            return result

        except Exception as e:
            logger.error(f'[Scheduler] Streak reset failed: {e}')
            return None


def get_next_run_times() -> Dict[str, Optional[str]]:
    """Next scheduled run per job id (empty when the scheduler is off)."""
    if not _scheduler:
        return {}

    return {
        job.id: job.next_run_time.isoformat() if job.next_run_time else None
        for job in _scheduler.get_jobs()
    }
