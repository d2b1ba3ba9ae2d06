"""
Scheduled Jobs Module
Server-owned periodic tasks: work-proof deadline sweeps and metric retention
"""

import os
import logging

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def run_work_proof_timeouts(app, sweep_expired_work_proofs):
    """
    Auto-refund expired rejections and auto-cancel expired revision requests.

    Args:
        app: Flask application instance
        sweep_expired_work_proofs: Callable performing the sweep, returns a summary dict
    """
    with app.app_context():
        try:
            summary = sweep_expired_work_proofs()
            if summary['processed'] or summary['failed']:
                logger.info(
                    f"Work proof timeout sweep: {summary['processed']} processed, "
                    f"{summary['failed']} failed"
                )
            return summary
        except Exception as e:
            logger.error(f"Error in run_work_proof_timeouts: {str(e)}", exc_info=True)
            return None


def purge_old_metrics(app, monitoring_service, retention_days):
    """
    Delete server metrics older than the retention window

    Args:
        app: Flask application instance
        monitoring_service: MonitoringService instance
        retention_days: Days of metric history to keep
    """
    with app.app_context():
        try:
            deleted = monitoring_service.purge_metrics(retention_days)
            logger.info(f"Purged {deleted} server metric rows older than {retention_days} days")
            return deleted
        except Exception as e:
            logger.error(f"Error in purge_old_metrics: {str(e)}", exc_info=True)
            return None


def init_scheduler(app, sweep_expired_work_proofs, monitoring_service):
    """
    Initialize APScheduler with all scheduled jobs

    Args:
        app: Flask application instance
        sweep_expired_work_proofs: Callable processing expired work-proof deadlines
        monitoring_service: MonitoringService instance

    Returns:
        scheduler: Configured APScheduler instance
    """
    from apscheduler.schedulers.background import BackgroundScheduler
    from apscheduler.triggers.cron import CronTrigger
    from apscheduler.triggers.interval import IntervalTrigger
    import atexit

    scheduler = BackgroundScheduler(daemon=True)

    timezone = os.getenv('TIMEZONE', 'UTC')
    sweep_seconds = int(os.getenv('TIMEOUT_SWEEP_SECONDS', '60'))
    retention_days = int(os.getenv('METRICS_RETENTION_DAYS', '30'))

    scheduler.add_job(
        func=lambda: run_work_proof_timeouts(app, sweep_expired_work_proofs),
        trigger=IntervalTrigger(seconds=sweep_seconds, timezone=timezone),
        id='work_proof_timeouts',
        name='Process expired rejection and revision deadlines',
        replace_existing=True,
        max_instances=1,
        coalesce=True
    )

    scheduler.add_job(
        func=lambda: purge_old_metrics(app, monitoring_service, retention_days),
        trigger=CronTrigger(hour=3, minute=0, timezone=timezone),
        id='metrics_retention',
        name='Purge old server metrics (3 AM)',
        replace_existing=True
    )

    scheduler.start()
    logger.info(f"Scheduler started with timezone: {timezone}")
    logger.info("Scheduled jobs:")
    logger.info(f"  - Work proof timeout sweep every {sweep_seconds}s")
    logger.info(f"  - Server metric retention ({retention_days} days) at 3:00 AM")

    # Shut down the scheduler when exiting the app
    atexit.register(lambda: scheduler.shutdown())

    return scheduler
