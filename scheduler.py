"""
Background jobs for the automation engine.

- Lifecycle tick every AUTOMATION_TICK_SECONDS
- Retry pass for FAILED executions and deliveries
- Stale-claim sweep

Every job runs inside the Flask app context.
"""
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from services.automation_engine import AutomationEngine
import logging

logger = logging.getLogger("scheduler")


def _in_app_context(app, job):
    def run():
        with app.app_context():
            try:
                job(AutomationEngine())
            except Exception:
                logger.exception(f"[FAIL] Scheduled job {job.__name__} crashed")
    run.__name__ = job.__name__
    return run


def run_tick_job(engine):
    return engine.run_tick()


def retry_failed_job(engine):
    return engine.retry_failed()


def sweep_stale_claims_job(engine):
    return engine.sweep_stale_claims()


def build_scheduler(app):
    tick_seconds = app.config.get('AUTOMATION_TICK_SECONDS', 60)
    scheduler = BackgroundScheduler(timezone="UTC")

    scheduler.add_job(
        _in_app_context(app, run_tick_job),
        IntervalTrigger(seconds=tick_seconds),
        id="automation_tick",
        name="Lifecycle automation tick",
        max_instances=1,
        coalesce=True,
        replace_existing=True
    )

    scheduler.add_job(
        _in_app_context(app, retry_failed_job),
        IntervalTrigger(seconds=tick_seconds),
        id="automation_retries",
        name="Retry failed sends",
        max_instances=1,
        coalesce=True,
        replace_existing=True
    )

    scheduler.add_job(
        _in_app_context(app, sweep_stale_claims_job),
        IntervalTrigger(minutes=5),
        id="automation_stale_claims",
        name="Sweep stale claims",
        max_instances=1,
        coalesce=True,
        replace_existing=True
    )
    return scheduler


def start_scheduler(app):
    if not app.config.get('SCHEDULER_ENABLED', True):
        logger.info("Scheduler disabled by configuration")
        return None
    scheduler = build_scheduler(app)
    scheduler.start()
    logger.info(f"[OK] Scheduler started ({len(scheduler.get_jobs())} jobs)")
    return scheduler
