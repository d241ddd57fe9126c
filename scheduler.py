"""Cron wiring for the escalation jobs.

Started by the API on startup when SCHEDULER_ENABLED is set. Can also be run as a
script (``python scheduler.py``) to execute every job once from an external cron.
"""
import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from config import settings
from database import SessionLocal
from dispatcher import SideEffectDispatcher
from escalation import JOBS, EscalationScheduler

logger = logging.getLogger(__name__)

# job name -> hour of day
CADENCE = {
    "due-reminders": 9,
    "overdue-warnings": 10,
    "overdue-holds": 11,
    "overdue-fines": 12,
}


def run_job(name: str):
    db = SessionLocal()
    try:
        results = EscalationScheduler(db, SideEffectDispatcher(SessionLocal)).run_job(name)
        logger.info("Scheduled job %s finished: %d records", name, len(results))
        return len(results)
    except Exception:
        logger.exception("Scheduled job %s failed", name)
        return None
    finally:
        db.close()


def run_all_once():
    db = SessionLocal()
    try:
        return EscalationScheduler(db, SideEffectDispatcher(SessionLocal)).run_all()
    finally:
        db.close()


def build_scheduler() -> BackgroundScheduler:
    sched = BackgroundScheduler(timezone=settings.scheduler_timezone)
    for name in JOBS:
        sched.add_job(
            run_job,
            CronTrigger(hour=CADENCE[name], minute=0, timezone=settings.scheduler_timezone),
            args=[name],
            id=name,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
    return sched


scheduler = build_scheduler()


if __name__ == "__main__":
    logging.basicConfig(level=settings.log_level)
    for job, count in run_all_once().items():
        print(f"{job}: {count if count is not None else 'FAILED'}")
