# app/scheduler.py
from apscheduler.schedulers.background import BackgroundScheduler
from .db import SessionLocal
from .services import run_lifecycle_jobs, settlement_engine
from .utils import logger

scheduler = BackgroundScheduler()


def lifecycle_job():
    db = SessionLocal()
    try:
        summary = run_lifecycle_jobs(db, settlement_engine)
        logger.info("Lifecycle run: %s", summary)
    finally:
        db.close()


def start_scheduler(interval_minutes=1):
    scheduler.add_job(lifecycle_job, 'interval', minutes=interval_minutes, id="lifecycle",
                      replace_existing=True, max_instances=1, coalesce=True)
    scheduler.start()
    logger.info("Scheduler started")


def stop_scheduler():
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
