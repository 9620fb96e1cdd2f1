"""Run the auction close-out, listing expiry and offer expiry sweeps once.

Handy when the in-process scheduler is disabled and a platform cron is not
wired up yet:

    python run_jobs.py
"""
import json

from app.db import Base, SessionLocal, engine
import app.models  # noqa: F401
from app.services import run_lifecycle_jobs, settlement_engine


if __name__ == "__main__":
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        summary = run_lifecycle_jobs(db, settlement_engine)
    finally:
        db.close()
    print(json.dumps(summary, indent=2))
    if any(job["errors"] for job in summary.values()):
        raise SystemExit(1)
