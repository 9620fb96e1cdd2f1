# app/config.py
"""Runtime configuration.

Everything the service reads from the environment is collected here once, so
the settlement engine and the jobs get their knobs passed in explicitly.
"""
import os
from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()


class EngineConfig(BaseModel):
    max_attempts: int = 3
    backoff_seconds: float = 0.01
    payment_window_hours: int = 48
    listing_duration_days: int = 30
    offer_window_hours: int = 48
    max_offer_rounds: int = 3


class Settings(BaseModel):
    database_url: str = "sqlite:///./marketplace.db"
    db_pool_size: int = 5
    db_max_overflow: int = 10
    auth_header: str = "X-User-Id"
    cron_secret: str | None = None
    scheduler_enabled: bool = False
    scheduler_interval_minutes: int = 1
    engine: EngineConfig = EngineConfig()

    @classmethod
    def from_env(cls):
        url = os.getenv("POSTGRES_URL") or os.getenv("DATABASE_URL") or cls.model_fields["database_url"].default
        # SQLAlchemy 2.x doesn't accept 'postgres://'
        if url.startswith("postgres://"):
            url = url.replace("postgres://", "postgresql+psycopg2://", 1)
        return cls(
            database_url=url,
            db_pool_size=int(os.getenv("DB_POOL_SIZE", 5)),
            db_max_overflow=int(os.getenv("DB_MAX_OVERFLOW", 10)),
            auth_header=os.getenv("AUTH_HEADER", "X-User-Id"),
            cron_secret=os.getenv("CRON_SECRET") or None,
            scheduler_enabled=os.getenv("SCHEDULER_ENABLED", "0") == "1",
            scheduler_interval_minutes=int(os.getenv("SCHEDULER_INTERVAL_MINUTES", 1)),
            engine=EngineConfig(
                max_attempts=int(os.getenv("SETTLEMENT_MAX_ATTEMPTS", 3)),
                backoff_seconds=float(os.getenv("SETTLEMENT_BACKOFF_SECONDS", 0.01)),
                payment_window_hours=int(os.getenv("PAYMENT_WINDOW_HOURS", 48)),
                listing_duration_days=int(os.getenv("LISTING_DURATION_DAYS", 30)),
                offer_window_hours=int(os.getenv("OFFER_WINDOW_HOURS", 48)),
                max_offer_rounds=int(os.getenv("MAX_OFFER_ROUNDS", 3)),
            ),
        )


settings = Settings.from_env()
