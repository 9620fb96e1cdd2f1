# app/db.py
"""Database engine and session utilities.

Centralized SQLAlchemy engine creation and session dependency helper for FastAPI.
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from .config import settings


def make_engine(url, pool_size=5, max_overflow=10):
    if url.startswith("sqlite"):
        # connections are shared across the threadpool FastAPI runs sync routes in
        return create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})
    # tuned pool settings for cloud DB
    return create_engine(
        url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True
    )


engine = make_engine(settings.database_url, settings.db_pool_size, settings.db_max_overflow)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
