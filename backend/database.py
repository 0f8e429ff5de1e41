"""
Persistence setup for the coach backend
One engine per process; API routes and coach tools each open their own session.
"""

import os
import logging
from contextlib import contextmanager
from typing import Iterator
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool
from models import Base

logger = logging.getLogger(__name__)

DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "5"))
DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "10"))


def normalize_database_url(url: str) -> str:
    """Hosted Postgres providers hand out postgres:// URLs; SQLAlchemy wants postgresql://"""
    if url.startswith("postgres://"):
        return "postgresql://" + url[len("postgres://"):]
    return url


DATABASE_URL = normalize_database_url(os.getenv("DATABASE_URL", "sqlite:///./running_coach.db"))


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        # Coach tools run in worker threads
        sqlite_engine = create_engine(url, connect_args={"check_same_thread": False})
        event.listen(sqlite_engine, "connect", _enable_sqlite_foreign_keys)
        return sqlite_engine

    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=DB_POOL_SIZE,
        max_overflow=DB_MAX_OVERFLOW,
        pool_pre_ping=True,  # serverless Postgres closes idle connections
    )


engine = build_engine(DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autoflush=False)


def use_engine(new_engine: Engine) -> Engine:
    """Point sessions and init_db at another engine; returns the previous one"""
    global engine
    previous = engine
    engine = new_engine
    SessionLocal.configure(bind=new_engine)
    return previous


def init_db(bind: Engine = None):
    Base.metadata.create_all(bind=bind or engine)
    logger.info(f"✅ Database tables ready ({(bind or engine).url.get_backend_name()})")


@contextmanager
def get_db() -> Iterator[Session]:
    """
    Transactional scope for coach tools

    Commits when the block finishes and rolls back if it raises:
        with get_db() as db:
            db.add(WeightEntry(date=today, weight=71.2))
    """
    with SessionLocal() as db:
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise


def get_db_session() -> Iterator[Session]:
    """FastAPI dependency; routes commit their own writes"""
    with SessionLocal() as db:
        yield db
