"""
Database Configuration and Session Management
============================================

This module provides the main database engine, session factory, and table creation
functionality for the ChatWallet payments backend.
"""

import logging
import time
from contextlib import contextmanager
from typing import Callable, TypeVar

from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool
from sqlalchemy.exc import OperationalError
from config import Config
from models import Base

logger = logging.getLogger(__name__)

T = TypeVar("T")

if not Config.DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is required")


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}, "echo": False}
    return {
        "poolclass": QueuePool,
        "pool_size": 7,           # Sync base pool
        "max_overflow": 15,       # Burst capacity for webhook spikes
        "pool_pre_ping": True,    # Validate connections before use
        "pool_recycle": 3600,     # Recycle connections every hour
        "pool_timeout": 30,       # Wait max 30 seconds for connection during bursts
        "echo": False,
        "connect_args": {
            "connect_timeout": 10,
            "application_name": "chatwallet",
        },
    }


engine = create_engine(Config.DATABASE_URL, **_engine_kwargs(Config.DATABASE_URL))

# Session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    bind=engine
)


def create_tables():
    """Create all database tables if they don't exist"""
    try:
        logger.info("🏗️ Creating database tables (if they don't exist)...")
        bind = SessionLocal.kw.get("bind") or engine
        logger.info(f"📊 Found {len(Base.metadata.tables)} table models to create")
        Base.metadata.create_all(bind=bind, checkfirst=True)
        logger.info(f"✅ Database schema verified: {', '.join(sorted(Base.metadata.tables))}")
        return True
    except Exception as e:
        logger.error(f"❌ Failed to create database tables: {e}", exc_info=True)
        return False


def get_session() -> Session:
    """Get a new database session"""
    return SessionLocal()


@contextmanager
def managed_session():
    """Sync context manager for database sessions"""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Database session error: {e}")
        raise
    finally:
        session.close()


def run_in_transaction(fn: Callable[[Session], T], retries: int = 3, backoff: float = 0.05) -> T:
    """
    Run `fn(session)` as one serialisable atomic unit, retrying transient
    serialisation failures. Business exceptions propagate on the first attempt.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            with managed_session() as session:
                if session.get_bind().dialect.name == "postgresql":
                    session.connection(execution_options={"isolation_level": "SERIALIZABLE"})
                return fn(session)
        except OperationalError as e:
            if attempt >= retries:
                logger.error(f"❌ TRANSACTION_RETRY_EXHAUSTED: {attempt} attempts - {e}")
                raise
            delay = backoff * (2 ** (attempt - 1))
            logger.warning(f"⚠️ TRANSACTION_RETRY: attempt {attempt} failed ({e}); retrying in {delay:.2f}s")
            time.sleep(delay)


def test_connection():
    """Test database connection"""
    try:
        with SessionLocal() as session:
            session.execute(text("SELECT 1"))
            logger.info("✅ Database connection test successful")
            return True
    except Exception as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False
