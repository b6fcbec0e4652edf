"""
Local Store Configuration and Session Management
================================================

Engine, session factory and table creation for the client-side store that holds
idempotency keys per user intent and the one-time external token handoff.
Defaults to in-memory SQLite, so nothing survives the process unless
LOCAL_STORE_URL points at a file or server.
"""

import logging
from contextlib import contextmanager

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from config import Config
from models import Base

logger = logging.getLogger(__name__)


def build_engine(url: str = None):
    """Create an engine for the local store; in-memory SQLite shares one connection"""
    url = url or Config.LOCAL_STORE_URL
    if url.startswith("sqlite") and ":memory:" in url:
        return create_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
            echo=False,
        )
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False}, echo=False)
    return create_engine(url, pool_pre_ping=True, pool_recycle=3600, echo=False)


engine = build_engine()

# Session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    bind=engine
)


def create_tables(bind=None) -> bool:
    """Create the local store tables if they don't exist"""
    bind = bind or engine
    try:
        Base.metadata.create_all(bind=bind, checkfirst=True)
        existing_tables = inspect(bind).get_table_names()
        logger.info(f"✅ Local store ready: {', '.join(sorted(existing_tables))}")
        return True
    except Exception as e:
        logger.error(f"❌ Failed to create local store tables: {e}")
        return False


def get_session() -> Session:
    """Get a new local store session"""
    return SessionLocal()


@contextmanager
def managed_session(session_factory=None):
    """Sync context manager for local store sessions"""
    session = (session_factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Local store session error: {e}")
        raise
    finally:
        session.close()


def test_connection() -> bool:
    """Test local store connection"""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        logger.info("✅ Local store connection test successful")
        return True
    except Exception as e:
        logger.error(f"❌ Local store connection test failed: {e}")
        return False


create_tables()
