"""
Database Configuration and Session Management
============================================

Main database engine, session factory, and table creation for the trade
escrow engine. ``init_engine`` rebinds the session factory in place, so
modules that imported ``SessionLocal`` keep working after a rebind.
"""

import logging
from contextlib import contextmanager

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session

from config import Config
from models import Base

logger = logging.getLogger(__name__)


def _build_engine(database_url: str) -> Engine:
    if database_url.startswith("sqlite"):
        # Writers wait on the file lock instead of failing immediately
        return create_engine(
            database_url,
            echo=Config.DATABASE_ECHO,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
    return create_engine(
        database_url,
        pool_size=7,
        max_overflow=15,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,
        pool_timeout=30,
        echo=Config.DATABASE_ECHO,
    )


engine = _build_engine(Config.DATABASE_URL)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    bind=engine,
)


def init_engine(database_url: str) -> Engine:
    """Point the session factory at a different database"""
    global engine
    old_engine = engine
    engine = _build_engine(database_url)
    SessionLocal.configure(bind=engine)
    old_engine.dispose()
    logger.info(f"Database engine rebound ({engine.url.get_backend_name()})")
    return engine


def create_tables() -> bool:
    """Create all database tables if they don't exist"""
    logger.info("🏗️ Creating database tables (if they don't exist)...")
    Base.metadata.create_all(bind=engine, checkfirst=True)
    existing_tables = inspect(engine).get_table_names()
    logger.info(f"✅ Database schema verified: {len(existing_tables)} tables available")
    return True


def drop_tables():
    Base.metadata.drop_all(bind=engine)


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


def test_connection() -> bool:
    """Test database connection"""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
            logger.info("✅ Database connection test successful")
            return True
    except Exception as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False
