"""
Database Configuration and Session Management
============================================

This module provides the main database engine, session factory, and table creation
functionality for the launch orchestration engine.
"""

import logging
from contextlib import contextmanager
from sqlalchemy import create_engine, inspect
from sqlalchemy.orm import sessionmaker
from sqlalchemy.exc import OperationalError
from config import Config
from models import Base
from utils.data_sanitizer import DataSanitizer

logger = logging.getLogger(__name__)


def build_engine(database_url: str, echo: bool = False):
    """Create an engine with pool settings suited to the backend"""
    if database_url.startswith("sqlite"):
        # Worker threads share the engine, sqlite needs the thread check disabled
        return create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
    return create_engine(
        database_url,
        pool_size=7,
        max_overflow=15,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,
        pool_timeout=30,
        echo=echo,
        connect_args={
            "connect_timeout": 10,
            "application_name": "launch_engine",
        }
    )


engine = build_engine(Config.DATABASE_URL, echo=Config.DATABASE_ECHO)

# Session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine
)


def create_tables(bind=None) -> bool:
    """Create all database tables if they don't exist"""
    target = bind or engine
    try:
        logger.info("🏗️ Creating database tables (if they don't exist)...")
        logger.info(f"📊 Found {len(Base.metadata.tables)} table models to create")
        Base.metadata.create_all(bind=target, checkfirst=True)

        existing_tables = inspect(target).get_table_names()
        logger.info(f"✅ Database schema verified: {len(existing_tables)} tables available")
        return True
    except OperationalError as e:
        logger.error(f"❌ Failed to create database tables: {e}")
        return False


@contextmanager
def managed_session(session_factory=None):
    """Sync context manager for database sessions"""
    session = (session_factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Database session error: {DataSanitizer.sanitize_error_message(e)}")
        raise
    finally:
        session.close()


def handle_database_error(error: Exception) -> bool:
    """Return True when the error is a dropped/stale connection worth one retry"""
    message = str(error).lower()
    recoverable = any(
        marker in message
        for marker in ("server closed the connection", "connection reset", "ssl connection has been closed")
    )
    if recoverable:
        logger.warning(f"⚠️ Recoverable database connection error: {DataSanitizer.sanitize_error_message(error)}")
        engine.dispose()
    return recoverable
