"""
Database Configuration and Session Management
============================================

This module provides the database engine, session factory, and table creation
functionality for the escrow ledger.
"""

import logging
from contextlib import contextmanager
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool
from config import Config
from models import Base

logger = logging.getLogger(__name__)

if not Config.DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is required")


def build_engine(database_url: str, echo: bool = None) -> Engine:
    """
    Create an engine for the ledger.

    PostgreSQL gets a bounded pool and a per-connection statement timeout so that
    a hung ledger call surfaces as an OperationalError (PersistenceError upstream).
    SQLite in-memory URLs share a single connection so every session sees the same data.
    """
    echo = Config.DATABASE_ECHO if echo is None else echo

    if database_url.startswith("sqlite"):
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            return create_engine(
                database_url,
                echo=echo,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
        return create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": Config.DATABASE_POOL_TIMEOUT},
        )

    statement_timeout_ms = Config.LEDGER_STATEMENT_TIMEOUT_SECONDS * 1000
    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,     # Recycle connections every hour
        pool_timeout=Config.DATABASE_POOL_TIMEOUT,
        echo=echo,
        connect_args={
            "connect_timeout": 10,  # Fail fast on slow connections
            "application_name": "task_escrow_settlement",
            "options": f"-c statement_timeout={statement_timeout_ms}",
        }
    )


def build_session_factory(bind: Engine) -> sessionmaker:
    """Session factory with the ledger's session settings"""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=bind
    )


# Database engine with connection pooling
engine = build_engine(Config.DATABASE_URL)

# Session factory
SessionLocal = build_session_factory(engine)


def create_tables(bind: Engine = None):
    """Create all database tables if they don't exist"""
    target = bind or engine
    try:
        Base.metadata.create_all(bind=target)
        logger.info("✅ Database tables created successfully")
        return True
    except Exception as e:
        logger.error(f"❌ Database initialization failed: {e}")
        raise


@contextmanager
def managed_session(session_factory: sessionmaker = None):
    """Sync context manager for database sessions"""
    session = (session_factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Database session error: {e}")
        raise
    finally:
        session.close()


def test_connection(bind: Engine = None) -> bool:
    """Test database connection (used by scheduled jobs before touching the ledger)"""
    try:
        with (bind or engine).connect() as connection:
            connection.execute(text("SELECT 1"))
            logger.info("✅ Database connection test successful")
            return True
    except Exception as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False
