"""
Database Configuration and Session Management
============================================

Main database engine, session factory and table creation for the
marketplace escrow engine. Services never open sessions themselves: the
caller owns the unit of work and passes the Session in explicitly.
"""

import logging

from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker
from sqlalchemy.exc import OperationalError

from config import Config
from models import Base

logger = logging.getLogger(__name__)


def build_engine(database_url: str):
    """Create an engine with pool settings appropriate for the backend"""
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            echo=Config.DB_ECHO,
            connect_args={"check_same_thread": False},
        )
    return create_engine(
        database_url,
        pool_size=Config.DB_POOL_SIZE,
        max_overflow=Config.DB_MAX_OVERFLOW,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=Config.DB_POOL_RECYCLE,
        pool_timeout=30,
        echo=Config.DB_ECHO,
    )


engine = build_engine(Config.DATABASE_URL)

SessionLocal = sessionmaker(
    bind=engine,
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
)


def create_tables(bind=None) -> bool:
    """Create all database tables if they don't exist"""
    target = bind if bind is not None else engine
    try:
        logger.info(f"🏗️ Creating database tables ({len(Base.metadata.tables)} models registered)...")
        Base.metadata.create_all(bind=target, checkfirst=True)
        logger.info("✅ Database schema verified")
        return True
    except OperationalError as e:
        logger.error(f"❌ Failed to create database tables: {e}")
        return False


def test_connection() -> bool:
    """Test database connection"""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        logger.info("✅ Database connection test successful")
        return True
    except OperationalError as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False
