"""
Database connection utilities.

Provides:
- Engine and session factory construction (owned by the entry point)
- Per-request session dependency for FastAPI
- Table creation helpers
"""

import logging
from typing import Generator

from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session

from database.models import Base

logger = logging.getLogger(__name__)


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create the SQLAlchemy engine.

    pool_pre_ping=True: Check connection health before using
    """
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False

    return create_engine(
        database_url,
        pool_pre_ping=True,
        echo=echo,  # Set to True to see SQL queries (debugging)
        connect_args=connect_args
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    """Session factory bound to an engine."""
    return sessionmaker(
        bind=engine,
        expire_on_commit=False,
        autoflush=False
    )


def get_db(request: Request) -> Generator[Session, None, None]:
    """
    Dependency for FastAPI routes to get database session.

    The session factory is created by main.create_app() and stored on
    app.state, so tests and workers can inject their own.

    Benefits:
    - Automatic commit on success
    - Automatic rollback on exception
    - Ensures connection is closed
    """
    db = request.app.state.session_factory()
    try:
        yield db
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database error: {e}")
        raise
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def create_tables(engine: Engine):
    """
    Create all tables in database.

    WARNING: Only use in development!
    Production should use managed migrations.
    """
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created")


def drop_tables(engine: Engine):
    """
    Drop all tables in database.

    WARNING: DESTRUCTIVE! Only use in testing.
    """
    Base.metadata.drop_all(bind=engine)
    logger.warning("All database tables dropped")
