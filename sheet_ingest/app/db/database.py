"""
Database engine, session factory and declarative base.
"""
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from sheet_ingest.settings import settings

Base = declarative_base()


def create_db_engine(database_url: str) -> Engine:
    """
    Create an engine for the given URL.

    SQLite connections get foreign keys switched on so that record rows
    cascade with their job, and are shareable across worker threads.
    """
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    return create_engine(database_url, pool_pre_ping=True)


def create_session_factory(database_url: str) -> sessionmaker:
    """Build a session factory bound to a fresh engine for `database_url`."""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=create_db_engine(database_url),
    )


engine = create_db_engine(settings.DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind: Engine = engine) -> None:
    """Create tables for all registered models."""
    # Models register themselves on Base when imported
    from sheet_ingest.models import job, extracted_record  # noqa: F401

    Base.metadata.create_all(bind=bind)
