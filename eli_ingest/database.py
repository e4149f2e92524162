# eli_ingest/database.py
"""
Database engine construction, session management, and table creation.
Uses SQLAlchemy with PostgreSQL. The engine is built once at startup by the
service container; all models are auto-imported in create_tables() so every
table is created in one call.
"""

from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()


def create_db_engine(database_url: str) -> Engine:
    if database_url.startswith("sqlite"):
        # Single shared in-process connection (local runs and tests)
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(
        database_url,
        pool_pre_ping=True,          # Auto-reconnect if DB connection drops
        pool_size=10,
        max_overflow=20,
        echo=False,                  # Set True to log all SQL queries (debug only)
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db(request: Request):
    """FastAPI dependency - yields a DB session and closes it after request."""
    db = request.app.state.container.session_factory()
    try:
        yield db
    finally:
        db.close()


def create_tables(engine: Engine):
    """
    Creates all DB tables. Safe to call multiple times.
    Importing the models package registers every table on Base.metadata.
    """
    import eli_ingest.models  # noqa

    Base.metadata.create_all(bind=engine)
