"""Database configuration and session management."""

import os
import logging
from typing import Callable, Iterator, Optional
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session

# Base class for all models
Base = declarative_base()

SQLITE_BUSY_TIMEOUT_SECONDS = 30

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


def create_db_engine(
    database_url: str,
    busy_timeout_seconds: int = SQLITE_BUSY_TIMEOUT_SECONDS,
    echo: bool = False
) -> Engine:
    """
    Create an engine for the configured database.
    
    SQLite connections get a busy timeout so concurrent writers wait for the
    lock instead of failing immediately.
    """
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {
            "check_same_thread": False,  # Sessions are used from worker threads
            "timeout": busy_timeout_seconds
        }
    
    engine = create_engine(database_url, connect_args=connect_args, echo=echo)
    
    if engine.dialect.name == "sqlite":
        @event.listens_for(engine, "connect")
        def _set_sqlite_pragmas(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_seconds * 1000)}")
            cursor.close()
    
    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    """Create the session factory bound to an engine."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


def get_db(session_factory: SessionFactory) -> Iterator[Session]:
    """
    Yield a database session and close it afterwards.
    
    Usage:
        db = next(get_db(session_factory))
    
    Yields:
        Database session
    """
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


def init_db(engine: Engine, enable_wal: Optional[bool] = None) -> None:
    """
    Initialize the database.
    
    Creates all tables if they don't exist. Should be called on startup;
    production deployments apply the alembic migrations instead.
    """
    # Import all models so they're registered with Base
    from lorekeeper.models import conversation, memory  # noqa: F401
    
    Base.metadata.create_all(bind=engine)
    
    is_sqlite = engine.dialect.name == "sqlite"
    in_memory = is_sqlite and engine.url.database in (None, "", ":memory:")
    if enable_wal is None:
        enable_wal = is_sqlite and not in_memory
    
    if enable_wal:
        # WAL lets readers proceed during writeback commits
        with engine.connect() as conn:
            conn.execute(text("PRAGMA journal_mode=WAL"))
            conn.execute(text("PRAGMA synchronous=NORMAL"))
            conn.commit()
    
    logger.info(
        "Database initialized: dialect=%s pid=%s url=%s wal=%s",
        engine.dialect.name,
        os.getpid(),
        engine.url.render_as_string(hide_password=True),
        enable_wal
    )
