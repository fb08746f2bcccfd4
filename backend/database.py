# database.py
"""
Database connection setup using SQLAlchemy.

Builds the SQLAlchemy engine and session factory from a database URL,
provides the declarative Base for models, and defines the `get_db`
dependency for FastAPI routes. The engine is not a module global: the
application factory creates it and keeps it on `app.state`.
"""

import logging
from urllib.parse import urlparse # For safe URL logging

from fastapi import Request
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

log = logging.getLogger(__name__) # Get a logger specific to this module


# --- SQLAlchemy Declarative Base ---
# Create a Base class for declarative class definitions (used in models.py)
Base = declarative_base()


def mask_database_url(database_url: str) -> str:
    """Returns the URL with its password replaced by ***, for logging."""
    try:
        parsed_url = urlparse(database_url)
        if not parsed_url.hostname:
            # e.g. sqlite:///path/to/file.db, nothing secret in it
            return database_url
        safe_url = f"{parsed_url.scheme}://{parsed_url.username}:***@{parsed_url.hostname}"
        if parsed_url.port:
            safe_url += f":{parsed_url.port}"
        safe_url += f"{parsed_url.path}"
        if parsed_url.query:
            safe_url += f"?{parsed_url.query}"
        return safe_url
    except Exception as parse_error:
        log.error(f"Could not parse DATABASE_URL for safe logging: {parse_error}")
        return "(unable to mask)"


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    # SQLite ignores ON DELETE CASCADE unless this is on for every connection
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# --- SQLAlchemy Engine Creation ---
def create_db_engine(database_url: str) -> Engine:
    """Creates the SQLAlchemy engine (and its connection pool) for a URL."""
    log.info(f"Database URL loaded (Password Masked): {mask_database_url(database_url)}")
    try:
        if database_url.startswith("sqlite"):
            engine = create_engine(
                database_url,
                connect_args={"check_same_thread": False}, # Requests run in a thread pool
            )
            event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        else:
            engine = create_engine(database_url, pool_pre_ping=True)
        log.info("SQLAlchemy engine created successfully.")
        return engine
    except Exception as engine_error:
        log.critical(f"FATAL ERROR: Failed to create SQLAlchemy engine: {engine_error}", exc_info=True)
        raise RuntimeError(f"Could not create database engine: {engine_error}") from engine_error


# --- SQLAlchemy Session Factory ---
def create_session_factory(engine: Engine) -> sessionmaker:
    """Returns a configured Session class bound to the engine."""
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


# --- FastAPI Dependency for Database Sessions ---
def get_db(request: Request):
    """
    FastAPI dependency that provides a SQLAlchemy database session.

    Creates a new session from the application's session factory for each
    request, yields it to the endpoint, and ensures it's closed afterwards,
    even if errors occur. Closing returns the connection to the pool.
    """
    db = request.app.state.session_factory()
    log.debug(f"Database session created: {db}")
    try:
        yield db # Provide the session to the route handler
    finally:
        log.debug(f"Closing database session: {db}")
        db.close() # Ensure the session is always closed
