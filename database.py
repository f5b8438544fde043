from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from fastapi import Request

# Create a Base class for declarative models
Base = declarative_base()


def create_db_engine(database_url: str) -> Engine:
    """
    Builds the engine for the configured URL.

    SQLite is used for local runs and tests; anything else is assumed to be
    a server database and gets the connection pool settings.
    """
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # A single shared connection keeps the in-memory database alive.
            kwargs["poolclass"] = StaticPool
        engine = create_engine(database_url, **kwargs)
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        return engine

    return create_engine(
        database_url,
        pool_size=10,  # The number of connections to keep open in the pool.
        max_overflow=20,  # The maximum number of connections to allow in addition to pool_size.
        pool_recycle=3600,  # Recycle connections after 1 hour to prevent timeout issues.
        pool_pre_ping=True,  # Check if the connection is alive before using it.
    )


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine: Engine) -> None:
    import models  # noqa: F401  registers the tables on Base.metadata

    Base.metadata.create_all(bind=engine)


# --- Dependency for FastAPI ---
def get_db(request: Request):
    """
    FastAPI dependency that provides a database session per request.
    The session factory is owned by the app (see main.create_app).
    """
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()
