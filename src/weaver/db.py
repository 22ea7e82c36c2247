from pathlib import Path
from sqlalchemy import event, make_url
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import create_engine
from weaver.logging import logger

MEMORY_URLS = ("sqlite://", "sqlite:///:memory:")


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    # SQLite ignores ON DELETE CASCADE unless this is set per connection
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def make_engine(url: str, *, timeout: float = 5.0, echo: bool = False) -> Engine:
    """
    Build an engine for the metadata store.

    `timeout` bounds how long a write waits on a locked database, keeping
    the metadata insert inside the interactive response budget.
    """
    if not url.startswith("sqlite"):
        return create_engine(url, echo=echo, pool_pre_ping=True)

    kwargs = {"connect_args": {"check_same_thread": False, "timeout": timeout}}
    if url in MEMORY_URLS:
        # One shared connection so every Session sees the same in-memory DB
        kwargs["poolclass"] = StaticPool
    else:
        database = make_url(url).database
        if database:
            Path(database).parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(url, echo=echo, **kwargs)
    event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def init_db(engine: Engine) -> list[str]:
    """Bring the schema up to date. Returns the versions applied by this call."""
    from weaver.migrations import apply_migrations

    logger.info(f"Initializing metadata store at {engine.url.render_as_string(hide_password=True)}")
    return apply_migrations(engine)
