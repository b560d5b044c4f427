from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from fleet_rental.core.environment import get_database_url, get_sqlite_busy_timeout


Base = declarative_base()


def create_db_engine(
    database_url: Optional[str] = None,
    busy_timeout: Optional[float] = None,
    echo: bool = False,
) -> Engine:
    """
    Builds the SQLAlchemy engine used by the connection pool.

    Pooling is done by ``fleet_rental.core.pool.ConnectionPool``, so the engine
    itself uses ``NullPool``: every ``engine.connect()`` opens a real DBAPI
    connection and closing it really closes it.

    For SQLite the driver's own transaction handling is disabled and every
    transaction starts with ``BEGIN IMMEDIATE``. SQLite ignores
    ``SELECT ... FOR UPDATE``; the immediate write lock is what serializes
    concurrent writers there. Connections carrying the ``read_only``
    execution option begin a deferred transaction instead, which only takes
    a shared lock and does not queue behind writers.
    """
    url = database_url or get_database_url()
    is_sqlite = url.startswith("sqlite")

    connect_args = {}
    if is_sqlite:
        connect_args = {
            # connections are handed between worker threads by the pool
            "check_same_thread": False,
            "timeout": busy_timeout if busy_timeout is not None else get_sqlite_busy_timeout(),
        }

    engine = create_engine(
        url,
        echo=echo,
        poolclass=NullPool,
        connect_args=connect_args,
    )

    if is_sqlite:
        _enable_sqlite_write_locking(engine)

    return engine


def _enable_sqlite_write_locking(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys = ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        if conn.get_execution_options().get("read_only"):
            conn.exec_driver_sql("BEGIN")
        else:
            conn.exec_driver_sql("BEGIN IMMEDIATE")
