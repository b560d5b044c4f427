import logging
import threading
from collections import deque
from contextlib import contextmanager
from typing import Deque, Dict, Iterator, Optional, Set

from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from fleet_rental.core.db import Base, create_db_engine
from fleet_rental.core.environment import PoolSettings
from fleet_rental.core.metrics import pool_connections_in_use, pool_exhausted_total
from fleet_rental.core.retry import retry
from fleet_rental.scripts.seed_data import seed_default_fleet
from fleet_rental.services.exceptions import PoolClosedError, PoolExhaustedError

# Registers the tables on Base.metadata
import fleet_rental.models  # noqa: F401

logger = logging.getLogger(__name__)


class ConnectionPool:
    """
    Bounded pool of live SQLAlchemy connections.

    The idle deque and the live-connection counter are guarded by a single
    lock. The lock only covers bookkeeping; liveness pings, opening and
    closing connections all happen outside it.

    ``acquire`` blocks while ``max_size`` connections are checked out, retrying
    with exponential backoff (``wait_seconds`` doubling up to
    ``max_wait_seconds``) and raising ``PoolExhaustedError`` after
    ``max_attempts`` tries.

    On first use the schema is created and, when ``seed_defaults`` is set, the
    default fleet is inserted into an empty ``vehicles`` table.
    """

    def __init__(
        self,
        engine: Engine,
        max_size: int = 10,
        initial_size: int = 3,
        wait_seconds: float = 0.1,
        max_wait_seconds: float = 1.0,
        max_attempts: int = 50,
        seed_defaults: bool = True,
    ):
        settings = PoolSettings(
            max_size=max_size,
            initial_size=initial_size,
            wait_seconds=wait_seconds,
            max_wait_seconds=max_wait_seconds,
            max_attempts=max_attempts,
        )
        self._engine = engine
        self.max_size = settings.max_size
        self.initial_size = settings.initial_size
        self.wait_seconds = settings.wait_seconds
        self.max_wait_seconds = settings.max_wait_seconds
        self.max_attempts = settings.max_attempts
        self.seed_defaults = seed_defaults

        self._idle: Deque[Connection] = deque()
        self._checked_out: Set[Connection] = set()
        self._live = 0
        self._lock = threading.Lock()
        self._init_lock = threading.Lock()
        self._initialized = False
        self._closed = False

    @classmethod
    def from_env(cls, database_url: Optional[str] = None, seed_defaults: bool = True) -> "ConnectionPool":
        settings = PoolSettings.from_env()
        return cls(
            create_db_engine(database_url),
            seed_defaults=seed_defaults,
            **settings.model_dump(),
        )

    @property
    def engine(self) -> Engine:
        return self._engine

    @property
    def closed(self) -> bool:
        return self._closed

    def initialize(self) -> None:
        """Creates tables, seeds the default fleet and pre-opens connections. Runs once."""
        with self._init_lock:
            if self._initialized:
                return
            if self._closed:
                raise PoolClosedError("Connection pool has been shut down")

            Base.metadata.create_all(self._engine)
            if self.seed_defaults:
                with self._engine.begin() as conn:
                    seed_default_fleet(conn)

            for _ in range(self.initial_size):
                conn = self._engine.connect()
                with self._lock:
                    self._idle.append(conn)
                    self._live += 1

            self._initialized = True
            logger.info(
                f"Connection pool ready: {self.initial_size} idle, max {self.max_size}"
            )

    def acquire(self) -> Connection:
        """Hands out a validated connection, waiting with bounded backoff when the pool is full."""
        if self._closed:
            raise PoolClosedError("Connection pool has been shut down")
        if not self._initialized:
            self.initialize()

        wait_for_connection = retry(
            max_attempts=self.max_attempts,
            base_delay=self.wait_seconds,
            max_delay=self.max_wait_seconds,
            retry_on=(PoolExhaustedError,),
        )(self._try_acquire)

        try:
            conn = wait_for_connection()
        except PoolExhaustedError:
            pool_exhausted_total.inc()
            raise

        with self._lock:
            self._checked_out.add(conn)

        self._publish_usage()
        return conn

    def release(self, conn: Optional[Connection]) -> None:
        """
        Returns a connection to the idle set, or closes it if it is no longer usable.

        Only connections currently checked out of this pool are accepted; a
        second release of the same connection is ignored.
        """
        if conn is None:
            return

        with self._lock:
            if conn not in self._checked_out:
                logger.warning("Ignoring release of a connection that is not checked out of this pool")
                return
            self._checked_out.discard(conn)

        if not self._closed and self._reset(conn) and self._is_valid(conn):
            with self._lock:
                if not self._closed:
                    self._idle.append(conn)
                    conn = None

        if conn is not None:
            self._discard(conn)
        self._publish_usage()

    @contextmanager
    def connection(self) -> Iterator[Connection]:
        conn = self.acquire()
        try:
            yield conn
        finally:
            self.release(conn)

    def shutdown(self) -> None:
        """Closes every pooled connection. Safe to call more than once."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            idle = list(self._idle)
            self._idle.clear()
            self._live -= len(idle)

        for conn in idle:
            self._close_quietly(conn)
        self._engine.dispose()
        self._publish_usage()
        logger.info(f"Connection pool shut down, closed {len(idle)} idle connection(s)")

    def stats(self) -> Dict[str, int]:
        with self._lock:
            idle = len(self._idle)
            return {
                "idle": idle,
                "in_use": self._live - idle,
                "max_size": self.max_size,
            }

    def _try_acquire(self) -> Connection:
        with self._lock:
            if self._closed:
                raise PoolClosedError("Connection pool has been shut down")
            if self._idle:
                conn = self._idle.popleft()
            elif self._live < self.max_size:
                # reserve the slot before opening outside the lock
                self._live += 1
                conn = None
            else:
                raise PoolExhaustedError(
                    f"All {self.max_size} connections are in use"
                )

        if conn is not None:
            if self._is_valid(conn):
                return conn
            logger.info("Discarding stale pooled connection")
            # the stale connection's slot is reused for its replacement
            self._close_quietly(conn)

        try:
            return self._engine.connect()
        except SQLAlchemyError:
            with self._lock:
                self._live -= 1
            raise

    def _is_valid(self, conn: Connection) -> bool:
        if conn.closed or conn.invalidated:
            return False
        try:
            return bool(self._engine.dialect.do_ping(conn.connection.dbapi_connection))
        except Exception as e:
            logger.debug(f"Connection ping failed: {e}")
            return False

    def _reset(self, conn: Connection) -> bool:
        """Rolls back whatever the borrower left open so the connection is back in auto-commit mode."""
        if conn.closed or conn.invalidated:
            return False
        try:
            if conn.in_transaction():
                conn.rollback()
            return True
        except SQLAlchemyError as e:
            logger.warning(f"Failed to reset pooled connection: {e}")
            return False

    def _discard(self, conn: Connection) -> None:
        self._close_quietly(conn)
        with self._lock:
            self._live = max(self._live - 1, 0)

    def _close_quietly(self, conn: Connection) -> None:
        try:
            conn.close()
        except SQLAlchemyError as e:
            logger.debug(f"Error closing connection: {e}")

    def _publish_usage(self) -> None:
        pool_connections_in_use.set(self.stats()["in_use"])
