"""Database access layer using psycopg2.

Provides:
- ConnectionPool: bounded, process-wide pool owned by the app lifespan
- get_conn(): single connection from DATABASE_URL (scripts, tests)
- txn(): context manager for short, safe transactions
- fetchone/fetchall: query helpers

Pooling is delegated to SQLAlchemy's ``QueuePool`` used standalone (no
engine); connections themselves are plain psycopg2 connections.
"""

from __future__ import annotations

import os
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Sequence

import psycopg2
from psycopg2.extensions import connection as PgConnection, cursor as PgCursor
from sqlalchemy import event, exc as sa_exc
from sqlalchemy.pool import QueuePool

from eventcore.infra.settings import env_int, env_seconds, is_production
from eventcore.observability.logging import get_logger
from eventcore.observability.redaction import safe_log_context

logger = get_logger(__name__)

DEFAULT_POOL_MAX = 10
DEFAULT_ACQUIRE_TIMEOUT_MS = 5_000
DEFAULT_STATEMENT_TIMEOUT_MS = 10_000
DEFAULT_IDLE_TIMEOUT_MS = 30_000


class DatabaseUnavailableError(RuntimeError):
    """The database could not be reached or no connection was available."""


class PoolTimeoutError(DatabaseUnavailableError):
    """No pooled connection became free before the acquire deadline."""


class DeadlineConnection(PgConnection):
    """psycopg2 connection carrying a client-side statement deadline (seconds)."""

    statement_deadline: float | None = None


class DeadlineCursor(PgCursor):
    """Cursor that cancels any statement running past the connection deadline.

    The server enforces ``statement_timeout`` as well; this covers a stalled
    network where the server-side timer never gets to report back.
    """

    def execute(self, query, vars=None):
        deadline = getattr(self.connection, "statement_deadline", None)
        if not deadline:
            return super().execute(query, vars)

        timer = threading.Timer(deadline, self.connection.cancel)
        timer.daemon = True
        timer.start()
        try:
            return super().execute(query, vars)
        finally:
            timer.cancel()


def get_database_url() -> str:
    """Return DATABASE_URL.

    Raises:
        RuntimeError: If DATABASE_URL is not set.
    """
    dsn = os.environ.get("DATABASE_URL")
    if not dsn:
        raise RuntimeError("DATABASE_URL environment variable not set")
    return dsn


def get_conn() -> PgConnection:
    """Get a new, unpooled database connection from DATABASE_URL.

    Raises:
        RuntimeError: If DATABASE_URL is not set.
        psycopg2.Error: On connection failure.
    """
    return psycopg2.connect(get_database_url())


@dataclass(frozen=True)
class PoolConfig:
    """Sizing and deadlines for ConnectionPool. Durations are in seconds."""

    dsn: str
    max_size: int = DEFAULT_POOL_MAX
    acquire_timeout: float = DEFAULT_ACQUIRE_TIMEOUT_MS / 1000
    statement_timeout: float = DEFAULT_STATEMENT_TIMEOUT_MS / 1000
    idle_timeout: float = DEFAULT_IDLE_TIMEOUT_MS / 1000
    require_ssl: bool = False

    @classmethod
    def from_env(cls) -> PoolConfig:
        return cls(
            dsn=get_database_url(),
            max_size=env_int("DB_POOL_MAX", DEFAULT_POOL_MAX),
            acquire_timeout=env_seconds(
                "DB_POOL_ACQUIRE_TIMEOUT_MS", DEFAULT_ACQUIRE_TIMEOUT_MS
            ),
            statement_timeout=env_seconds(
                "DB_STATEMENT_TIMEOUT_MS", DEFAULT_STATEMENT_TIMEOUT_MS
            ),
            idle_timeout=env_seconds("DB_POOL_IDLE_TIMEOUT_MS", DEFAULT_IDLE_TIMEOUT_MS),
            require_ssl=is_production(),
        )

    def connect_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for psycopg2.connect()."""
        kwargs: dict[str, Any] = {
            "connection_factory": DeadlineConnection,
            "cursor_factory": DeadlineCursor,
            "connect_timeout": max(1, int(self.acquire_timeout)),
            "options": f"-c statement_timeout={int(self.statement_timeout * 1000)}",
        }
        if self.require_ssl:
            # TLS on, certificate not verified
            kwargs["sslmode"] = "require"
        return kwargs


class ConnectionPool:
    """Bounded pool of psycopg2 connections.

    - at most ``max_size`` connections, opened lazily;
    - ``connection()`` waits ``acquire_timeout`` for a free slot, then raises
      PoolTimeoutError;
    - checkout is LIFO, so under light traffic the surplus from a burst stays
      untouched and ages out;
    - connections idle longer than ``idle_timeout`` are closed by
      ``retire_idle()`` (run periodically once ``start_reaper()`` is called)
      or, failing that, on their next checkout; a closed slot reconnects
      lazily when it is next needed;
    - every connection is returned (rolled back if still in a transaction) on
      all exit paths.

    Create one per process in the application lifespan, call
    ``start_reaper()``, and ``close()`` it at shutdown.
    """

    def __init__(
        self,
        config: PoolConfig,
        *,
        connect: Callable[[], PgConnection] | None = None,
    ) -> None:
        self.config = config
        self._connect = connect or self._open_connection
        self._pool = QueuePool(
            self._connect,
            pool_size=config.max_size,
            max_overflow=0,
            timeout=config.acquire_timeout,
            reset_on_return="rollback",
            use_lifo=True,
        )
        # id(connection_record) -> (connection_record, released_at)
        self._idle: dict[int, tuple[Any, float]] = {}
        self._idle_lock = threading.Lock()
        self._stopping = threading.Event()
        self._reaper: threading.Thread | None = None
        event.listen(self._pool, "checkin", self._on_checkin)
        event.listen(self._pool, "checkout", self._on_checkout)

    @classmethod
    def from_env(cls) -> ConnectionPool:
        return cls(PoolConfig.from_env())

    def _open_connection(self) -> PgConnection:
        conn = psycopg2.connect(self.config.dsn, **self.config.connect_kwargs())
        conn.statement_deadline = self.config.statement_timeout
        return conn

    def _on_checkin(self, dbapi_connection, connection_record) -> None:
        if dbapi_connection is None:
            return
        with self._idle_lock:
            self._idle[id(connection_record)] = (connection_record, time.monotonic())

    def _on_checkout(self, dbapi_connection, connection_record, connection_proxy) -> None:
        with self._idle_lock:
            entry = self._idle.pop(id(connection_record), None)
        # a sweep may close it between queue checkout and this event
        if getattr(dbapi_connection, "closed", 0):
            raise sa_exc.DisconnectionError("connection closed while idle")
        if entry is None:
            return
        idle_for = time.monotonic() - entry[1]
        if idle_for > self.config.idle_timeout:
            logger.debug(
                "retiring idle database connection",
                extra={"extra_fields": safe_log_context(idle_seconds=round(idle_for, 1))},
            )
            # QueuePool discards the connection and opens a replacement
            raise sa_exc.DisconnectionError("connection idle past idle_timeout")

    def retire_idle(self) -> int:
        """Close pooled connections idle longer than idle_timeout.

        Returns:
            How many connections were closed.
        """
        cutoff = time.monotonic() - self.config.idle_timeout
        retired = 0
        with self._idle_lock:
            for key, (record, released_at) in list(self._idle.items()):
                if released_at >= cutoff:
                    continue
                del self._idle[key]
                record.invalidate()
                retired += 1
        if retired:
            logger.debug(
                "closed idle database connections",
                extra={"extra_fields": safe_log_context(count=retired)},
            )
        return retired

    def start_reaper(self, interval: float | None = None) -> None:
        """Run retire_idle() every ``interval`` seconds until close()."""
        if self._reaper is not None:
            return
        interval = interval or max(self.config.idle_timeout / 2, 0.01)

        def run() -> None:
            while not self._stopping.wait(interval):
                try:
                    self.retire_idle()
                except Exception:
                    logger.exception("idle connection sweep failed")

        self._reaper = threading.Thread(target=run, name="db-pool-reaper", daemon=True)
        self._reaper.start()

    @property
    def reaper_running(self) -> bool:
        return self._reaper is not None and self._reaper.is_alive()

    @property
    def checked_out(self) -> int:
        return self._pool.checkedout()

    @contextmanager
    def connection(self) -> Iterator[PgConnection]:
        """Borrow a connection; it is always given back to the pool.

        Raises:
            PoolTimeoutError: If no connection frees up before acquire_timeout.
        """
        try:
            proxy = self._pool.connect()
        except sa_exc.TimeoutError as e:
            logger.warning(
                "database pool exhausted",
                extra={
                    "extra_fields": safe_log_context(
                        max_size=self.config.max_size,
                        acquire_timeout=self.config.acquire_timeout,
                    )
                },
            )
            raise PoolTimeoutError(
                f"no database connection available within {self.config.acquire_timeout}s"
            ) from e

        conn = proxy.dbapi_connection
        try:
            yield conn
        finally:
            if conn is None or conn.closed:
                proxy.invalidate()
            proxy.close()

    @contextmanager
    def transaction(self) -> Iterator[PgCursor]:
        """Borrow a connection and run one transaction on it (see txn())."""
        with self.connection() as conn:
            with txn(conn) as cur:
                yield cur

    def close(self) -> None:
        """Stop the reaper and close every pooled connection."""
        self._stopping.set()
        if self._reaper is not None:
            self._reaper.join(timeout=5)
        self._pool.dispose()


@contextmanager
def txn(conn: PgConnection | None = None) -> Iterator[PgCursor]:
    """Context manager for a short, safe transaction.

    If conn is None, creates a new connection that is closed on exit.
    Commits on successful exit, rolls back on exception.

    Example:
        with txn() as cur:
            cur.execute("INSERT INTO t (x) VALUES (%s)", (1,))
    """
    owns_conn = conn is None
    if owns_conn:
        conn = get_conn()

    try:
        with conn.cursor() as cur:
            yield cur
        conn.commit()
    except Exception:
        if not conn.closed:
            conn.rollback()
        raise
    finally:
        if owns_conn:
            conn.close()


def fetchone(
    cur: PgCursor,
    query: str,
    params: Sequence[Any] | None = None,
) -> tuple[Any, ...] | None:
    """Execute query and fetch one row (None if no results)."""
    cur.execute(query, params)
    return cur.fetchone()


def fetchall(
    cur: PgCursor,
    query: str,
    params: Sequence[Any] | None = None,
) -> list[tuple[Any, ...]]:
    """Execute query and fetch all rows."""
    cur.execute(query, params)
    return cur.fetchall()
