"""
Store Connections

Pools for the SQL Server source and PostgreSQL target, one per Airflow
connection ID, sized from environment variables:

- MAX_MSSQL_CONNECTIONS / MAX_IDLE_MSSQL_CONNECTIONS (default 10 / 5)
- MAX_PG_CONNECTIONS / MAX_IDLE_PG_CONNECTIONS (default 10 / 5)
- CONN_MAX_LIFETIME_SECONDS (default 300)

The SQL Server side uses ConnectionPool; the PostgreSQL side wraps
psycopg2's ThreadedConnectionPool.
"""

from typing import Any, Dict, Optional
from airflow.providers.postgres.hooks.postgres import PostgresHook
import contextlib
import logging
import threading
import time

import psycopg2
import psycopg2.extras
from psycopg2 import pool as pg_pool

from mssql_pg_copy.connection_pool import ConnectionPool, env_int
from mssql_pg_copy.exceptions import ConnectivityError
from mssql_pg_copy.odbc_helper import OdbcConnectionHelper

logger = logging.getLogger(__name__)

DEFAULT_MAX_OPEN = 10
DEFAULT_MAX_IDLE = 5
DEFAULT_MAX_LIFETIME_SECONDS = 300

# Pools are shared by every task running in the same worker process
_source_pools: Dict[str, ConnectionPool] = {}
_target_pools: Dict[str, "PostgresConnectionPool"] = {}
_pool_lock = threading.Lock()


def get_source_helper(mssql_conn_id: str) -> OdbcConnectionHelper:
    """ODBC helper for the source, borrowing connections from the shared pool."""
    helper = OdbcConnectionHelper(odbc_conn_id=mssql_conn_id)
    helper.set_pool(get_source_pool(mssql_conn_id, helper))
    return helper


def get_source_pool(mssql_conn_id: str, helper: OdbcConnectionHelper = None) -> ConnectionPool:
    """Get or create the SQL Server pool for this connection ID."""
    if mssql_conn_id not in _source_pools:
        with _pool_lock:
            # Double-check after acquiring lock
            if mssql_conn_id not in _source_pools:
                helper = helper or OdbcConnectionHelper(odbc_conn_id=mssql_conn_id)
                _source_pools[mssql_conn_id] = ConnectionPool(
                    helper.connect,
                    name=f"mssql[{mssql_conn_id}]",
                    max_open=env_int('MAX_MSSQL_CONNECTIONS', DEFAULT_MAX_OPEN, minimum=1),
                    max_idle=env_int('MAX_IDLE_MSSQL_CONNECTIONS', DEFAULT_MAX_IDLE, minimum=0),
                    max_lifetime=env_int('CONN_MAX_LIFETIME_SECONDS', DEFAULT_MAX_LIFETIME_SECONDS, minimum=0),
                )
                logger.info(f"Created MSSQL pool for {mssql_conn_id} ({helper.describe()})")
    return _source_pools[mssql_conn_id]


def postgres_connect_kwargs(postgres_conn_id: str) -> Dict[str, Any]:
    """psycopg2.connect keyword arguments from the Airflow connection."""
    pg_conn = PostgresHook.get_connection(postgres_conn_id)
    kwargs = {
        'host': pg_conn.host,
        'port': pg_conn.port or 5432,
        'dbname': pg_conn.schema or pg_conn.login,
        'user': pg_conn.login,
        'password': pg_conn.password,
        'connect_timeout': 10,
        # Large tables: no statement timeout
        'options': '-c statement_timeout=0',
    }
    extra = getattr(pg_conn, 'extra_dejson', None)
    if not isinstance(extra, dict):
        extra = {}
    if extra.get('sslmode'):
        kwargs['sslmode'] = extra['sslmode']
    return kwargs


class PostgresConnectionPool:
    """
    psycopg2 ThreadedConnectionPool with a max-lifetime limit.

    maxconn is the max-open limit. minconn is the max-idle limit, since
    putconn closes any connection returned while minconn are already idle.
    ThreadedConnectionPool opens minconn connections when it is built, so it
    is built on first acquire; until then the pool holds no connections.
    """

    def __init__(
        self,
        connect_kwargs: Dict[str, Any],
        name: str = "postgres",
        max_open: int = DEFAULT_MAX_OPEN,
        max_idle: int = DEFAULT_MAX_IDLE,
        max_lifetime: float = DEFAULT_MAX_LIFETIME_SECONDS,
    ):
        if max_open < 1:
            raise ValueError(f"max_open must be at least 1 (got {max_open})")

        self.name = name
        self._connect_kwargs = connect_kwargs
        self._max_open = max_open
        self._max_idle = min(max(0, max_idle), max_open)
        self._max_lifetime = max_lifetime
        self._pool: Optional[pg_pool.ThreadedConnectionPool] = None
        # First time each connection was handed out, keyed by id()
        self._created_at: Dict[int, float] = {}
        self._lock = threading.Lock()

    def _get_pool(self) -> pg_pool.ThreadedConnectionPool:
        if self._pool is None:
            with self._lock:
                if self._pool is None:
                    psycopg2.extras.register_uuid()
                    self._pool = pg_pool.ThreadedConnectionPool(
                        minconn=self._max_idle,
                        maxconn=self._max_open,
                        **self._connect_kwargs,
                    )
                    logger.info(
                        f"Opened {self.name} pool: max_open={self._max_open}, "
                        f"max_idle={self._max_idle}, max_lifetime={self._max_lifetime}s"
                    )
        return self._pool

    def _is_expired(self, conn) -> bool:
        if not self._max_lifetime or self._max_lifetime <= 0:
            return False
        created = self._created_at.get(id(conn))
        return created is not None and time.monotonic() - created >= self._max_lifetime

    def _discard(self, pool: pg_pool.ThreadedConnectionPool, conn) -> None:
        self._created_at.pop(id(conn), None)
        pool.putconn(conn, close=True)

    def acquire(self):
        """
        Borrow a connection, replacing any that was dropped or has expired.

        Raises:
            psycopg2.pool.PoolError: If max_open connections are already in use
        """
        pool = self._get_pool()
        while True:
            conn = pool.getconn()
            if conn.closed or self._is_expired(conn):
                logger.debug(f"Replacing closed or expired {self.name} connection")
                self._discard(pool, conn)
                continue
            if id(conn) not in self._created_at:
                self._created_at[id(conn)] = time.monotonic()
            return conn

    def release(self, conn) -> None:
        """Return a connection; expired ones are closed instead of kept idle."""
        if conn is None or self._pool is None:
            return
        if self._pool.closed:
            self._created_at.pop(id(conn), None)
            conn.close()
            return

        if self._is_expired(conn):
            logger.debug(f"Closing {self.name} connection past max lifetime")
            self._discard(self._pool, conn)
            return

        self._pool.putconn(conn)
        if conn.closed:
            # putconn closed it: max_idle connections were already idle
            self._created_at.pop(id(conn), None)

    @contextlib.contextmanager
    def connection(self):
        conn = self.acquire()
        try:
            yield conn
        finally:
            self.release(conn)

    def ping(self) -> None:
        """Open (or reuse) a connection and run SELECT 1 on it."""
        with self.connection() as conn:
            with conn.cursor() as cursor:
                cursor.execute("SELECT 1")
                cursor.fetchone()
            conn.rollback()

    def close(self) -> None:
        if self._pool is not None and not self._pool.closed:
            self._pool.closeall()
        self._created_at.clear()
        logger.info(f"{self.name} connection pool closed")

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "open": self._pool is not None and not self._pool.closed,
            "tracked": len(self._created_at),
            "max_open": self._max_open,
            "max_idle": self._max_idle,
            "max_lifetime": self._max_lifetime,
        }


def get_target_pool(postgres_conn_id: str) -> PostgresConnectionPool:
    """Get or create the PostgreSQL pool for this connection ID."""
    if postgres_conn_id not in _target_pools:
        with _pool_lock:
            if postgres_conn_id not in _target_pools:
                connect_kwargs = postgres_connect_kwargs(postgres_conn_id)
                _target_pools[postgres_conn_id] = PostgresConnectionPool(
                    connect_kwargs,
                    name=f"postgres[{postgres_conn_id}]",
                    max_open=env_int('MAX_PG_CONNECTIONS', DEFAULT_MAX_OPEN, minimum=1),
                    max_idle=env_int('MAX_IDLE_PG_CONNECTIONS', DEFAULT_MAX_IDLE, minimum=0),
                    max_lifetime=env_int('CONN_MAX_LIFETIME_SECONDS', DEFAULT_MAX_LIFETIME_SECONDS, minimum=0),
                )
                logger.info(
                    f"Created PostgreSQL pool for {postgres_conn_id} "
                    f"({connect_kwargs['host']}:{connect_kwargs['port']}/{connect_kwargs['dbname']})"
                )
    return _target_pools[postgres_conn_id]


@contextlib.contextmanager
def target_connection(pool: PostgresConnectionPool):
    """
    Borrow a PostgreSQL connection, rolling back anything left open before
    it goes back to the pool.
    """
    conn = pool.acquire()
    try:
        yield conn
    finally:
        if conn is not None and getattr(conn, "autocommit", False) is False:
            try:
                conn.rollback()
            except Exception:
                logger.exception("Exception occurred during PostgreSQL connection rollback")
        pool.release(conn)


def check_connectivity(source_pool: ConnectionPool, target_pool: PostgresConnectionPool) -> None:
    """
    Ping both stores.

    Raises:
        ConnectivityError: If either store cannot be reached
    """
    for label, pool in (("SQL Server source", source_pool), ("PostgreSQL target", target_pool)):
        try:
            pool.ping()
        except Exception as e:
            logger.error(f"Error connecting to {label} ({pool.name}): {e}")
            raise ConnectivityError(f"Cannot connect to {label}: {e}") from e
        logger.info(f"✓ Connected to {label}")


def close_pools() -> None:
    """Close and forget every pool created in this process."""
    with _pool_lock:
        for pool in list(_source_pools.values()) + list(_target_pools.values()):
            pool.close()
        _source_pools.clear()
        _target_pools.clear()
