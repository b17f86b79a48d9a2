"""
Bounded Connection Pool

Pool for the SQL Server source. pyodbc has no pool of its own that can be
sized per connection ID, so this one is given a zero-argument connect
function and bounds open connections, idle connections and the lifetime of
any one connection.
"""

from typing import Any, Callable, Dict, List, Optional
import contextlib
import logging
import os
import queue
import threading
import time

logger = logging.getLogger(__name__)


class ConnectionPool:
    """
    Thread-safe connection pool with max-open, max-idle and max-lifetime limits.

    The copy engine only ever runs one unit of work per store at a time; the
    pool exists so a connection dropped by the network is replaced
    transparently on the next acquire.

    Usage:
        pool = ConnectionPool(connect, name="mssql", max_open=10)
        with pool.connection() as conn:
            cursor = conn.cursor()
            # use connection
    """

    def __init__(
        self,
        connect: Callable[[], Any],
        name: str = "db",
        max_open: int = 10,
        max_idle: int = 5,
        max_lifetime: float = 300.0,
        acquire_timeout: float = 120.0,
    ):
        """
        Initialize the connection pool.

        Args:
            connect: Function returning a new DB-API connection
            name: Label used in log messages
            max_open: Maximum concurrently open connections (hard limit)
            max_idle: Maximum connections kept open while unused
            max_lifetime: Seconds after which a connection is closed and replaced
                (0 disables the limit)
            acquire_timeout: Seconds to wait when pool is exhausted
        """
        if max_open < 1:
            raise ValueError(f"max_open must be at least 1 (got {max_open})")

        self._connect = connect
        self.name = name
        self._max_open = max_open
        self._max_idle = max(0, max_idle)
        self._max_lifetime = max_lifetime
        self._acquire_timeout = acquire_timeout

        # LIFO so the most recently used connection is reused first
        self._available: queue.LifoQueue = queue.LifoQueue()

        # Semaphore limits total concurrent connections
        self._semaphore = threading.Semaphore(max_open)

        # Creation time for every open connection, keyed by id()
        self._created_at: Dict[int, float] = {}
        self._all_connections: List[Any] = []
        self._lock = threading.Lock()
        self._closed = False

        logger.info(
            f"Initializing {name} connection pool: max_open={max_open}, "
            f"max_idle={self._max_idle}, max_lifetime={max_lifetime}s"
        )

    def _create_connection(self) -> Any:
        """Create a new connection."""
        conn = self._connect()
        with self._lock:
            self._all_connections.append(conn)
            self._created_at[id(conn)] = time.monotonic()
        logger.debug(f"Created new {self.name} connection (pool size: {len(self._all_connections)})")
        return conn

    def _is_expired(self, conn: Any) -> bool:
        if not self._max_lifetime or self._max_lifetime <= 0:
            return False
        created = self._created_at.get(id(conn))
        if created is None:
            return True
        return time.monotonic() - created >= self._max_lifetime

    def _validate_connection(self, conn: Any) -> bool:
        """Check if connection is still valid."""
        try:
            cursor = conn.cursor()
            cursor.execute("SELECT 1")
            cursor.fetchone()
            cursor.close()
            conn.rollback()
            return True
        except Exception as e:
            logger.debug(f"Discarding stale {self.name} connection: {e}")
            return False

    def _close_connection(self, conn: Any) -> None:
        """Close a connection and forget it."""
        try:
            conn.close()
        except Exception as e:
            logger.debug(f"Error closing {self.name} connection: {e}")
        with self._lock:
            if conn in self._all_connections:
                self._all_connections.remove(conn)
            self._created_at.pop(id(conn), None)

    def acquire(self) -> Any:
        """
        Acquire a connection from the pool.

        Idle connections past their lifetime or failing validation are closed
        and replaced. Blocks while max_open connections are in use.

        Returns:
            Open connection

        Raises:
            TimeoutError: If no connection available within timeout
            RuntimeError: If pool has been closed
        """
        if self._closed:
            raise RuntimeError(f"{self.name} connection pool has been closed")

        acquired = self._semaphore.acquire(timeout=self._acquire_timeout)
        if not acquired:
            raise TimeoutError(
                f"Could not acquire {self.name} connection within {self._acquire_timeout}s "
                f"(pool max: {self._max_open})"
            )

        try:
            while True:
                try:
                    conn = self._available.get_nowait()
                except queue.Empty:
                    return self._create_connection()

                if self._is_expired(conn):
                    logger.debug(f"Closing {self.name} connection past max lifetime")
                    self._close_connection(conn)
                    continue
                if self._validate_connection(conn):
                    return conn
                self._close_connection(conn)
        except Exception:
            self._semaphore.release()
            raise

    def release(self, conn: Any) -> None:
        """
        Return a connection to the pool.

        Closes the connection instead when the pool is closed, the connection
        has outlived max_lifetime, or max_idle connections are already idle.

        Args:
            conn: Connection to return (can be None, will be ignored)
        """
        if conn is None:
            return

        try:
            if self._closed or self._is_expired(conn) or self._available.qsize() >= self._max_idle:
                self._close_connection(conn)
            else:
                self._available.put(conn)
        finally:
            self._semaphore.release()

    @contextlib.contextmanager
    def connection(self):
        """Context manager that acquires a connection and always releases it."""
        conn = self.acquire()
        try:
            yield conn
        finally:
            self.release(conn)

    def ping(self) -> None:
        """Open (or reuse) a connection and run SELECT 1 on it."""
        with self.connection() as conn:
            cursor = conn.cursor()
            try:
                cursor.execute("SELECT 1")
                cursor.fetchone()
            finally:
                cursor.close()
            conn.rollback()

    def close(self) -> None:
        """Close all connections and shut down the pool."""
        self._closed = True

        while True:
            try:
                conn = self._available.get_nowait()
            except queue.Empty:
                break
            self._close_connection(conn)

        with self._lock:
            remaining = list(self._all_connections)
        for conn in remaining:
            self._close_connection(conn)

        logger.info(f"{self.name} connection pool closed")

    @property
    def stats(self) -> Dict[str, int]:
        """Get pool statistics."""
        return {
            "total": len(self._all_connections),
            "available": self._available.qsize(),
            "max_open": self._max_open,
            "max_idle": self._max_idle,
        }


def env_int(name: str, default: int, minimum: Optional[int] = None) -> int:
    """Read an integer setting from the environment, falling back to default."""
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={raw!r}; using {default}")
        return default
    if minimum is not None and value < minimum:
        logger.warning(f"{name}={value} is below {minimum}; using {minimum}")
        return minimum
    return value
