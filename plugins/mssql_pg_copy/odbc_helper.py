"""
SQL Server Access over pyodbc

OdbcConnectionHelper turns an Airflow connection into an ODBC connection
string and is the connect function behind the source ConnectionPool.
Catalog and statistics queries run through get_records / get_first, which
borrow a pooled connection when a pool is attached and otherwise open and
close one per query.

Recognised connection extras: driver, encrypt, trust_server_certificate.
"""

from typing import Any, Callable, Dict, List, Optional, Tuple
from datetime import datetime, timedelta, timezone
from airflow.hooks.base import BaseHook
import contextlib
import pyodbc
import logging
import struct

logger = logging.getLogger(__name__)

DEFAULT_ODBC_DRIVER = '{ODBC Driver 18 for SQL Server}'
DEFAULT_LOGIN_TIMEOUT = 30

# SQL_SS_TIMESTAMPOFFSET, not decoded by pyodbc itself
SQL_DATETIMEOFFSET = -155


def decode_datetimeoffset(raw: bytes) -> datetime:
    """Decode a SQL Server datetimeoffset value into an aware datetime."""
    year, month, day, hour, minute, second, nanos, tz_hour, tz_minute = struct.unpack("<6hI2h", raw)
    return datetime(
        year, month, day, hour, minute, second, nanos // 1000,
        timezone(timedelta(hours=tz_hour, minutes=tz_minute)),
    )


def odbc_config(conn) -> Dict[str, str]:
    """ODBC keywords for an Airflow connection; no login means integrated auth."""
    extra = getattr(conn, 'extra_dejson', None)
    if not isinstance(extra, dict):
        extra = {}

    port = conn.port or 1433
    config = {
        'DRIVER': extra.get('driver', DEFAULT_ODBC_DRIVER),
        'SERVER': f"{conn.host},{port}" if port != 1433 else conn.host,
        'DATABASE': conn.schema,
        'TrustServerCertificate': extra.get('trust_server_certificate', 'yes'),
    }
    if extra.get('encrypt'):
        config['Encrypt'] = extra['encrypt']

    if conn.login:
        config.update(UID=conn.login, PWD=conn.password or '', Trusted_Connection='no')
    else:
        config['Trusted_Connection'] = 'yes'
    return config


class OdbcConnectionHelper:
    """
    Source-side query helper for one Airflow connection ID.

    The pool, when attached with set_pool, is the one returned by
    connections.get_source_pool for the same connection ID.
    """

    def __init__(self, odbc_conn_id: str, pool=None):
        self.conn_id = odbc_conn_id
        self._conn_config: Optional[Dict[str, str]] = None
        self._pool = pool

    def _get_connection_config(self) -> Dict[str, str]:
        if self._conn_config is None:
            self._conn_config = odbc_config(BaseHook.get_connection(self.conn_id))
        return self._conn_config

    def _build_connection_string(self) -> str:
        return ';'.join(f"{k}={v}" for k, v in self._get_connection_config().items() if v)

    def describe(self) -> str:
        """Server and database for log lines, without credentials."""
        config = self._get_connection_config()
        return f"{config.get('SERVER')}/{config.get('DATABASE')}"

    def connect(self) -> pyodbc.Connection:
        """Open a new connection with the datetimeoffset converter registered."""
        conn = pyodbc.connect(self._build_connection_string(), timeout=DEFAULT_LOGIN_TIMEOUT)
        conn.add_output_converter(SQL_DATETIMEOFFSET, decode_datetimeoffset)
        return conn

    def set_pool(self, pool) -> None:
        self._pool = pool

    def get_conn(self) -> pyodbc.Connection:
        return self._pool.acquire() if self._pool else self.connect()

    def release_conn(self, conn: Optional[pyodbc.Connection]) -> None:
        """Hand a connection back to the pool, or close it when unpooled."""
        if conn is None:
            return
        if self._pool:
            self._pool.release(conn)
        else:
            conn.close()

    @contextlib.contextmanager
    def borrowed(self):
        conn = self.get_conn()
        try:
            yield conn
        finally:
            self.release_conn(conn)

    def _run(self, query: str, parameters: Optional[List[Any]], fetch: Callable[[Any], Any]) -> Any:
        try:
            with self.borrowed() as conn:
                cursor = conn.cursor()
                if parameters:
                    cursor.execute(query, parameters)
                else:
                    cursor.execute(query)
                return fetch(cursor)
        except Exception as e:
            logger.error(f"Error executing query on {self.conn_id}: {e}")
            logger.error(f"Query: {query}")
            if parameters:
                logger.error(f"Parameters: {parameters}")
            raise

    def get_records(self, query: str, parameters: Optional[List[Any]] = None) -> List[Tuple[Any, ...]]:
        """All rows of a query, as tuples."""
        return self._run(query, parameters, lambda cursor: [tuple(row) for row in cursor.fetchall()])

    def get_first(self, query: str, parameters: Optional[List[Any]] = None) -> Optional[Tuple[Any, ...]]:
        """First row of a query as a tuple, or None when it returns nothing."""

        def first(cursor):
            row = cursor.fetchone()
            return tuple(row) if row is not None else None

        return self._run(query, parameters, first)
