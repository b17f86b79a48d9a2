"""
SQL Server to PostgreSQL Copy Utilities

This package copies tables and their data from Microsoft SQL Server to
PostgreSQL using Apache Airflow, one table at a time in bounded transactions.

Modules:
- catalog: Read tables, columns and primary keys from SQL Server
- type_mapping: Map SQL Server types to PostgreSQL
- table_config: Qualified table names, list params and identifier quoting
- table_filter: Include/exclude/size filters applied before copying
- batch_copy: Streaming SELECT into a prepared INSERT, committed per batch
- migration: Sequential run over all selected tables
- ddl_generator: Generate PostgreSQL CREATE TABLE statements
- connection_pool / connections / odbc_helper: Pooled store connections

Pool settings (environment):
- MAX_MSSQL_CONNECTIONS / MAX_IDLE_MSSQL_CONNECTIONS (default 10 / 5)
- MAX_PG_CONNECTIONS / MAX_IDLE_PG_CONNECTIONS (default 10 / 5)
- CONN_MAX_LIFETIME_SECONDS (default 300)
"""

__version__ = "1.0.0"

from mssql_pg_copy import exceptions
from mssql_pg_copy import type_mapping
from mssql_pg_copy import table_config
from mssql_pg_copy import catalog
from mssql_pg_copy import table_filter
from mssql_pg_copy import batch_copy
from mssql_pg_copy import migration
from mssql_pg_copy import ddl_generator

__all__ = [
    "exceptions",
    "type_mapping",
    "table_config",
    "catalog",
    "table_filter",
    "batch_copy",
    "migration",
    "ddl_generator",
]
