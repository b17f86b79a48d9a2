"""
SQL Server Catalog Reader

Reads table lists, column descriptors and primary keys from SQL Server
metadata views. Every query is read-only; a failing query means the source
cannot be trusted for the rest of the run, so errors are raised as
CatalogError and never retried.
"""

from typing import Dict, List, Optional, Sequence, Tuple
import logging

from mssql_pg_copy.exceptions import CatalogError
from mssql_pg_copy.odbc_helper import OdbcConnectionHelper
from mssql_pg_copy.table_config import (
    ColumnDescriptor,
    QualifiedTableName,
    as_qualified_name,
)

logger = logging.getLogger(__name__)


TABLES_QUERY = """
SELECT TABLE_SCHEMA, TABLE_NAME
FROM INFORMATION_SCHEMA.TABLES
WHERE TABLE_TYPE = 'BASE TABLE'
  AND TABLE_SCHEMA IN ({placeholders})
ORDER BY TABLE_SCHEMA, TABLE_NAME
"""

COLUMNS_QUERY = """
SELECT COLUMN_NAME, DATA_TYPE, IS_NULLABLE
FROM INFORMATION_SCHEMA.COLUMNS
WHERE TABLE_SCHEMA = ? AND TABLE_NAME = ?
ORDER BY ORDINAL_POSITION
"""

SCHEMA_COLUMNS_QUERY = """
SELECT c.TABLE_SCHEMA, c.TABLE_NAME, c.COLUMN_NAME, c.DATA_TYPE, c.IS_NULLABLE
FROM INFORMATION_SCHEMA.COLUMNS c
INNER JOIN INFORMATION_SCHEMA.TABLES t
    ON t.TABLE_SCHEMA = c.TABLE_SCHEMA AND t.TABLE_NAME = c.TABLE_NAME
WHERE t.TABLE_TYPE = 'BASE TABLE'
  AND c.TABLE_SCHEMA IN ({placeholders})
ORDER BY c.TABLE_SCHEMA, c.TABLE_NAME, c.ORDINAL_POSITION
"""

PRIMARY_KEY_QUERY = """
SELECT c.name
FROM sys.indexes i
INNER JOIN sys.index_columns ic ON i.object_id = ic.object_id AND i.index_id = ic.index_id
INNER JOIN sys.columns c ON ic.object_id = c.object_id AND ic.column_id = c.column_id
INNER JOIN sys.tables t ON i.object_id = t.object_id
INNER JOIN sys.schemas s ON t.schema_id = s.schema_id
WHERE s.name = ? AND t.name = ? AND i.is_primary_key = 1
ORDER BY ic.key_ordinal
"""


def _is_nullable(value) -> bool:
    if isinstance(value, str):
        return value.strip().upper() == 'YES'
    return bool(value)


class CatalogReader:
    """Read table and column metadata from the SQL Server source."""

    def __init__(self, mssql_hook: OdbcConnectionHelper):
        """
        Args:
            mssql_hook: ODBC helper for the source database
        """
        self.mssql_hook = mssql_hook

    def _records(self, description: str, query: str, parameters: Optional[List] = None) -> List[Tuple]:
        try:
            return self.mssql_hook.get_records(query, parameters=parameters)
        except Exception as e:
            raise CatalogError(f"Error getting {description}: {e}") from e

    def get_source_tables(self, schemas: Sequence[str]) -> List[QualifiedTableName]:
        """
        List base tables (no views) in the given schemas.

        Args:
            schemas: Schema names to include

        Returns:
            Qualified table names ordered by schema, then table name
        """
        schemas = [s for s in schemas if s]
        if not schemas:
            return []

        query = TABLES_QUERY.format(placeholders=', '.join('?' for _ in schemas))
        rows = self._records("tables", query, list(schemas))

        tables = [QualifiedTableName(row[0], row[1]) for row in rows]
        logger.info(f"Found {len(tables)} tables in schemas {', '.join(schemas)}")
        return tables

    def get_table_columns(self, table) -> Tuple[ColumnDescriptor, ...]:
        """
        Get the columns of a table in ordinal order.

        Args:
            table: Qualified table name

        Returns:
            Column descriptors (name, data type, nullability)
        """
        table = as_qualified_name(table)
        rows = self._records(f"columns for table {table}", COLUMNS_QUERY, [table.schema, table.name])
        return tuple(ColumnDescriptor(row[0], row[1], _is_nullable(row[2])) for row in rows)

    def get_primary_key_columns(self, table) -> Tuple[str, ...]:
        """
        Get the primary key columns of a table in key order.

        Returns:
            Column names, empty if the table has no primary key
        """
        table = as_qualified_name(table)
        rows = self._records(f"primary key for table {table}", PRIMARY_KEY_QUERY, [table.schema, table.name])
        return tuple(row[0] for row in rows)

    def get_schema_columns(
        self, schemas: Sequence[str]
    ) -> Dict[QualifiedTableName, Tuple[ColumnDescriptor, ...]]:
        """
        Get columns for every base table in the given schemas with one query.

        Returns:
            Ordered mapping of table name to its column descriptors
        """
        schemas = [s for s in schemas if s]
        if not schemas:
            return {}

        query = SCHEMA_COLUMNS_QUERY.format(placeholders=', '.join('?' for _ in schemas))
        rows = self._records("schema columns", query, list(schemas))

        result: Dict[QualifiedTableName, List[ColumnDescriptor]] = {}
        for schema, table_name, column, data_type, nullable in rows:
            key = QualifiedTableName(schema, table_name)
            result.setdefault(key, []).append(ColumnDescriptor(column, data_type, _is_nullable(nullable)))

        return {key: tuple(columns) for key, columns in result.items()}

    def get_database_name(self) -> Optional[str]:
        """Name of the connected source database, or None if it cannot be read."""
        try:
            row = self.mssql_hook.get_first("SELECT DB_NAME()")
        except Exception as e:
            logger.warning(f"Could not determine current database name: {e}")
            return None
        return row[0] if row else None
