"""
Batch Copy Module

Copies one table from SQL Server to PostgreSQL: a single streaming SELECT on
the source feeds a prepared INSERT on the target, committed every
`batch_size` rows. A failure anywhere aborts the table, rolls back the open
batch and reports how many rows were already committed.

Values are bound exactly as the source driver returns them; psycopg2
adapts them on the way to PostgreSQL.
"""

from typing import Any, Dict, List, Sequence
from datetime import datetime
import logging
import time

from psycopg2 import sql

from mssql_pg_copy.exceptions import (
    ColumnMismatchError,
    ConfigurationError,
    TableCopyError,
)
from mssql_pg_copy.table_config import (
    ColumnDescriptor,
    QualifiedTableName,
    as_qualified_name,
    format_mssql_table,
    pg_identifier,
    pg_table,
    quote_mssql_identifier,
)

logger = logging.getLogger(__name__)


DEFAULT_BATCH_SIZE = 1000
INSERT_STATEMENT_NAME = "mssql_pg_copy_insert"

_STAGE_MESSAGES = {
    'query': "querying source table",
    'read': "scanning row",
    'prepare': "preparing insert statement",
    'insert': "inserting row",
    'commit': "committing transaction",
}


def validate_batch_size(batch_size: Any) -> int:
    """
    Raises:
        ConfigurationError: If batch_size is not a positive integer
    """
    if isinstance(batch_size, bool) or not isinstance(batch_size, int) or batch_size < 1:
        raise ConfigurationError(f"batch_size must be a positive integer (got {batch_size!r})")
    return batch_size


def column_names(columns: Sequence[Any]) -> List[str]:
    """
    Column names from a column descriptor, in order.

    Raises:
        ConfigurationError: If there are no columns or a name is blank
    """
    names = [c.name if isinstance(c, ColumnDescriptor) else c for c in columns or ()]
    if not names:
        raise ConfigurationError("Table has no columns to copy")
    for name in names:
        if not isinstance(name, str) or not name.strip():
            raise ConfigurationError(f"Invalid column name {name!r}")
    return names


class BatchCopier:
    """Copy tables row by row in bounded transactions."""

    def __init__(self, batch_size: int = DEFAULT_BATCH_SIZE, preserve_case: bool = False):
        """
        Args:
            batch_size: Rows committed per target transaction
            preserve_case: Double-quote target identifiers so their case is kept
        """
        self.batch_size = validate_batch_size(batch_size)
        self.preserve_case = preserve_case

    def build_select_query(self, table: QualifiedTableName, columns: Sequence[str]) -> str:
        """Positional SELECT over the source table."""
        quoted_columns = ', '.join(quote_mssql_identifier(col) for col in columns)
        return f"SELECT {quoted_columns} FROM {format_mssql_table(table)}"

    def build_insert_query(self, table: QualifiedTableName, columns: Sequence[str]) -> sql.Composed:
        """Positional INSERT into the target table with $n placeholders."""
        quoted_columns = sql.SQL(', ').join([pg_identifier(col, self.preserve_case) for col in columns])
        placeholders = sql.SQL(', ').join([sql.SQL(f"${i}") for i in range(1, len(columns) + 1)])
        return sql.SQL('INSERT INTO {} ({}) VALUES ({})').format(
            pg_table(table, self.preserve_case),
            quoted_columns,
            placeholders,
        )

    def _prepare(self, cursor, insert_query: sql.Composed) -> None:
        cursor.execute(sql.SQL('PREPARE {} AS {}').format(sql.SQL(INSERT_STATEMENT_NAME), insert_query))

    def _deallocate(self, cursor) -> None:
        cursor.execute(f"DEALLOCATE {INSERT_STATEMENT_NAME}")

    def _execute_statement(self, column_count: int) -> str:
        params = ', '.join(['%s'] * column_count)
        return f"EXECUTE {INSERT_STATEMENT_NAME} ({params})"

    def copy_table(
        self,
        source_conn,
        target_conn,
        table,
        columns: Sequence[Any],
    ) -> Dict[str, Any]:
        """
        Copy every row of a table.

        The target table must already exist with the same schema and table
        name as the source.

        Args:
            source_conn: Open SQL Server connection (pyodbc)
            target_conn: Open PostgreSQL connection (psycopg2, autocommit off)
            table: Qualified table name
            columns: Column descriptor in ordinal order

        Returns:
            Copy result dictionary with statistics

        Raises:
            ConfigurationError: Invalid table name or no columns, before any query
            TableCopyError: Copy aborted; rows_copied holds the committed rows
        """
        table = as_qualified_name(table)
        names = column_names(columns)
        column_count = len(names)

        select_query = self.build_select_query(table, names)
        insert_query = self.build_insert_query(table, names)
        execute_sql = self._execute_statement(column_count)

        logger.info(f"Copying {table} ({column_count} columns, batch size {self.batch_size:,})")
        logger.debug(f"Source query: {select_query}")
        logger.debug(f"Target statement: {insert_query}")

        start_time = time.time()
        rows_copied = 0
        in_flight = 0
        batches_committed = 0
        stage = 'query'
        source_cursor = None
        target_cursor = None

        try:
            source_cursor = source_conn.cursor()
            source_cursor.execute(select_query)

            description = source_cursor.description
            if description is not None and len(description) != column_count:
                raise ColumnMismatchError(
                    f"Source returned {len(description)} columns, expected {column_count}",
                    table=str(table),
                    rows_copied=rows_copied,
                    stage=stage,
                )

            stage = 'prepare'
            target_cursor = target_conn.cursor()
            self._prepare(target_cursor, insert_query)

            rows = iter(source_cursor)
            while True:
                stage = 'read'
                try:
                    row = next(rows)
                except StopIteration:
                    break

                if len(row) != column_count:
                    raise ColumnMismatchError(
                        f"Row has {len(row)} values, expected {column_count}",
                        table=str(table),
                        rows_copied=rows_copied,
                        stage=stage,
                    )

                stage = 'insert'
                target_cursor.execute(execute_sql, tuple(row))
                in_flight += 1

                if in_flight >= self.batch_size:
                    stage = 'commit'
                    target_conn.commit()
                    rows_copied += in_flight
                    batches_committed += 1
                    in_flight = 0
                    logger.info(f"  Migrated {rows_copied:,} rows...")

                    # New transaction, freshly prepared statement
                    stage = 'prepare'
                    self._deallocate(target_cursor)
                    self._prepare(target_cursor, insert_query)

            if in_flight > 0:
                stage = 'commit'
                target_conn.commit()
                rows_copied += in_flight
                batches_committed += 1
                in_flight = 0
            else:
                # Nothing in the last batch: no empty commit
                target_conn.rollback()

        except TableCopyError:
            self._rollback(target_conn, table)
            raise
        except Exception as e:
            self._rollback(target_conn, table)
            message = f"Error {_STAGE_MESSAGES.get(stage, stage)}: {e}"
            logger.error(f"{message} (table {table}, {rows_copied:,} rows committed)")
            raise TableCopyError(message, table=str(table), rows_copied=rows_copied, stage=stage) from e
        finally:
            self._close_cursors(source_cursor, target_cursor, target_conn)

        elapsed_time = time.time() - start_time
        avg_rows_per_second = rows_copied / elapsed_time if elapsed_time > 0 else 0

        return {
            'table': str(table),
            'rows_copied': rows_copied,
            'batches_committed': batches_committed,
            'batch_size': self.batch_size,
            'column_count': column_count,
            'elapsed_time_seconds': elapsed_time,
            'avg_rows_per_second': avg_rows_per_second,
            'timestamp': datetime.now().isoformat(),
        }

    def _rollback(self, target_conn, table: QualifiedTableName) -> None:
        try:
            target_conn.rollback()
        except Exception:
            logger.exception(f"Exception occurred during rollback of {table}")

    def _close_cursors(self, source_cursor, target_cursor, target_conn) -> None:
        if source_cursor is not None:
            try:
                source_cursor.close()
            except Exception as e:
                logger.debug(f"Error closing source cursor: {e}")

        if target_cursor is not None:
            # Prepared statements outlive transactions; drop ours before the
            # connection goes back to the pool.
            try:
                target_cursor.execute("DEALLOCATE ALL")
                target_conn.rollback()
                target_cursor.close()
            except Exception as e:
                logger.debug(f"Error releasing target cursor: {e}")


def copy_table_data(
    source_conn,
    target_conn,
    table,
    columns: Sequence[Any],
    batch_size: int = DEFAULT_BATCH_SIZE,
    preserve_case: bool = False,
) -> Dict[str, Any]:
    """
    Convenience function to copy a single table.

    Returns:
        Copy result dictionary (see BatchCopier.copy_table)
    """
    copier = BatchCopier(batch_size=batch_size, preserve_case=preserve_case)
    return copier.copy_table(source_conn, target_conn, table, columns)
