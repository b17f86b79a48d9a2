"""
Migration Runner

Sequential driver for a copy run:

1. Validate settings and ping both stores
2. Discover base tables in the requested schemas, minus system objects
3. Apply the table filter pipeline
4. For each table, in order: fetch columns, optionally truncate the target,
   copy with BatchCopier and add to the running total

The first table that fails aborts the run. The error carries the run summary
so far; tables after it are not attempted.
"""

from typing import Any, Dict, Iterable, List, Optional
from datetime import datetime
import logging
import time

from psycopg2 import sql

from mssql_pg_copy.batch_copy import DEFAULT_BATCH_SIZE, BatchCopier, validate_batch_size
from mssql_pg_copy.catalog import CatalogReader
from mssql_pg_copy.connection_pool import ConnectionPool
from mssql_pg_copy.connections import (
    PostgresConnectionPool,
    check_connectivity,
    get_source_helper,
    get_source_pool,
    get_target_pool,
    target_connection,
)
from mssql_pg_copy.exceptions import ConfigurationError, MigrationError
from mssql_pg_copy.odbc_helper import OdbcConnectionHelper
from mssql_pg_copy.table_config import (
    QualifiedTableName,
    expand_list_param,
    filter_system_schemas,
    filter_system_tables,
    parse_table_list,
    pg_table,
)
from mssql_pg_copy.table_filter import apply_table_filters

logger = logging.getLogger(__name__)


def validate_settings(batch_size: Any, max_row_count: Any = 0, max_table_size_mb: Any = 0) -> None:
    """
    Raises:
        ConfigurationError: On a non-positive batch size or a negative ceiling
    """
    validate_batch_size(batch_size)
    for name, value in (("max_row_count", max_row_count), ("max_table_size_mb", max_table_size_mb)):
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            raise ConfigurationError(f"{name} must be a number >= 0 (got {value!r})")


def truncate_table(target_conn, table: QualifiedTableName, preserve_case: bool = False) -> bool:
    """
    Empty a target table before copying.

    A failure is logged and rolled back; the copy goes ahead regardless.

    Returns:
        True if the table was truncated
    """
    query = sql.SQL('TRUNCATE TABLE {}').format(pg_table(table, preserve_case))
    try:
        with target_conn.cursor() as cursor:
            cursor.execute(query)
        target_conn.commit()
        logger.info(f"Truncated target table {table}")
        return True
    except Exception as e:
        logger.warning(f"Could not truncate {table}: {e}")
        target_conn.rollback()
        return False


def validate_target_names(tables: Iterable[QualifiedTableName], preserve_case: bool = False) -> None:
    """
    Raises:
        ConfigurationError: If a target schema or table name cannot be used in
            the selected quoting mode
    """
    for table in tables:
        pg_table(table, preserve_case)


def discover_tables(
    catalog: CatalogReader,
    schemas: Iterable[str],
    include_system_schemas: bool = False,
) -> List[QualifiedTableName]:
    """Base tables in the requested schemas, without SQL Server system objects."""
    schemas = filter_system_schemas(list(schemas), include_system_schemas)
    tables = catalog.get_source_tables(schemas)
    return filter_system_tables(tables, include_system_schemas)


def _new_summary(tables: List[QualifiedTableName]) -> Dict[str, Any]:
    return {
        'tables_selected': [str(t) for t in tables],
        'tables_attempted': 0,
        'tables_completed': 0,
        'rows_copied': 0,
        'elapsed_time_seconds': 0.0,
        'results': [],
        'failed_table': None,
        'success': False,
        'started_at': datetime.now().isoformat(),
    }


def run_migration(
    source_helper: OdbcConnectionHelper,
    source_pool: ConnectionPool,
    target_pool: PostgresConnectionPool,
    schemas: Optional[Iterable[str]] = None,
    include_tables: Optional[Iterable[str]] = None,
    exclude_tables: Optional[Iterable[str]] = None,
    exclude_empty_tables: bool = False,
    max_row_count: int = 0,
    max_table_size_mb: float = 0,
    skip_if_exists: bool = False,
    batch_size: int = DEFAULT_BATCH_SIZE,
    truncate: bool = False,
    preserve_case: bool = False,
    include_system_schemas: bool = False,
) -> Dict[str, Any]:
    """
    Copy every selected table from the source to the target.

    Args:
        source_helper: ODBC helper for catalog and statistics queries
        source_pool: Pool the copy's source connection is borrowed from
        target_pool: Pool the copy's target connection is borrowed from
        schemas: Source schemas to discover tables in (default ['dbo'])
        include_tables: Only copy these 'schema.table' entries
        exclude_tables: Glob patterns of tables to skip
        exclude_empty_tables: Skip tables with no rows
        max_row_count: Skip tables with more rows (0 = no limit)
        max_table_size_mb: Skip tables larger than this (0 = no limit)
        skip_if_exists: Skip tables whose target already has rows
        batch_size: Rows per committed transaction
        truncate: Truncate each target table before copying
        preserve_case: Double-quote target identifiers
        include_system_schemas: Do not remove system schemas and tables

    Returns:
        Run summary with tables attempted/completed, rows copied, elapsed
        time and per-table results

    Raises:
        ConfigurationError: Invalid settings or include entries, before any query
        ConnectivityError: A store cannot be reached
        CatalogError: Table or column discovery failed
        TableCopyError: A table copy aborted; run_summary is attached, as it is
            to any other error raised once copying has started
    """
    validate_settings(batch_size, max_row_count, max_table_size_mb)
    schemas = expand_list_param(schemas) or ['dbo']
    include_tables = expand_list_param(include_tables)
    parse_table_list(include_tables)

    start_time = time.time()
    check_connectivity(source_pool, target_pool)

    catalog = CatalogReader(source_helper)
    database = catalog.get_database_name()
    if database:
        logger.info(f"Source database: {database}")

    tables = discover_tables(catalog, schemas, include_system_schemas)
    with target_connection(target_pool) as target_conn:
        tables = apply_table_filters(
            tables,
            mssql_hook=source_helper,
            target_conn=target_conn,
            include_tables=include_tables,
            exclude_tables=expand_list_param(exclude_tables),
            exclude_empty_tables=exclude_empty_tables,
            max_row_count=max_row_count,
            max_table_size_mb=max_table_size_mb,
            skip_if_exists=skip_if_exists,
            preserve_case=preserve_case,
        )

    validate_target_names(tables, preserve_case)

    summary = _new_summary(tables)
    if not tables:
        logger.warning("No tables left to copy after filtering")

    copier = BatchCopier(batch_size=batch_size, preserve_case=preserve_case)

    for index, table in enumerate(tables, start=1):
        logger.info(f"[{index}/{len(tables)}] Migrating table: {table}")
        summary['tables_attempted'] += 1

        try:
            columns = catalog.get_table_columns(table)
            with source_pool.connection() as source_conn, target_connection(target_pool) as target_conn:
                if truncate:
                    truncate_table(target_conn, table, preserve_case)
                result = copier.copy_table(source_conn, target_conn, table, columns)
        except MigrationError as e:
            summary['rows_copied'] += getattr(e, 'rows_copied', 0)
            summary['failed_table'] = str(table)
            summary['elapsed_time_seconds'] = time.time() - start_time
            e.run_summary = summary
            logger.error(f"✗ Error migrating table {table}: {e}")
            logger.error(
                f"Run aborted after {summary['tables_completed']} of {len(tables)} tables, "
                f"{summary['rows_copied']:,} rows committed"
            )
            raise

        summary['tables_completed'] += 1
        summary['rows_copied'] += result['rows_copied']
        summary['results'].append(result)
        logger.info(
            f"✓ Completed {table}: {result['rows_copied']:,} rows in "
            f"{result['elapsed_time_seconds']:.2f}s ({result['avg_rows_per_second']:,.0f} rows/sec)"
        )

    summary['elapsed_time_seconds'] = time.time() - start_time
    summary['success'] = True

    logger.info(
        f"Migration complete: {summary['tables_completed']} tables, "
        f"{summary['rows_copied']:,} rows in {summary['elapsed_time_seconds']:.2f}s"
    )
    return summary


def migrate(source_conn_id: str, target_conn_id: str, **options) -> Dict[str, Any]:
    """
    Run a migration between two Airflow connections.

    Pools are created (or reused) per connection ID; see run_migration for
    the accepted options.
    """
    source_helper = get_source_helper(source_conn_id)
    return run_migration(
        source_helper,
        get_source_pool(source_conn_id, source_helper),
        get_target_pool(target_conn_id),
        **options,
    )
