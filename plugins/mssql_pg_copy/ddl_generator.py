"""
PostgreSQL DDL Generation Module

Builds CREATE TABLE statements for the target from SQL Server catalog
metadata, mapping every column type through the type mapper. Target tables
keep the source schema and table names so the copy DAG can load them as is.
"""

from typing import Dict, Iterable, List, Mapping, Optional, Sequence
import logging
import os

from mssql_pg_copy.exceptions import ConfigurationError
from mssql_pg_copy.table_config import (
    ColumnDescriptor,
    QualifiedTableName,
    as_qualified_name,
    filter_system_schemas,
    filter_system_tables,
    format_pg_identifier,
    format_pg_table,
)
from mssql_pg_copy.type_mapping import map_type

logger = logging.getLogger(__name__)


def generate_column_definition(column: ColumnDescriptor, preserve_case: bool = False) -> str:
    """Column clause: name, mapped type and NULL / NOT NULL."""
    nullability = "NULL" if column.is_nullable else "NOT NULL"
    return f"{format_pg_identifier(column.name, preserve_case)} {map_type(column.data_type)} {nullability}"


def generate_create_table(
    table,
    columns: Sequence[ColumnDescriptor],
    primary_key: Optional[Sequence[str]] = None,
    preserve_case: bool = False,
) -> str:
    """
    Generate CREATE TABLE statement for PostgreSQL.

    Args:
        table: Qualified table name
        columns: Column descriptors in ordinal order
        primary_key: Primary key columns in key order (may be empty)
        preserve_case: Double-quote identifiers

    Returns:
        CREATE TABLE DDL statement

    Raises:
        ConfigurationError: If the table has no columns
    """
    table = as_qualified_name(table)
    if not columns:
        raise ConfigurationError(f"Cannot create table {table} without columns")

    definitions = [generate_column_definition(col, preserve_case) for col in columns]
    if primary_key:
        pk_columns = ', '.join(format_pg_identifier(col, preserve_case) for col in primary_key)
        definitions.append(f"PRIMARY KEY ({pk_columns})")

    body = ',\n    '.join(definitions)
    return f"CREATE TABLE {format_pg_table(table, preserve_case)} (\n    {body}\n)"


def generate_create_schema(schema: str, preserve_case: bool = False) -> str:
    return f"CREATE SCHEMA IF NOT EXISTS {format_pg_identifier(schema, preserve_case)}"


def generate_drop_table(table, preserve_case: bool = False) -> str:
    table = as_qualified_name(table)
    return f"DROP TABLE IF EXISTS {format_pg_table(table, preserve_case)} CASCADE"


def generate_schema_ddl(
    tables_columns: Mapping[QualifiedTableName, Sequence[ColumnDescriptor]],
    primary_keys: Optional[Mapping[QualifiedTableName, Sequence[str]]] = None,
    preserve_case: bool = False,
    create_schemas: bool = False,
    drop_existing: bool = False,
) -> List[str]:
    """
    Generate DDL for a set of tables.

    Args:
        tables_columns: Columns per table (see CatalogReader.get_schema_columns)
        primary_keys: Primary key columns per table; missing means no key
        preserve_case: Double-quote identifiers
        create_schemas: Emit CREATE SCHEMA IF NOT EXISTS for each schema first
        drop_existing: Emit DROP TABLE IF EXISTS before each CREATE TABLE

    Returns:
        Statements in qualified table name order
    """
    primary_keys = primary_keys or {}
    tables = sorted(tables_columns, key=lambda t: (t.schema, t.name))

    statements: List[str] = []
    if create_schemas:
        for schema in sorted({t.schema for t in tables}):
            statements.append(generate_create_schema(schema, preserve_case))

    for table in tables:
        if drop_existing:
            statements.append(generate_drop_table(table, preserve_case))
        statements.append(
            generate_create_table(table, tables_columns[table], primary_keys.get(table), preserve_case)
        )

    logger.info(f"Generated DDL for {len(tables)} tables ({len(statements)} statements)")
    return statements


def write_ddl_file(statements: Iterable[str], path: str) -> str:
    """
    Write statements to a SQL file, separated by blank lines.

    Returns:
        The path written
    """
    statements = list(statements)
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    with open(path, 'w', encoding='utf-8') as f:
        f.write('\n\n'.join(f"{stmt};" for stmt in statements))
        f.write('\n')

    logger.info(f"Wrote {len(statements)} DDL statements to {path}")
    return path


def execute_ddl(conn, statements: Iterable[str]) -> int:
    """
    Execute DDL statements in a single transaction.

    Args:
        conn: Open PostgreSQL connection (autocommit off)
        statements: Statements to run in order

    Returns:
        Number of statements executed
    """
    count = 0
    try:
        with conn.cursor() as cursor:
            for statement in statements:
                logger.debug(f"Executing DDL: {statement[:100]}...")
                cursor.execute(statement)
                count += 1
        conn.commit()
    except Exception as e:
        logger.error(f"Error executing DDL: {e}")
        conn.rollback()
        raise

    logger.info(f"Executed {count} DDL statements")
    return count


def build_schema_ddl(
    catalog,
    schemas: Sequence[str],
    include_system_schemas: bool = False,
    **options,
) -> List[str]:
    """
    Read columns and primary keys through a CatalogReader and generate DDL.

    Keyword options are passed to generate_schema_ddl.
    """
    schemas = filter_system_schemas(list(schemas), include_system_schemas)
    all_columns = catalog.get_schema_columns(schemas)

    tables = filter_system_tables(all_columns, include_system_schemas)
    tables_columns: Dict[QualifiedTableName, Sequence[ColumnDescriptor]] = {t: all_columns[t] for t in tables}
    primary_keys = {table: catalog.get_primary_key_columns(table) for table in tables_columns}
    return generate_schema_ddl(tables_columns, primary_keys, **options)
