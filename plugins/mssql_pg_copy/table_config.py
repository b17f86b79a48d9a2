"""
Table Configuration Utility Module

This module handles qualified 'schema.table' names, normalises list-valued
DAG parameters, removes SQL Server system objects from the run, and formats
identifiers for both SQL Server and PostgreSQL statements.
"""

import json
import re
from typing import Any, Iterable, List, NamedTuple, Optional, Sequence
import logging

from psycopg2 import sql

from mssql_pg_copy.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


# Schemas that are never migrated unless include_system_schemas is set
SYSTEM_SCHEMAS = frozenset({
    "sys",
    "INFORMATION_SCHEMA",
    "db_owner",
    "db_accessadmin",
    "db_securityadmin",
    "db_ddladmin",
    "db_backupoperator",
    "db_datareader",
    "db_datawriter",
    "db_denydatareader",
    "db_denydatawriter",
})

DEFAULT_SCHEMA = "dbo"

_SAFE_IDENTIFIER = re.compile(r'^[a-zA-Z_][a-zA-Z0-9_]*$')


class QualifiedTableName(NamedTuple):
    """Schema and table name pair identifying a relation."""

    schema: str
    name: str

    def __str__(self) -> str:
        return f"{self.schema}.{self.name}"


class ColumnDescriptor(NamedTuple):
    """One source column, in ordinal position order."""

    name: str
    data_type: str
    is_nullable: bool


def parse_schema_table(entry: str) -> QualifiedTableName:
    """
    Parse single 'schema.table' entry.

    Handles:
    - Simple format: "dbo.Users" -> ("dbo", "Users")
    - Bracketed format: "[dbo].[My Table]" -> ("dbo", "My Table")

    Args:
        entry: Schema.table string in either format

    Returns:
        QualifiedTableName

    Raises:
        ConfigurationError: If format is invalid (no dot separator found)
    """
    if not isinstance(entry, str):
        raise ConfigurationError(f"Invalid table name {entry!r}: expected 'schema.table'")

    entry = entry.strip()

    # Handle bracketed format: [schema].[table]
    match = re.match(r'^\[([^\]]+)\]\.\[([^\]]+)\]$', entry)
    if match:
        return QualifiedTableName(match.group(1), match.group(2))

    parts = entry.split('.')
    if len(parts) != 2 or not parts[0].strip() or not parts[1].strip():
        raise ConfigurationError(
            f"Invalid table name format: '{entry}' (expected schema.table)"
        )

    return QualifiedTableName(parts[0].strip(), parts[1].strip())


def as_qualified_name(table: Any) -> QualifiedTableName:
    """Accept a QualifiedTableName, a (schema, name) pair or a 'schema.table' string."""
    if isinstance(table, QualifiedTableName):
        if not table.schema or not table.name:
            raise ConfigurationError(f"Invalid table name format: '{table}' (expected schema.table)")
        return table
    if isinstance(table, (tuple, list)) and len(table) == 2:
        return parse_schema_table(f"{table[0]}.{table[1]}")
    return parse_schema_table(table)


def expand_list_param(raw_value: Any) -> List[str]:
    """
    Expand and normalize a list-valued DAG parameter.

    Handles:
    - List of strings: ["dbo.Users", "dbo.Posts"]
    - JSON string: '["dbo.Users", "dbo.Posts"]'
    - Comma-separated string: "dbo.Users,dbo.Posts"
    - List with comma-separated items: ["dbo.Users,dbo.Posts"]

    Args:
        raw_value: Raw parameter value from DAG params

    Returns:
        Normalized list of non-empty, stripped strings
    """
    if raw_value is None:
        return []

    if isinstance(raw_value, str):
        raw_value = raw_value.strip()
        if not raw_value:
            return []

        try:
            parsed = json.loads(raw_value)
            raw_value = parsed if isinstance(parsed, list) else [str(parsed)]
        except json.JSONDecodeError:
            raw_value = [raw_value]

    if isinstance(raw_value, (list, tuple)):
        expanded = []
        for item in raw_value:
            if isinstance(item, str):
                expanded.extend(t.strip() for t in item.split(',') if t.strip())
        return expanded

    # Unsupported type - log warning to help debug configuration issues
    logger.warning(
        "expand_list_param received unsupported type %s; returning empty list.",
        type(raw_value).__name__,
    )
    return []


def filter_system_schemas(schemas: Sequence[str], include_system_schemas: bool = False) -> List[str]:
    """
    Drop SQL Server system schemas from the requested schema list.

    Falls back to 'dbo' when every requested schema was a system schema.
    """
    if include_system_schemas:
        return list(schemas)

    filtered = [s for s in schemas if s not in SYSTEM_SCHEMAS]
    if not filtered:
        logger.warning(
            "All specified schemas are system schemas; defaulting to 'dbo'. "
            "Set include_system_schemas to migrate system schemas."
        )
        filtered = [DEFAULT_SCHEMA]
    return filtered


def filter_system_tables(
    tables: Iterable[QualifiedTableName],
    include_system_schemas: bool = False,
) -> List[QualifiedTableName]:
    """Drop tables whose name starts with 'sys'."""
    tables = list(tables)
    if include_system_schemas:
        return tables

    result = []
    for table in tables:
        if table.name.lower().startswith('sys'):
            logger.info(f"Excluding system table: {table}")
            continue
        result.append(table)
    return result


def quote_mssql_identifier(identifier: str) -> str:
    """Wrap a SQL Server identifier in brackets, escaping embedded ']'."""
    return f"[{identifier.replace(']', ']]')}]"


def format_pg_identifier(identifier: str, preserve_case: bool = False) -> str:
    """
    Format a PostgreSQL identifier according to the quoting mode.

    With preserve_case the identifier is double-quoted so PostgreSQL keeps its
    case. Without it the identifier is emitted bare and folds to lower case,
    which only works for plain identifiers.

    Raises:
        ConfigurationError: If an unquoted identifier is not a plain identifier
    """
    if preserve_case:
        escaped = identifier.replace('"', '""')
        return f'"{escaped}"'

    if not _SAFE_IDENTIFIER.match(identifier or ''):
        raise ConfigurationError(
            f"Identifier '{identifier}' cannot be used unquoted; enable preserve_case"
        )
    return identifier


def pg_identifier(identifier: str, preserve_case: bool = False) -> sql.Composable:
    """
    Composable PostgreSQL identifier for psycopg2.sql statements.

    preserve_case uses sql.Identifier; otherwise the name must pass the plain
    identifier check and is emitted as-is.
    """
    if preserve_case:
        return sql.Identifier(identifier)
    return sql.SQL(format_pg_identifier(identifier))


def pg_table(table: QualifiedTableName, preserve_case: bool = False) -> sql.Composable:
    return sql.SQL('{}.{}').format(
        pg_identifier(table.schema, preserve_case),
        pg_identifier(table.name, preserve_case),
    )


def format_mssql_table(table: QualifiedTableName) -> str:
    return f"{quote_mssql_identifier(table.schema)}.{quote_mssql_identifier(table.name)}"


def format_pg_table(table: QualifiedTableName, preserve_case: bool = False) -> str:
    return (
        f"{format_pg_identifier(table.schema, preserve_case)}."
        f"{format_pg_identifier(table.name, preserve_case)}"
    )


def parse_table_list(entries: Optional[Iterable[str]]) -> List[QualifiedTableName]:
    """Parse and de-duplicate a list of 'schema.table' entries, keeping order."""
    result: List[QualifiedTableName] = []
    for entry in entries or []:
        table = parse_schema_table(entry)
        if table not in result:
            result.append(table)
    return result
