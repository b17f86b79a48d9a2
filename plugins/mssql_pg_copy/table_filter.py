"""
Table Filter Pipeline

Narrows the discovered table list before copying. Each filter takes the
candidate list and returns the survivors in the same order. Filters that
need statistics (row counts, sizes, target contents) receive them
pre-fetched, so the filters themselves never touch a database.

Order: include list -> exclude patterns -> empty tables -> row ceiling ->
size ceiling -> target already populated.

A statistic that could not be fetched is None and always keeps the table.
"""

from typing import Dict, Iterable, List, Optional, Sequence
import logging
import re

from psycopg2 import sql

from mssql_pg_copy.odbc_helper import OdbcConnectionHelper
from mssql_pg_copy.table_config import (
    QualifiedTableName,
    format_mssql_table,
    parse_table_list,
    pg_table,
)

logger = logging.getLogger(__name__)


ROW_COUNT_QUERY = "SELECT COUNT(1) FROM {table}"

# used_page_count is in 8 KB pages
TABLE_SIZE_QUERY = """
SELECT SUM(used_page_count) * 8 / 1024 AS size_mb
FROM sys.dm_db_partition_stats
WHERE object_id = OBJECT_ID(?)
"""

TARGET_HAS_ROWS_QUERY = sql.SQL('SELECT 1 FROM {} LIMIT 1')


def matches_pattern(name: str, pattern: str) -> bool:
    """
    Case-insensitive glob match where '*' means any sequence of characters.

    Every other character, including '?' and brackets, matches itself.

    >>> matches_pattern("log_events", "log_*")
    True
    >>> matches_pattern("mylog_events", "log_*")
    False
    """
    regex = re.escape(pattern.strip()).replace(r'\*', '.*')
    return re.fullmatch(regex, name, re.IGNORECASE | re.DOTALL) is not None


def table_matches_pattern(table: QualifiedTableName, pattern: str) -> bool:
    """
    Match a table against an exclude pattern.

    Patterns containing a '.' are compared with the qualified name
    ('sales.tmp_*'); patterns without one are compared with the bare
    table name ('log_*').
    """
    if '.' in pattern:
        return matches_pattern(str(table), pattern)
    return matches_pattern(table.name, pattern)


def filter_included(
    tables: Sequence[QualifiedTableName],
    include_tables: Optional[Iterable[str]],
) -> List[QualifiedTableName]:
    """Keep only listed tables (exact, case-insensitive) when a list is given."""
    include = parse_table_list(include_tables)
    if not include:
        return list(tables)

    wanted = {str(t).lower() for t in include}
    result = [t for t in tables if str(t).lower() in wanted]

    found = {str(t).lower() for t in result}
    for entry in include:
        if str(entry).lower() not in found:
            logger.warning(f"Included table {entry} was not found in the source schemas")
    return result


def filter_excluded(
    tables: Sequence[QualifiedTableName],
    exclude_patterns: Optional[Iterable[str]],
) -> List[QualifiedTableName]:
    """Drop tables matching any exclude pattern."""
    patterns = [p.strip() for p in (exclude_patterns or []) if p and p.strip()]
    if not patterns:
        return list(tables)

    result = []
    for table in tables:
        matched = next((p for p in patterns if table_matches_pattern(table, p)), None)
        if matched:
            logger.info(f"Excluding table {table} (matches pattern '{matched}')")
            continue
        result.append(table)
    return result


def filter_empty(
    tables: Sequence[QualifiedTableName],
    row_counts: Dict[QualifiedTableName, Optional[int]],
) -> List[QualifiedTableName]:
    """Drop tables whose row count is known to be zero."""
    result = []
    for table in tables:
        if row_counts.get(table) == 0:
            logger.info(f"Skipping empty table: {table}")
            continue
        result.append(table)
    return result


def filter_large(
    tables: Sequence[QualifiedTableName],
    row_counts: Dict[QualifiedTableName, Optional[int]],
    max_rows: int,
) -> List[QualifiedTableName]:
    """Drop tables with more rows than max_rows (0 disables the filter)."""
    if not max_rows or max_rows <= 0:
        return list(tables)

    result = []
    for table in tables:
        count = row_counts.get(table)
        if count is not None and count > max_rows:
            logger.info(f"Skipping large table: {table} ({count:,} rows > threshold of {max_rows:,})")
            continue
        result.append(table)
    return result


def filter_oversized(
    tables: Sequence[QualifiedTableName],
    sizes_mb: Dict[QualifiedTableName, Optional[float]],
    max_size_mb: float,
) -> List[QualifiedTableName]:
    """Drop tables estimated larger than max_size_mb (0 disables the filter)."""
    if not max_size_mb or max_size_mb <= 0:
        return list(tables)

    result = []
    for table in tables:
        size = sizes_mb.get(table)
        if size is not None and size > max_size_mb:
            logger.info(f"Skipping large table: {table} ({size} MB > threshold of {max_size_mb} MB)")
            continue
        result.append(table)
    return result


def filter_populated(
    tables: Sequence[QualifiedTableName],
    target_has_rows: Dict[QualifiedTableName, Optional[bool]],
) -> List[QualifiedTableName]:
    """Drop tables whose target already holds at least one row."""
    result = []
    for table in tables:
        if target_has_rows.get(table) is True:
            logger.info(f"Skipping table with existing data: {table}")
            continue
        result.append(table)
    return result


def get_row_counts(
    mssql_hook: OdbcConnectionHelper,
    tables: Iterable[QualifiedTableName],
) -> Dict[QualifiedTableName, Optional[int]]:
    """Live row count per source table; None where the count failed."""
    counts: Dict[QualifiedTableName, Optional[int]] = {}
    for table in tables:
        query = ROW_COUNT_QUERY.format(table=format_mssql_table(table))
        try:
            row = mssql_hook.get_first(query)
            counts[table] = int(row[0]) if row and row[0] is not None else 0
        except Exception as e:
            logger.warning(f"Could not get row count for table {table}: {e}")
            counts[table] = None
    return counts


def get_table_sizes_mb(
    mssql_hook: OdbcConnectionHelper,
    tables: Iterable[QualifiedTableName],
) -> Dict[QualifiedTableName, Optional[float]]:
    """Estimated on-disk size in MB per source table; None where unknown."""
    sizes: Dict[QualifiedTableName, Optional[float]] = {}
    for table in tables:
        try:
            row = mssql_hook.get_first(TABLE_SIZE_QUERY, parameters=[format_mssql_table(table)])
        except Exception as e:
            logger.warning(f"Could not get size for table {table}: {e}")
            sizes[table] = None
            continue
        sizes[table] = float(row[0]) if row and row[0] is not None else None
    return sizes


def get_target_row_presence(
    target_conn,
    tables: Iterable[QualifiedTableName],
    preserve_case: bool = False,
) -> Dict[QualifiedTableName, Optional[bool]]:
    """
    Whether each target table already holds rows.

    A failing query (usually because the table does not exist yet) yields
    None and the aborted transaction is rolled back so the next check can run.
    """
    presence: Dict[QualifiedTableName, Optional[bool]] = {}
    for table in tables:
        query = TARGET_HAS_ROWS_QUERY.format(pg_table(table, preserve_case))
        try:
            with target_conn.cursor() as cursor:
                cursor.execute(query)
                presence[table] = cursor.fetchone() is not None
        except Exception as e:
            logger.warning(f"Could not check target table {table}, assuming it does not exist yet: {e}")
            presence[table] = None
        finally:
            target_conn.rollback()
    return presence


def apply_table_filters(
    tables: Sequence[QualifiedTableName],
    mssql_hook: Optional[OdbcConnectionHelper] = None,
    target_conn=None,
    include_tables: Optional[Iterable[str]] = None,
    exclude_tables: Optional[Iterable[str]] = None,
    exclude_empty_tables: bool = False,
    max_row_count: int = 0,
    max_table_size_mb: float = 0,
    skip_if_exists: bool = False,
    preserve_case: bool = False,
) -> List[QualifiedTableName]:
    """
    Run the full filter pipeline.

    Statistics are fetched only for tables still in play and only when the
    filter that needs them is enabled.

    Args:
        tables: Discovered tables, in copy order
        mssql_hook: Source helper (needed for row count and size filters)
        target_conn: Target connection (needed for skip_if_exists)
        include_tables: 'schema.table' entries to keep; empty keeps all
        exclude_tables: Glob patterns to drop
        exclude_empty_tables: Drop tables with no rows
        max_row_count: Drop tables with more rows (0 = no limit)
        max_table_size_mb: Drop tables larger than this many MB (0 = no limit)
        skip_if_exists: Drop tables whose target already has rows
        preserve_case: Quoting mode for target queries

    Returns:
        Surviving tables in their original order
    """
    candidates = filter_included(tables, include_tables)
    candidates = filter_excluded(candidates, exclude_tables)

    if exclude_empty_tables or (max_row_count and max_row_count > 0):
        row_counts = get_row_counts(mssql_hook, candidates)
        if exclude_empty_tables:
            candidates = filter_empty(candidates, row_counts)
        candidates = filter_large(candidates, row_counts, max_row_count)

    if max_table_size_mb and max_table_size_mb > 0:
        sizes = get_table_sizes_mb(mssql_hook, candidates)
        candidates = filter_oversized(candidates, sizes, max_table_size_mb)

    if skip_if_exists:
        presence = get_target_row_presence(target_conn, candidates, preserve_case)
        candidates = filter_populated(candidates, presence)

    logger.info(f"{len(candidates)} of {len(tables)} tables selected after filtering")
    return candidates
