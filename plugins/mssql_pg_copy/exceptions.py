"""
Migration Error Types

Every error raised by the copy pipeline derives from MigrationError so the
DAG can log one fatal line and stop. Advisory conditions (statistics queries,
target existence checks, truncate) are logged as warnings and never raised.
"""

from typing import Optional


class MigrationError(Exception):
    """
    Base class for all pipeline errors.

    run_summary is set on errors that abort a run after table copying began.
    """

    run_summary = None


class ConfigurationError(MigrationError, ValueError):
    """Invalid settings or table definition, detected before any query runs."""


class ConnectivityError(MigrationError):
    """A store could not be reached at startup."""


class CatalogError(MigrationError):
    """A source metadata query failed."""


class TableCopyError(MigrationError):
    """
    Copy of a single table aborted.

    Attributes:
        table: Qualified name of the table being copied
        rows_copied: Rows in batches that were committed before the failure
        stage: Step that failed (read, prepare, insert, commit, ...)
    """

    def __init__(
        self,
        message: str,
        table: Optional[str] = None,
        rows_copied: int = 0,
        stage: Optional[str] = None,
    ):
        super().__init__(message)
        self.table = table
        self.rows_copied = rows_copied
        self.stage = stage

    def __str__(self) -> str:
        base = super().__str__()
        if self.table:
            return f"{base} (table {self.table}, {self.rows_copied:,} rows committed)"
        return base


class ColumnMismatchError(TableCopyError):
    """Row width differs from the table's column descriptor."""
