"""
SQL Server to PostgreSQL Type Mapping Module

Maps SQL Server column type names to PostgreSQL type names for DDL
generation. Values are never converted by this module; the copy engine
passes them through untouched and the PostgreSQL driver does the
on-the-wire conversion.
"""

from types import MappingProxyType
from typing import List
import logging

logger = logging.getLogger(__name__)


FALLBACK_TYPE = "TEXT"

# Keys are lower-cased SQL Server type names
TYPE_MAPPING = MappingProxyType({
    # Integer types
    "int": "INTEGER",
    "bigint": "BIGINT",
    "smallint": "SMALLINT",
    "tinyint": "SMALLINT",

    # Flag
    "bit": "BOOLEAN",

    # Character types
    "char": "TEXT",
    "varchar": "TEXT",
    "nchar": "TEXT",
    "nvarchar": "TEXT",
    "text": "TEXT",
    "ntext": "TEXT",
    "sysname": "TEXT",

    # Date and time types
    "datetime": "TIMESTAMPTZ",
    "datetime2": "TIMESTAMPTZ",
    "smalldatetime": "TIMESTAMPTZ",
    "datetimeoffset": "TIMESTAMPTZ",
    "date": "DATE",
    "time": "TIME",

    # Approximate and exact numerics
    "float": "DOUBLE PRECISION",
    "real": "REAL",
    "decimal": "NUMERIC",
    "numeric": "NUMERIC",
    "money": "NUMERIC",
    "smallmoney": "NUMERIC",

    # Other
    "uniqueidentifier": "UUID",
    "binary": "BYTEA",
    "varbinary": "BYTEA",
    "image": "BYTEA",
    "rowversion": "BYTEA",
    "timestamp": "BYTEA",  # SQL Server timestamp is a rowversion, not a date
    "xml": "XML",
})


def _normalize(sql_server_type: str) -> str:
    return (sql_server_type or "").strip().lower()


def map_type(sql_server_type: str) -> str:
    """
    Map a SQL Server data type name to its PostgreSQL equivalent.

    Unknown types map to TEXT so schema generation never aborts on an
    unrecognised type.

    Args:
        sql_server_type: SQL Server type name, any case

    Returns:
        PostgreSQL type name
    """
    pg_type = TYPE_MAPPING.get(_normalize(sql_server_type))
    if pg_type is None:
        logger.warning(f"Unknown SQL Server type '{sql_server_type}', using {FALLBACK_TYPE} as fallback")
        return FALLBACK_TYPE
    return pg_type


def is_mapped_type(sql_server_type: str) -> bool:
    """Check if a SQL Server type has an explicit mapping."""
    return _normalize(sql_server_type) in TYPE_MAPPING


def get_supported_types() -> List[str]:
    """Get the SQL Server type names that have an explicit mapping."""
    return sorted(TYPE_MAPPING.keys())
