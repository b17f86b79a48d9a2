"""
Tests for Table Configuration Utility Module

These tests cover qualified name parsing, list parameter expansion, system
object exclusion and identifier quoting for both dialects.
"""

import pytest
from psycopg2 import sql

from mssql_pg_copy.exceptions import ConfigurationError
from mssql_pg_copy.table_config import (
    QualifiedTableName,
    as_qualified_name,
    expand_list_param,
    filter_system_schemas,
    filter_system_tables,
    format_mssql_table,
    format_pg_identifier,
    format_pg_table,
    parse_schema_table,
    parse_table_list,
    pg_identifier,
    pg_table,
    quote_mssql_identifier,
)


class TestParseSchemaTable:
    """Test 'schema.table' parsing."""

    def test_simple_format(self):
        assert parse_schema_table("dbo.Users") == QualifiedTableName("dbo", "Users")

    def test_bracketed_format(self):
        assert parse_schema_table("[dbo].[My Table]") == QualifiedTableName("dbo", "My Table")

    def test_whitespace_stripped(self):
        assert parse_schema_table("  sales . Orders ") == QualifiedTableName("sales", "Orders")

    @pytest.mark.parametrize("entry", ["Users", "a.b.c", ".Users", "dbo.", "", None])
    def test_invalid_entries(self, entry):
        with pytest.raises(ConfigurationError):
            parse_schema_table(entry)

    def test_configuration_error_is_value_error(self):
        with pytest.raises(ValueError):
            parse_schema_table("nodot")

    def test_str_is_dotted(self):
        assert str(QualifiedTableName("dbo", "Customer")) == "dbo.Customer"


class TestAsQualifiedName:

    def test_accepts_named_tuple(self):
        table = QualifiedTableName("dbo", "Users")
        assert as_qualified_name(table) is table

    def test_accepts_pair(self):
        assert as_qualified_name(("dbo", "Users")) == QualifiedTableName("dbo", "Users")

    def test_accepts_string(self):
        assert as_qualified_name("dbo.Users") == QualifiedTableName("dbo", "Users")

    def test_rejects_blank_parts(self):
        with pytest.raises(ConfigurationError):
            as_qualified_name(QualifiedTableName("", "Users"))


class TestExpandListParam:
    """Test list-valued DAG parameter normalisation."""

    def test_list_of_strings(self):
        assert expand_list_param(["dbo.Users", "dbo.Posts"]) == ["dbo.Users", "dbo.Posts"]

    def test_json_string(self):
        assert expand_list_param('["dbo.Users", "dbo.Posts"]') == ["dbo.Users", "dbo.Posts"]

    def test_comma_separated_string(self):
        assert expand_list_param("dbo.Users, dbo.Posts") == ["dbo.Users", "dbo.Posts"]

    def test_list_with_comma_items(self):
        assert expand_list_param(["dbo.Users,dbo.Posts", "sales.Orders"]) == [
            "dbo.Users", "dbo.Posts", "sales.Orders"
        ]

    def test_empty_values(self):
        assert expand_list_param(None) == []
        assert expand_list_param("") == []
        assert expand_list_param("   ") == []
        assert expand_list_param([]) == []

    def test_unsupported_type(self):
        assert expand_list_param(42) == []


class TestSystemObjects:
    """Test system schema and table exclusion."""

    def test_system_schemas_removed(self):
        assert filter_system_schemas(["dbo", "sys", "sales", "db_owner"]) == ["dbo", "sales"]

    def test_falls_back_to_dbo(self, caplog):
        assert filter_system_schemas(["sys", "INFORMATION_SCHEMA"]) == ["dbo"]
        assert "defaulting to 'dbo'" in caplog.text

    def test_system_schemas_kept_when_requested(self):
        assert filter_system_schemas(["sys"], include_system_schemas=True) == ["sys"]

    def test_sys_tables_removed(self):
        tables = [
            QualifiedTableName("dbo", "sysdiagrams"),
            QualifiedTableName("dbo", "Users"),
            QualifiedTableName("dbo", "SysLog"),
        ]
        assert filter_system_tables(tables) == [QualifiedTableName("dbo", "Users")]

    def test_sys_tables_kept_when_requested(self):
        tables = [QualifiedTableName("dbo", "sysdiagrams")]
        assert filter_system_tables(tables, include_system_schemas=True) == tables


class TestIdentifierFormatting:
    """Test identifier quoting for SQL Server and PostgreSQL."""

    def test_mssql_brackets(self):
        assert quote_mssql_identifier("Order Details") == "[Order Details]"

    def test_mssql_bracket_escaping(self):
        assert quote_mssql_identifier("odd]name") == "[odd]]name]"

    def test_mssql_table(self):
        assert format_mssql_table(QualifiedTableName("dbo", "Users")) == "[dbo].[Users]"

    def test_pg_preserve_case_quotes(self):
        assert format_pg_identifier("UserId", preserve_case=True) == '"UserId"'

    def test_pg_preserve_case_escapes_quotes(self):
        assert format_pg_identifier('a"b', preserve_case=True) == '"a""b"'

    def test_pg_unquoted_plain_identifier(self):
        assert format_pg_identifier("UserId") == "UserId"

    @pytest.mark.parametrize("identifier", ["Order Details", "1abc", "x;DROP TABLE y", ""])
    def test_pg_unquoted_rejects_unsafe(self, identifier):
        with pytest.raises(ConfigurationError):
            format_pg_identifier(identifier)

    def test_pg_table(self):
        table = QualifiedTableName("Sales", "Orders")
        assert format_pg_table(table) == "Sales.Orders"
        assert format_pg_table(table, preserve_case=True) == '"Sales"."Orders"'

    def test_composable_identifier_modes(self):
        assert pg_identifier("UserId", preserve_case=True) == sql.Identifier("UserId")
        assert pg_identifier("UserId") == sql.SQL("UserId")

    def test_composable_identifier_rejects_unsafe(self):
        with pytest.raises(ConfigurationError):
            pg_identifier("Order Details")

    def test_composable_table(self):
        table = QualifiedTableName("Sales", "Orders")
        assert pg_table(table).as_string(None) == "Sales.Orders"
        assert pg_table(table, preserve_case=True) == sql.Composed(
            [sql.Identifier("Sales"), sql.SQL("."), sql.Identifier("Orders")]
        )


class TestParseTableList:

    def test_deduplicates_keeping_order(self):
        result = parse_table_list(["dbo.B", "dbo.A", "dbo.B"])
        assert result == [QualifiedTableName("dbo", "B"), QualifiedTableName("dbo", "A")]

    def test_none(self):
        assert parse_table_list(None) == []
