"""
Tests for Migration Runner

The catalog and copier are mocked to check orchestration: discovery,
filtering, truncation, run totals and abort-on-first-failure.
"""

import pytest
from unittest.mock import MagicMock, call, patch

from mssql_pg_copy.exceptions import CatalogError, ConfigurationError, ConnectivityError, TableCopyError
from mssql_pg_copy.migration import (
    discover_tables,
    migrate,
    run_migration,
    truncate_table,
    validate_settings,
)
from mssql_pg_copy.table_config import ColumnDescriptor, QualifiedTableName

T = QualifiedTableName

CUSTOMER = T("dbo", "Customer")
EMPTY = T("dbo", "Empty")
ORDERS = T("dbo", "Orders")
COLUMNS = (ColumnDescriptor("Id", "int", False), ColumnDescriptor("Name", "nvarchar", True))


def copy_result(table, rows):
    return {
        'table': str(table),
        'rows_copied': rows,
        'batches_committed': 1,
        'batch_size': 1000,
        'column_count': 2,
        'elapsed_time_seconds': 0.5,
        'avg_rows_per_second': rows * 2,
        'timestamp': '2025-01-01T00:00:00',
    }


@pytest.fixture
def pools():
    source_helper = MagicMock()
    source_pool = MagicMock()
    target_pool = MagicMock()
    target_pool.acquire.return_value.autocommit = False
    return source_helper, source_pool, target_pool


@pytest.fixture
def catalog():
    with patch('mssql_pg_copy.migration.CatalogReader') as mock_cls:
        reader = mock_cls.return_value
        reader.get_database_name.return_value = 'Shop'
        reader.get_source_tables.return_value = [CUSTOMER, EMPTY, ORDERS]
        reader.get_table_columns.return_value = COLUMNS
        yield reader


@pytest.fixture
def copier():
    with patch('mssql_pg_copy.migration.BatchCopier') as mock_cls:
        instance = mock_cls.return_value
        instance.copy_table.side_effect = lambda src, tgt, table, cols: copy_result(table, 100)
        instance.mock_cls = mock_cls
        yield instance


class TestValidateSettings:

    def test_valid(self):
        validate_settings(1000, 0, 0)

    @pytest.mark.parametrize("batch_size,max_rows,max_mb", [
        (0, 0, 0),
        (1000, -1, 0),
        (1000, 0, -5),
        (1000, "10", 0),
    ])
    def test_invalid(self, batch_size, max_rows, max_mb):
        with pytest.raises(ConfigurationError):
            validate_settings(batch_size, max_rows, max_mb)


class TestDiscoverTables:

    def test_system_objects_removed(self):
        reader = MagicMock()
        reader.get_source_tables.return_value = [CUSTOMER, T("dbo", "sysdiagrams")]

        tables = discover_tables(reader, ["dbo", "sys"])

        reader.get_source_tables.assert_called_once_with(["dbo"])
        assert tables == [CUSTOMER]

    def test_system_objects_kept_when_requested(self):
        reader = MagicMock()
        reader.get_source_tables.return_value = [T("sys", "objects")]

        assert discover_tables(reader, ["sys"], include_system_schemas=True) == [T("sys", "objects")]


class TestTruncateTable:

    def test_truncates_and_commits(self):
        conn = MagicMock()
        cursor = conn.cursor.return_value.__enter__.return_value

        assert truncate_table(conn, CUSTOMER) is True
        cursor.execute.assert_called_once()
        assert cursor.execute.call_args[0][0].as_string(None) == "TRUNCATE TABLE dbo.Customer"
        conn.commit.assert_called_once()

    def test_unsafe_name_raises_before_query(self):
        conn = MagicMock()

        with pytest.raises(ConfigurationError):
            truncate_table(conn, T("dbo", "Order Details"))

        conn.cursor.assert_not_called()

    def test_failure_is_warning(self, caplog):
        conn = MagicMock()
        conn.cursor.return_value.__enter__.return_value.execute.side_effect = Exception("permission denied")

        assert truncate_table(conn, CUSTOMER, preserve_case=True) is False
        conn.rollback.assert_called_once()
        assert "Could not truncate" in caplog.text


class TestRunMigration:
    """Test the sequential run."""

    def test_copies_all_tables_in_order(self, pools, catalog, copier):
        summary = run_migration(*pools)

        copied = [c[0][2] for c in copier.copy_table.call_args_list]
        assert copied == [CUSTOMER, EMPTY, ORDERS]
        assert summary['tables_attempted'] == 3
        assert summary['tables_completed'] == 3
        assert summary['rows_copied'] == 300
        assert summary['success'] is True
        assert len(summary['results']) == 3

    def test_defaults_to_dbo(self, pools, catalog, copier):
        run_migration(*pools, schemas=None)
        catalog.get_source_tables.assert_called_once_with(["dbo"])

    def test_schemas_param_expanded(self, pools, catalog, copier):
        run_migration(*pools, schemas="dbo,sales")
        catalog.get_source_tables.assert_called_once_with(["dbo", "sales"])

    def test_batch_size_and_quoting_passed_to_copier(self, pools, catalog, copier):
        run_migration(*pools, batch_size=250, preserve_case=True)
        copier.mock_cls.assert_called_once_with(batch_size=250, preserve_case=True)

    def test_empty_table_never_copied(self, pools, catalog, copier):
        source_helper = pools[0]
        source_helper.get_first.side_effect = [(2500,), (0,), (10,)]

        summary = run_migration(*pools, exclude_empty_tables=True)

        copied = [c[0][2] for c in copier.copy_table.call_args_list]
        assert EMPTY not in copied
        assert summary['tables_selected'] == ['dbo.Customer', 'dbo.Orders']

    def test_exclude_patterns(self, pools, catalog, copier):
        run_migration(*pools, exclude_tables=["Ord*"])
        copied = [c[0][2] for c in copier.copy_table.call_args_list]
        assert copied == [CUSTOMER, EMPTY]

    def test_abort_stops_later_tables(self, pools, catalog, copier):
        copier.copy_table.side_effect = [
            copy_result(CUSTOMER, 2500),
            TableCopyError("Error inserting row: boom", table="dbo.Empty", rows_copied=1000, stage="insert"),
        ]

        with pytest.raises(TableCopyError) as exc_info:
            run_migration(*pools)

        assert copier.copy_table.call_count == 2
        summary = exc_info.value.run_summary
        assert summary['tables_attempted'] == 2
        assert summary['tables_completed'] == 1
        assert summary['rows_copied'] == 3500
        assert summary['failed_table'] == 'dbo.Empty'
        assert summary['success'] is False

    def test_truncate_before_copy(self, pools, catalog, copier):
        with patch('mssql_pg_copy.migration.truncate_table') as mock_truncate:
            run_migration(*pools, truncate=True)

        assert mock_truncate.call_count == 3
        assert mock_truncate.call_args_list[0][0][1] == CUSTOMER

    def test_no_truncate_by_default(self, pools, catalog, copier):
        with patch('mssql_pg_copy.migration.truncate_table') as mock_truncate:
            run_migration(*pools)
        mock_truncate.assert_not_called()

    def test_invalid_batch_size_before_any_io(self, pools, catalog, copier):
        source_helper, source_pool, target_pool = pools

        with pytest.raises(ConfigurationError):
            run_migration(*pools, batch_size=0)

        source_pool.ping.assert_not_called()
        catalog.get_source_tables.assert_not_called()

    def test_malformed_include_entry_before_any_io(self, pools, catalog, copier):
        source_helper, source_pool, target_pool = pools

        with pytest.raises(ConfigurationError):
            run_migration(*pools, include_tables=["dbo.Customer", "Orders"])

        source_pool.ping.assert_not_called()
        catalog.get_source_tables.assert_not_called()

    def test_unsafe_target_name_before_first_copy(self, pools, catalog, copier):
        catalog.get_source_tables.return_value = [CUSTOMER, T("dbo", "Order Details")]

        with pytest.raises(ConfigurationError):
            run_migration(*pools)

        copier.copy_table.assert_not_called()

    def test_unsafe_target_name_allowed_when_quoting(self, pools, catalog, copier):
        catalog.get_source_tables.return_value = [CUSTOMER, T("dbo", "Order Details")]

        summary = run_migration(*pools, preserve_case=True)

        assert summary['tables_completed'] == 2

    def test_column_lookup_failure_carries_summary(self, pools, catalog, copier):
        catalog.get_table_columns.side_effect = [COLUMNS, CatalogError("Invalid object name 'dbo.Empty'")]

        with pytest.raises(CatalogError) as exc_info:
            run_migration(*pools)

        assert copier.copy_table.call_count == 1
        summary = exc_info.value.run_summary
        assert summary['tables_attempted'] == 2
        assert summary['tables_completed'] == 1
        assert summary['rows_copied'] == 100
        assert summary['failed_table'] == 'dbo.Empty'
        assert summary['success'] is False

    def test_unreachable_store(self, pools, catalog, copier):
        pools[2].ping.side_effect = Exception("could not connect to server")

        with pytest.raises(ConnectivityError):
            run_migration(*pools)

        copier.copy_table.assert_not_called()

    def test_no_tables_left(self, pools, catalog, copier):
        summary = run_migration(*pools, include_tables=["dbo.Missing"])

        copier.copy_table.assert_not_called()
        assert summary['tables_attempted'] == 0
        assert summary['success'] is True

    def test_connections_released_per_table(self, pools, catalog, copier):
        source_helper, source_pool, target_pool = pools

        run_migration(*pools)

        assert source_pool.connection.call_count == 3
        # One borrow for filtering plus one per table
        assert target_pool.release.call_count == 4


class TestRunMigrationEndToEnd:
    """Real BatchCopier with scripted connections."""

    def test_customer_2500_rows(self, pools, catalog):
        source_helper, source_pool, target_pool = pools
        catalog.get_source_tables.return_value = [CUSTOMER]

        source_conn = source_pool.connection.return_value.__enter__.return_value
        source_cursor = source_conn.cursor.return_value
        source_cursor.description = [("Id",), ("Name",)]
        source_cursor.__iter__.return_value = iter([(i, f"c{i}") for i in range(2500)])
        target_conn = target_pool.acquire.return_value

        summary = run_migration(*pools, batch_size=1000)

        assert summary['rows_copied'] == 2500
        assert summary['results'][0]['batches_committed'] == 3
        assert target_conn.commit.call_count == 3


class TestMigrate:

    @patch('mssql_pg_copy.migration.run_migration')
    @patch('mssql_pg_copy.migration.get_target_pool')
    @patch('mssql_pg_copy.migration.get_source_pool')
    @patch('mssql_pg_copy.migration.get_source_helper')
    def test_builds_pools_from_conn_ids(self, mock_helper, mock_source_pool, mock_target_pool, mock_run):
        mock_run.return_value = {'rows_copied': 0}

        migrate('mssql_source', 'postgres_target', batch_size=500)

        mock_helper.assert_called_once_with('mssql_source')
        mock_source_pool.assert_called_once_with('mssql_source', mock_helper.return_value)
        mock_target_pool.assert_called_once_with('postgres_target')
        mock_run.assert_called_once_with(
            mock_helper.return_value,
            mock_source_pool.return_value,
            mock_target_pool.return_value,
            batch_size=500,
        )
