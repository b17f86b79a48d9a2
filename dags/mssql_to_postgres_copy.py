"""
SQL Server to PostgreSQL Copy DAG

Copies table data from SQL Server into existing PostgreSQL tables:
1. Check that both databases are reachable
2. Discover base tables in the requested schemas and apply the filters
   (include list, exclude patterns, empty/large tables, populated targets)
3. Copy each table in turn: one streaming SELECT, one prepared INSERT,
   committed every batch_size rows
4. Report rows and timings per table

Target tables must already exist with the same schema and table names (run
the mssql_to_postgres_schema DAG first). A failed table aborts the run with
the number of rows already committed; tasks are not retried because a re-run
is expected to use truncate or skip_if_exists.
"""

from airflow.sdk import dag, task
from airflow.models.param import Param
from pendulum import datetime
from typing import Any, Dict
import logging

from mssql_pg_copy.connections import (
    check_connectivity,
    get_source_pool,
    get_target_pool,
)
from mssql_pg_copy.exceptions import MigrationError
from mssql_pg_copy.migration import migrate

logger = logging.getLogger(__name__)


@dag(
    dag_id="mssql_to_postgres_copy",
    start_date=datetime(2025, 1, 1),
    schedule=None,  # Run manually or trigger via API
    catchup=False,
    max_active_runs=1,
    is_paused_upon_creation=False,
    doc_md=__doc__,
    default_args={
        "owner": "data-team",
        "retries": 0,
    },
    params={
        "source_conn_id": Param(
            default="mssql_source",
            type="string",
            description="SQL Server connection ID"
        ),
        "target_conn_id": Param(
            default="postgres_target",
            type="string",
            description="PostgreSQL connection ID"
        ),
        "schemas": Param(
            default=["dbo"],
            type=["array", "string"],
            description="Source schemas to copy (list, JSON or comma-separated)"
        ),
        "include_tables": Param(
            default=[],
            type=["array", "string"],
            description="Only copy these tables, in 'schema.table' format"
        ),
        "exclude_tables": Param(
            default=[],
            type=["array", "string"],
            description="Table patterns to skip (supports * wildcards, e.g. 'log_*' or 'sales.tmp_*')"
        ),
        "exclude_empty_tables": Param(
            default=False,
            type="boolean",
            description="Skip tables with no rows"
        ),
        "max_row_count": Param(
            default=0,
            type="integer",
            minimum=0,
            description="Skip tables with more rows than this (0 = no limit)"
        ),
        "max_table_size_mb": Param(
            default=0,
            type="integer",
            minimum=0,
            description="Skip tables larger than this many MB (0 = no limit)"
        ),
        "skip_if_exists": Param(
            default=False,
            type="boolean",
            description="Skip tables that already have rows in PostgreSQL"
        ),
        "batch_size": Param(
            default=1000,
            type="integer",
            minimum=1,
            description="Rows committed per transaction"
        ),
        "truncate": Param(
            default=False,
            type="boolean",
            description="Truncate each target table before copying"
        ),
        "preserve_case": Param(
            default=False,
            type="boolean",
            description="Quote PostgreSQL identifiers to keep their case"
        ),
        "include_system_schemas": Param(
            default=False,
            type="boolean",
            description="Also copy SQL Server system schemas and sys* tables"
        ),
    },
    tags=["migration", "mssql", "postgres", "data-copy"],
)
def mssql_to_postgres_copy():
    """Copy DAG: stream SQL Server tables into PostgreSQL in batches."""

    @task
    def check_connections(**context) -> str:
        """Ping source and target before any work starts."""
        params = context["params"]
        check_connectivity(
            get_source_pool(params["source_conn_id"]),
            get_target_pool(params["target_conn_id"]),
        )
        return "connected"

    @task
    def copy_tables(connection_status: str, **context) -> Dict[str, Any]:
        """
        Copy every selected table, in order.

        Returns:
            Run summary (tables attempted/completed, rows, per-table results)
        """
        params = context["params"]

        try:
            summary = migrate(
                params["source_conn_id"],
                params["target_conn_id"],
                schemas=params.get("schemas"),
                include_tables=params.get("include_tables"),
                exclude_tables=params.get("exclude_tables"),
                exclude_empty_tables=params.get("exclude_empty_tables", False),
                max_row_count=params.get("max_row_count", 0),
                max_table_size_mb=params.get("max_table_size_mb", 0),
                skip_if_exists=params.get("skip_if_exists", False),
                batch_size=params.get("batch_size", 1000),
                truncate=params.get("truncate", False),
                preserve_case=params.get("preserve_case", False),
                include_system_schemas=params.get("include_system_schemas", False),
            )
        except MigrationError as e:
            if e.run_summary:
                context["ti"].xcom_push(key="failed_run_summary", value=e.run_summary)
            raise

        context["ti"].xcom_push(key="rows_copied", value=summary["rows_copied"])
        return summary

    @task
    def report_results(summary: Dict[str, Any]) -> str:
        """Log a per-table summary of the run."""
        logger.info("=" * 60)
        logger.info("COPY SUMMARY")
        logger.info("=" * 60)

        for result in summary["results"]:
            logger.info(
                f"✓ {result['table']}: {result['rows_copied']:,} rows, "
                f"{result['batches_committed']} batches, {result['elapsed_time_seconds']:.2f}s"
            )

        message = (
            f"Copied {summary['rows_copied']:,} rows from {summary['tables_completed']} tables "
            f"in {summary['elapsed_time_seconds']:.2f}s"
        )
        logger.info("=" * 60)
        logger.info(message)
        return message

    status = check_connections()
    summary = copy_tables(status)
    report_results(summary)


mssql_to_postgres_copy()
