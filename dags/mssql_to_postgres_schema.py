"""
SQL Server to PostgreSQL Schema DAG

This DAG generates target tables only:
1. Read columns and primary keys for every base table in the source schemas
2. Map column types to PostgreSQL
3. Write the CREATE TABLE statements to a file and/or run them on the target

Target tables keep the source schema and table names, which is what the
mssql_to_postgres_copy DAG expects.

Note: This DAG does NOT create foreign keys, secondary indexes or defaults.
"""

from airflow.sdk import dag, task
from airflow.models.param import Param
from pendulum import datetime
from typing import List
import logging

from mssql_pg_copy.catalog import CatalogReader
from mssql_pg_copy.connections import get_source_helper, get_target_pool, target_connection
from mssql_pg_copy.ddl_generator import build_schema_ddl, execute_ddl, write_ddl_file
from mssql_pg_copy.table_config import expand_list_param

logger = logging.getLogger(__name__)


@dag(
    dag_id="mssql_to_postgres_schema",
    start_date=datetime(2025, 1, 1),
    schedule=None,
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
            description="Source schemas to generate tables for"
        ),
        "include_system_schemas": Param(
            default=False,
            type="boolean",
            description="Also include SQL Server system schemas and sys* tables"
        ),
        "preserve_case": Param(
            default=False,
            type="boolean",
            description="Quote PostgreSQL identifiers to keep their case"
        ),
        "create_schemas": Param(
            default=True,
            type="boolean",
            description="Emit CREATE SCHEMA IF NOT EXISTS for each source schema"
        ),
        "drop_existing": Param(
            default=False,
            type="boolean",
            description="Emit DROP TABLE IF EXISTS ... CASCADE before each table"
        ),
        "execute": Param(
            default=False,
            type="boolean",
            description="Run the generated DDL against the target"
        ),
        "output_path": Param(
            default="",
            type="string",
            description="Write the generated DDL to this file (empty = do not write)"
        ),
    },
    tags=["schema", "mssql", "postgres", "ddl"],
)
def mssql_to_postgres_schema():
    """Schema DAG: generate PostgreSQL tables from the SQL Server catalog."""

    @task
    def generate_ddl(**context) -> List[str]:
        """Read the source catalog and build CREATE TABLE statements."""
        params = context["params"]
        schemas = expand_list_param(params.get("schemas")) or ["dbo"]

        catalog = CatalogReader(get_source_helper(params["source_conn_id"]))
        statements = build_schema_ddl(
            catalog,
            schemas,
            include_system_schemas=params.get("include_system_schemas", False),
            preserve_case=params.get("preserve_case", False),
            create_schemas=params.get("create_schemas", True),
            drop_existing=params.get("drop_existing", False),
        )

        for statement in statements:
            logger.info(f"{statement};")
        return statements

    @task
    def write_ddl(statements: List[str], **context) -> str:
        """Write statements to output_path when one is given."""
        output_path = (context["params"].get("output_path") or "").strip()
        if not output_path:
            logger.info("No output_path given, skipping DDL file")
            return ""
        return write_ddl_file(statements, output_path)

    @task
    def apply_ddl(statements: List[str], **context) -> int:
        """Run statements on the target when execute is set."""
        params = context["params"]
        if not params.get("execute", False):
            logger.info("execute is off, DDL not applied to target")
            return 0

        with target_connection(get_target_pool(params["target_conn_id"])) as conn:
            count = execute_ddl(conn, statements)
        logger.info(f"✓ Applied {count} DDL statements")
        return count

    statements = generate_ddl()
    write_ddl(statements)
    apply_ddl(statements)


mssql_to_postgres_schema()
