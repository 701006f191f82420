"""
Stage 5: validate loaded data.

Checks, per loaded table:

* ``row_count`` - staged rows vs rows in the target table
* ``null_constraint`` - nulls in target columns of non-nullable mappings

and per execution:

* ``attachment`` - failed attachment transfers (warning only)
"""

from sqlalchemy import Connection, MetaData, Table, func, inspect, select
from sqlalchemy.exc import SQLAlchemyError

from databridge.config import LoadStrategy, PipelineConfig
from databridge.migration.catalog import TableMapping
from databridge.migration.pipeline import StageResult
from databridge.migration.stages.base import StageContext, Stopwatch
from databridge.migration.stages.staging import StagingArea
from databridge.migration.state import ValidationCheck
from databridge.utils.logging import get_logger

logger = get_logger(__name__)

PASSED = "passed"
FAILED = "failed"
WARNING = "warning"


def _count(conn: Connection, table: Table, *criteria) -> int:
    return conn.execute(select(func.count()).select_from(table).where(*criteria)).scalar_one()


def check_row_count(
    conn: Connection, staging: StagingArea, mapping: TableMapping, strategy: LoadStrategy
) -> ValidationCheck:
    """Compare staged and loaded row counts.

    With truncate-load the counts must match; merge and append only require
    every staged row to be present.
    """
    staged = _count(conn, staging.reflect(conn, mapping.source_table))
    loaded = _count(conn, Table(mapping.target_table, MetaData(), autoload_with=conn))
    ok = loaded == staged if strategy == LoadStrategy.TRUNCATE_LOAD else loaded >= staged
    return ValidationCheck(
        table_name=mapping.target_table,
        validation_type="row_count",
        status=PASSED if ok else FAILED,
        expected_value=str(staged),
        actual_value=str(loaded),
        message=None if ok else f"Expected {staged} rows, found {loaded}",
    )


def check_null_constraints(conn: Connection, mapping: TableMapping) -> list[ValidationCheck]:
    target = Table(mapping.target_table, MetaData(), autoload_with=conn)
    checks = []
    for column in mapping.columns:
        if column.is_nullable:
            continue
        nulls = _count(conn, target, target.c[column.target_column].is_(None))
        checks.append(
            ValidationCheck(
                table_name=mapping.target_table,
                validation_type="null_constraint",
                status=PASSED if nulls == 0 else FAILED,
                expected_value="0",
                actual_value=str(nulls),
                message=(
                    None
                    if nulls == 0
                    else f"{nulls} null values in non-nullable column {column.target_column}"
                ),
            )
        )
    return checks


def _table_checks(
    conn: Connection, staging: StagingArea, mapping: TableMapping, config: PipelineConfig
) -> list[ValidationCheck]:
    if not inspect(conn).has_table(mapping.target_table):
        return [
            ValidationCheck(
                table_name=mapping.target_table,
                validation_type="row_count",
                status=FAILED,
                message=f"Target table {mapping.target_table} does not exist",
            )
        ]
    if not staging.exists(conn, mapping.source_table):
        return [
            ValidationCheck(
                table_name=mapping.target_table,
                validation_type="row_count",
                status=FAILED,
                message=f"Staging table {staging.qualified_name(mapping.source_table)} does not exist",
            )
        ]
    return [
        check_row_count(conn, staging, mapping, config.load_strategy),
        *check_null_constraints(conn, mapping),
    ]


async def validate_data(
    ctx: StageContext, project_id: str, execution_id: str, config: PipelineConfig
) -> StageResult:
    watch = Stopwatch()
    if not config.validate_data:
        logger.info("validation_skipped", execution_id=execution_id)
        return StageResult(success=True, duration_ms=watch.elapsed_ms, metadata={"skipped": True})

    project = ctx.catalog.get_project(project_id)
    checks: list[ValidationCheck] = []

    with ctx.engine(project.target) as engine:
        staging = StagingArea(config.staging, engine.dialect.name)
        with engine.connect() as conn:
            for mapping in project.ordered_tables():
                if not mapping.columns:
                    continue
                try:
                    checks.extend(_table_checks(conn, staging, mapping, config))
                except (SQLAlchemyError, KeyError) as e:
                    logger.error("validation_check_failed", table=mapping.target_table, error=str(e))
                    checks.append(
                        ValidationCheck(
                            table_name=mapping.target_table,
                            validation_type="row_count",
                            status=FAILED,
                            message=str(e),
                        )
                    )

    attachment_stats = ctx.state.attachment_stats(execution_id)
    if attachment_stats["failed"]:
        checks.append(
            ValidationCheck(
                table_name="*",
                validation_type="attachment",
                status=WARNING,
                expected_value="0",
                actual_value=str(attachment_stats["failed"]),
                message=f"{attachment_stats['failed']} attachments failed to migrate",
            )
        )

    ctx.state.replace_validations(execution_id, project_id, checks)

    failed = [check for check in checks if check.status == FAILED]
    warnings = sum(1 for check in checks if check.status == WARNING)
    logger.info(
        "validation_completed",
        execution_id=execution_id,
        checks=len(checks),
        failed=len(failed),
        warnings=warnings,
    )

    metadata = {
        "checks_passed": len(checks) - len(failed) - warnings,
        "checks_failed": len(failed),
        "checks_warning": warnings,
    }
    error = None
    if failed and config.fail_fast:
        error = f"{len(failed)} validation checks failed, first: {failed[0].message}"
    return StageResult(
        success=error is None,
        records_processed=len(checks),
        records_failed=len(failed),
        duration_ms=watch.elapsed_ms,
        error=error,
        metadata=metadata,
    )
