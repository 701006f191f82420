"""Stage 2: rebuild the working staging tables from the raw copies, transformed."""

from typing import Any

from sqlalchemy import Connection, Engine, delete, func, select
from sqlalchemy.exc import SQLAlchemyError

from databridge.client.exceptions import TransformationError
from databridge.config import PipelineConfig
from databridge.migration.catalog import ColumnMapping, TableMapping
from databridge.migration.pipeline import StageId, StageResult, TableOutcome
from databridge.migration.stages.base import StageContext, Stopwatch, conclude_stage
from databridge.migration.stages.staging import StagingArea
from databridge.migration.transformations import apply_transformation
from databridge.utils.logging import get_logger, log_stage_progress

logger = get_logger(__name__)


def transform_value(column: ColumnMapping, value: Any) -> Any:
    """Apply a column's transformation, then its default for empty results."""
    if column.transformation_id:
        value = apply_transformation(
            column.transformation_id, value, column.transformation_config
        )
    if value is None and column.default_value is not None:
        value = column.default_value
    return value


def _needs_work(column: ColumnMapping) -> bool:
    return column.transformation_id is not None or column.default_value is not None


async def transform_and_cleanse(
    ctx: StageContext, project_id: str, execution_id: str, config: PipelineConfig
) -> StageResult:
    watch = Stopwatch()
    project = ctx.catalog.get_project(project_id)
    outcomes: list[TableOutcome] = []

    with ctx.engine(project.target) as engine:
        staging = StagingArea(config.staging, engine.dialect.name)
        for mapping in project.ordered_tables():
            columns = [c for c in mapping.columns if _needs_work(c)]
            if not columns:
                continue
            outcome = _transform_table(engine, staging, mapping, columns, config)
            outcomes.append(outcome)
            if not outcome.success and config.fail_fast:
                break

    return conclude_stage(outcomes, watch, config, tables_transformed=len(outcomes))


def _transform_table(
    engine: Engine,
    staging: StagingArea,
    mapping: TableMapping,
    columns: list[ColumnMapping],
    config: PipelineConfig,
) -> TableOutcome:
    try:
        with engine.begin() as conn:
            processed, failed = _transform_rows(conn, staging, mapping, columns, config)
    except TransformationError as e:
        # fail-fast: the working table keeps its previous rows
        logger.error("table_transform_failed", table=mapping.source_table, error=str(e))
        return TableOutcome(
            table=mapping.source_table, success=False, records_failed=1, error=str(e)
        )
    except (SQLAlchemyError, KeyError) as e:
        logger.error("table_transform_failed", table=mapping.source_table, error=str(e))
        return TableOutcome(table=mapping.source_table, success=False, error=str(e))

    logger.info(
        "table_transformed",
        table=mapping.source_table,
        columns=[c.source_column for c in columns],
        rows=processed,
        failed=failed,
    )
    return TableOutcome(
        table=mapping.source_table,
        success=True,
        records_processed=processed,
        records_failed=failed,
    )


def _transform_rows(
    conn: Connection,
    staging: StagingArea,
    mapping: TableMapping,
    columns: list[ColumnMapping],
    config: PipelineConfig,
) -> tuple[int, int]:
    """Rebuild the working table from the raw rows, transforming as it goes."""
    raw = staging.reflect_raw(conn, mapping.source_table)
    working = staging.reflect(conn, mapping.source_table)
    key = staging.key_column(raw)
    missing = [c.source_column for c in columns if c.source_column not in raw.c]
    if missing:
        raise KeyError(f"Staging table has no column(s) {', '.join(missing)}")
    total = conn.execute(select(func.count()).select_from(raw)).scalar_one()

    conn.execute(delete(working))
    result = conn.execute(select(raw).execution_options(yield_per=config.batch_size))

    processed = failed = 0
    for partition in result.partitions():
        rows = []
        for row in partition:
            values = dict(row._mapping)
            row_failed = False
            for column in columns:
                name = column.source_column
                try:
                    values[name] = transform_value(column, values[name])
                except TransformationError as e:
                    if config.fail_fast:
                        raise
                    # the extracted value is kept
                    logger.warning(
                        "value_transform_failed",
                        table=mapping.source_table,
                        column=name,
                        key=values[key],
                        error=str(e),
                    )
                    row_failed = True
            failed += int(row_failed)
            processed += int(not row_failed)
            rows.append(values)

        conn.execute(working.insert(), rows)
        log_stage_progress(
            logger, StageId.TRANSFORM.value, mapping.source_table, processed + failed, total
        )
    return processed, failed
