"""
Stage 1: extract source tables into the staging area.

Relational sources are reflected and copied in ``batch_size`` batches with a
streamed SELECT. Document-store sources are flattened: the documents of a
table are those whose id starts with ``<source table>_``, the id suffix
becomes the leading ``source_id`` column and top-level fields become text
columns.
"""

import json
from typing import Any

from sqlalchemy import Engine, MetaData, Table, Text, select
from sqlalchemy.exc import SQLAlchemyError

from databridge.client.exceptions import DataBridgeError
from databridge.config import PipelineConfig
from databridge.migration.catalog import ProjectDefinition, TableMapping
from databridge.migration.pipeline import StageId, StageResult, TableOutcome
from databridge.migration.stages.base import StageContext, Stopwatch, conclude_stage
from databridge.migration.stages.staging import StagingArea, generic_type
from databridge.utils.logging import get_logger, log_stage_progress

logger = get_logger(__name__)

DOCUMENT_KEY_COLUMN = "source_id"


def flatten_documents(
    documents: list[dict[str, Any]], prefix: str
) -> tuple[list[str], list[dict[str, Any]]]:
    """
    Turn document bodies into staging rows.

    Fields starting with ``_`` (``_id``, ``_rev``, ``_attachments``) are
    dropped. Nested values are stored as JSON text, scalars as text.

    Args:
        documents: Document bodies including ``_id``
        prefix: Id prefix shared by the documents (``<type>_``)

    Returns:
        Column names (``source_id`` first) and one row per document
    """
    columns = [DOCUMENT_KEY_COLUMN]
    rows = []
    for doc in documents:
        row: dict[str, Any] = {DOCUMENT_KEY_COLUMN: str(doc["_id"])[len(prefix) :]}
        for name, value in doc.items():
            if name.startswith("_") or name == DOCUMENT_KEY_COLUMN:
                continue
            if name not in columns:
                columns.append(name)
            if value is None:
                row[name] = None
            elif isinstance(value, dict | list):
                row[name] = json.dumps(value, sort_keys=True)
            else:
                row[name] = str(value)
        rows.append(row)
    # executemany needs every key in every row
    return columns, [{name: row.get(name) for name in columns} for row in rows]


def copy_table(
    source_engine: Engine,
    target_engine: Engine,
    staging: StagingArea,
    source_table: str,
    batch_size: int,
) -> int:
    """Copy one relational source table into fresh raw and working staging tables.

    Returns:
        Number of rows copied
    """
    copied = 0
    with source_engine.connect() as src, target_engine.begin() as dst:
        source = Table(source_table, MetaData(), autoload_with=src)
        staged = staging.recreate(
            dst, source_table, [(c.name, generic_type(c.type)) for c in source.columns]
        )
        result = src.execute(select(source).execution_options(yield_per=batch_size))
        for partition in result.partitions():
            dst.execute(staged.insert(), [dict(row._mapping) for row in partition])
            copied += len(partition)
            log_stage_progress(logger, StageId.EXTRACT.value, source_table, copied)
        staging.reset_working(dst, source_table)
    return copied


def stage_documents(
    target_engine: Engine,
    staging: StagingArea,
    source_table: str,
    documents: list[dict[str, Any]],
    batch_size: int,
) -> int:
    """Write the flattened documents of one document type into staging."""
    columns, rows = flatten_documents(documents, f"{source_table.lower()}_")
    with target_engine.begin() as dst:
        staged = staging.recreate(dst, source_table, [(name, Text()) for name in columns])
        for start in range(0, len(rows), batch_size):
            batch = rows[start : start + batch_size]
            dst.execute(staged.insert(), batch)
            log_stage_progress(
                logger, StageId.EXTRACT.value, source_table, start + len(batch), len(rows)
            )
        staging.reset_working(dst, source_table)
    return len(rows)


async def extract_to_staging(
    ctx: StageContext, project_id: str, execution_id: str, config: PipelineConfig
) -> StageResult:
    watch = Stopwatch()
    project = ctx.catalog.get_project(project_id)
    tables = project.ordered_tables()

    if not tables:
        logger.warning("no_table_mappings", project_id=project_id, execution_id=execution_id)
        return conclude_stage([], watch, config, tables_processed=0)

    with ctx.engine(project.target) as target_engine:
        staging = StagingArea(config.staging, target_engine.dialect.name)
        with target_engine.begin() as conn:
            staging.ensure_schema(conn)

        if project.source.is_document_store:
            outcomes = await _extract_documents(ctx, project, tables, target_engine, staging, config)
        else:
            with ctx.engine(project.source) as source_engine:
                outcomes = _extract_relational(tables, source_engine, target_engine, staging, config)

    return conclude_stage(outcomes, watch, config, tables_processed=len(outcomes))


def _extract_relational(
    tables: list[TableMapping],
    source_engine: Engine,
    target_engine: Engine,
    staging: StagingArea,
    config: PipelineConfig,
) -> list[TableOutcome]:
    outcomes = []
    for mapping in tables:
        try:
            copied = copy_table(
                source_engine, target_engine, staging, mapping.source_table, config.batch_size
            )
        except SQLAlchemyError as e:
            outcome = _failed(mapping, e)
        else:
            outcome = _extracted(mapping, copied, staging)
        outcomes.append(outcome)
        if not outcome.success and config.fail_fast:
            break
    return outcomes


async def _extract_documents(
    ctx: StageContext,
    project: ProjectDefinition,
    tables: list[TableMapping],
    target_engine: Engine,
    staging: StagingArea,
    config: PipelineConfig,
) -> list[TableOutcome]:
    outcomes = []
    async with ctx.document_store_factory(project.source) as store:
        for mapping in tables:
            try:
                documents = await store.list_documents(f"{mapping.source_table.lower()}_")
                copied = stage_documents(
                    target_engine, staging, mapping.source_table, documents, config.batch_size
                )
            except (DataBridgeError, SQLAlchemyError) as e:
                outcome = _failed(mapping, e)
            else:
                outcome = _extracted(mapping, copied, staging)
            outcomes.append(outcome)
            if not outcome.success and config.fail_fast:
                break
    return outcomes


def _extracted(mapping: TableMapping, copied: int, staging: StagingArea) -> TableOutcome:
    logger.info(
        "table_extracted",
        table=mapping.source_table,
        staging_table=staging.qualified_name(mapping.source_table),
        rows=copied,
    )
    return TableOutcome(table=mapping.source_table, success=True, records_processed=copied)


def _failed(mapping: TableMapping, error: Exception) -> TableOutcome:
    logger.error("table_extract_failed", table=mapping.source_table, error=str(error))
    # A table that cannot be read counts as one failed unit
    return TableOutcome(
        table=mapping.source_table, success=False, records_failed=1, error=str(error)
    )
