"""Stage 6: assemble and persist the migration report of an execution."""

from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from databridge.config import PipelineConfig
from databridge.migration.catalog import ProjectDefinition
from databridge.migration.identity import RecordIdentityMapper
from databridge.migration.models import DataValidation, ExecutionStage
from databridge.migration.pipeline import StageId, StageResult
from databridge.migration.stages.base import StageContext, Stopwatch
from databridge.migration.stages.staging import StagingArea
from databridge.migration.state import utcnow
from databridge.utils.logging import get_logger

logger = get_logger(__name__)

# Stages whose metadata carries per-table load outcomes
_LOAD_STAGES = (StageId.LOAD_DIMENSIONS.value, StageId.LOAD_FACTS.value)


def stage_entry(stage: ExecutionStage) -> dict[str, Any]:
    return {
        "stage_id": stage.stage_id,
        "stage_name": stage.stage_name,
        "status": stage.status,
        "attempts": stage.attempts,
        "duration_ms": stage.duration_ms,
        "records_processed": stage.records_processed,
        "records_failed": stage.records_failed,
        "error": stage.error_message,
    }


def validation_entry(validation: DataValidation) -> dict[str, Any]:
    return {
        "table": validation.table_name,
        "type": validation.validation_type,
        "status": validation.status,
        "expected": validation.expected_value,
        "actual": validation.actual_value,
        "message": validation.message,
    }


def table_details(stages: list[ExecutionStage]) -> list[dict[str, Any]]:
    """Per-table load outcomes recorded by the two load stages."""
    details = []
    for stage in stages:
        if stage.stage_id not in _LOAD_STAGES or not stage.stage_metadata:
            continue
        for table in stage.stage_metadata.get("tables", []):
            details.append({"stage_id": stage.stage_id, **table})
    return details


def build_report(
    stages: list[ExecutionStage],
    validations: list[DataValidation],
    attachment_stats: dict[str, int],
    identity_stats: dict[str, object],
) -> dict[str, Any]:
    """
    Build the report fields from the stored state of an execution.

    Args:
        stages: Stage rows in pipeline order
        validations: Validation rows of the execution
        attachment_stats: Attachment counts by status
        identity_stats: Identity mapping totals

    Returns:
        Keyword arguments for ``ExecutionStateStore.save_report``
    """
    finished = [s for s in stages if s.status in ("completed", "failed")]
    starts = [s.start_time for s in stages if s.start_time]

    errors = [f"{s.stage_id}: {s.error_message}" for s in stages if s.error_message]
    details = table_details(stages)
    errors.extend(
        f"{d['table']}: {d['error']}" for d in details if d["status"] == "failed" and d["error"]
    )
    warnings = [v.message for v in validations if v.status != "passed" and v.message]

    summary = {
        "stages_total": len(stages),
        "stages_completed": sum(1 for s in stages if s.status == "completed"),
        "stages_failed": sum(1 for s in stages if s.status == "failed"),
        "records_processed": sum(s.records_processed or 0 for s in finished),
        "records_failed": sum(s.records_failed or 0 for s in finished),
        "validations_passed": sum(1 for v in validations if v.status == "passed"),
        "validations_failed": sum(1 for v in validations if v.status == "failed"),
        "validations_warning": sum(1 for v in validations if v.status == "warning"),
        "attachments": attachment_stats,
        "identity_mappings": identity_stats.get("total", 0),
    }

    start_time = min(starts) if starts else None
    end_time = utcnow()
    return {
        "start_time": start_time,
        "end_time": end_time,
        "duration_ms": int((end_time - start_time).total_seconds() * 1000) if start_time else None,
        "summary": summary,
        "stages": [stage_entry(s) for s in stages],
        "validations": [validation_entry(v) for v in validations],
        "table_details": details,
        "errors": errors or None,
        "warnings": warnings or None,
    }


async def generate_report(
    ctx: StageContext, project_id: str, execution_id: str, config: PipelineConfig
) -> StageResult:
    watch = Stopwatch()
    project = ctx.catalog.get_project(project_id)

    fields = build_report(
        stages=ctx.state.list_stages(execution_id),
        validations=ctx.state.list_validations(execution_id),
        attachment_stats=ctx.state.attachment_stats(execution_id),
        identity_stats=RecordIdentityMapper(ctx.state).stats(execution_id),
    )
    report = ctx.state.save_report(execution_id, project_id, project_name=project.name, **fields)

    dropped = 0
    if config.staging.cleanup_after_migration:
        dropped = _drop_staging_tables(ctx, project, config)

    return StageResult(
        success=True,
        duration_ms=watch.elapsed_ms,
        metadata={"report_id": report.id, "staging_tables_dropped": dropped},
    )


def _drop_staging_tables(
    ctx: StageContext, project: ProjectDefinition, config: PipelineConfig
) -> int:
    dropped = 0
    with ctx.engine(project.target) as engine:
        staging = StagingArea(config.staging, engine.dialect.name)
        for mapping in project.ordered_tables():
            try:
                with engine.begin() as conn:
                    dropped += staging.drop(conn, mapping.source_table)
            except SQLAlchemyError as e:
                # cleanup never fails the stage
                logger.warning(
                    "staging_cleanup_failed", table=mapping.source_table, error=str(e)
                )
    return dropped
