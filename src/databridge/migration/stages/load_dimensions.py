"""Stage 3: load dimension tables from staging into the target database."""

from databridge.config import PipelineConfig
from databridge.migration.catalog import TableKind
from databridge.migration.pipeline import StageResult
from databridge.migration.stages.base import StageContext, Stopwatch, conclude_stage
from databridge.migration.stages.loading import TableLoader, load_tables
from databridge.migration.stages.staging import StagingArea
from databridge.utils.logging import get_logger

logger = get_logger(__name__)


async def load_dimensions(
    ctx: StageContext, project_id: str, execution_id: str, config: PipelineConfig
) -> StageResult:
    watch = Stopwatch()
    project = ctx.catalog.get_project(project_id)
    mappings = project.ordered_tables(TableKind.DIMENSION)
    logger.info("dimension_tables_found", execution_id=execution_id, tables=len(mappings))

    with ctx.engine(project.target) as engine:
        loader = TableLoader(engine, config, StagingArea(config.staging, engine.dialect.name))
        loaded = load_tables(loader, mappings, config)

    outcomes = [item.outcome for item in loaded]
    return conclude_stage(
        outcomes,
        watch,
        config,
        tables_loaded=sum(1 for o in outcomes if o.success and not o.skipped),
    )
