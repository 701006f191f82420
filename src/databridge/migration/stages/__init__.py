"""Stage executors and the registry that dispatches jobs to them."""

from databridge.client.exceptions import MigrationError
from databridge.migration.pipeline import StageId
from databridge.migration.stages.base import StageContext, StageExecutor
from databridge.migration.stages.extract import extract_to_staging
from databridge.migration.stages.load_dimensions import load_dimensions
from databridge.migration.stages.load_facts import load_facts
from databridge.migration.stages.report import generate_report
from databridge.migration.stages.transform import transform_and_cleanse
from databridge.migration.stages.validate import validate_data

STAGE_EXECUTORS: dict[StageId, StageExecutor] = {
    StageId.EXTRACT: extract_to_staging,
    StageId.TRANSFORM: transform_and_cleanse,
    StageId.LOAD_DIMENSIONS: load_dimensions,
    StageId.LOAD_FACTS: load_facts,
    StageId.VALIDATE: validate_data,
    StageId.REPORT: generate_report,
}


def register_stage(stage_id: StageId | str, executor: StageExecutor) -> None:
    """Replace the executor of a stage."""
    STAGE_EXECUTORS[StageId(stage_id)] = executor


def get_executor(stage_id: StageId | str) -> StageExecutor:
    """
    Look up the executor of a stage.

    Raises:
        MigrationError: If the stage id is not a pipeline stage
    """
    try:
        return STAGE_EXECUTORS[StageId(stage_id)]
    except ValueError:
        raise MigrationError(f"Unknown stage: {stage_id}") from None


__all__ = [
    "STAGE_EXECUTORS",
    "StageContext",
    "StageExecutor",
    "extract_to_staging",
    "generate_report",
    "get_executor",
    "load_dimensions",
    "load_facts",
    "register_stage",
    "transform_and_cleanse",
    "validate_data",
]
