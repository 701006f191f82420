"""Pipeline stage definitions and stage result types.

This module is the single source of truth for the six stages of an
execution, their order and queue priority, and the uniform result every
stage executor returns.
"""

from dataclasses import dataclass, field
from enum import Enum
from functools import reduce
from typing import Any


class StageId(str, Enum):
    """Identifiers of the fixed pipeline stages."""

    EXTRACT = "extract"
    TRANSFORM = "transform"
    LOAD_DIMENSIONS = "load-dimensions"
    LOAD_FACTS = "load-facts"
    VALIDATE = "validate"
    REPORT = "report"

    @property
    def info(self) -> "StageInfo":
        return STAGE_REGISTRY[self]

    @property
    def order(self) -> int:
        return STAGE_REGISTRY[self].order

    @property
    def display_name(self) -> str:
        return STAGE_REGISTRY[self].name


@dataclass(frozen=True)
class StageInfo:
    """Metadata for a pipeline stage."""

    name: str
    order: int  # position in the pipeline, also the queue priority


STAGE_REGISTRY: dict[StageId, StageInfo] = {
    StageId.EXTRACT: StageInfo(name="Extract to Staging", order=1),
    StageId.TRANSFORM: StageInfo(name="Transform & Cleanse", order=2),
    StageId.LOAD_DIMENSIONS: StageInfo(name="Load Dimensions", order=3),
    StageId.LOAD_FACTS: StageInfo(name="Load Facts", order=4),
    StageId.VALIDATE: StageInfo(name="Validate Data", order=5),
    StageId.REPORT: StageInfo(name="Generate Report", order=6),
}

PIPELINE_STAGES: tuple[StageId, ...] = tuple(
    sorted(STAGE_REGISTRY, key=lambda stage: STAGE_REGISTRY[stage].order)
)

# Priority of jobs whose name is not a known stage
FALLBACK_PRIORITY = 10


def stage_priority(stage_id: str) -> int:
    """Queue priority of a stage (lower runs first)."""
    try:
        return StageId(stage_id).order
    except ValueError:
        return FALLBACK_PRIORITY


@dataclass(frozen=True)
class StageResult:
    """Uniform result of a stage executor."""

    success: bool
    records_processed: int = 0
    records_failed: int = 0
    duration_ms: int = 0
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TableOutcome:
    """Result of one unit of work (usually one table) within a stage."""

    table: str
    success: bool
    records_processed: int = 0
    records_failed: int = 0
    error: str | None = None
    skipped: bool = False

    def as_dict(self) -> dict[str, Any]:
        if self.skipped:
            status = "skipped"
        else:
            status = "completed" if self.success else "failed"
        return {
            "table": self.table,
            "status": status,
            "records_processed": self.records_processed,
            "records_failed": self.records_failed,
            "error": self.error,
        }


@dataclass(frozen=True)
class StageTotals:
    """Aggregate of a sequence of TableOutcome values."""

    records_processed: int = 0
    records_failed: int = 0
    units_succeeded: int = 0
    units_failed: int = 0
    units_skipped: int = 0
    errors: tuple[str, ...] = ()

    def add(self, outcome: TableOutcome) -> "StageTotals":
        return StageTotals(
            records_processed=self.records_processed + outcome.records_processed,
            records_failed=self.records_failed + outcome.records_failed,
            units_succeeded=self.units_succeeded + int(outcome.success and not outcome.skipped),
            units_failed=self.units_failed + int(not outcome.success),
            units_skipped=self.units_skipped + int(outcome.skipped),
            errors=self.errors + ((outcome.error,) if outcome.error else ()),
        )


def fold_outcomes(outcomes: list[TableOutcome]) -> StageTotals:
    """Reduce per-unit outcomes into stage totals."""
    return reduce(StageTotals.add, outcomes, StageTotals())


def summarize(
    outcomes: list[TableOutcome],
    duration_ms: int = 0,
    success: bool = True,
    error: str | None = None,
    **metadata: Any,
) -> StageResult:
    """Build a StageResult from per-unit outcomes.

    The ``tables`` key of the metadata lists every outcome so later stages
    (validate, report) can read per-table detail from the stage row.
    """
    totals = fold_outcomes(outcomes)
    return StageResult(
        success=success,
        records_processed=totals.records_processed,
        records_failed=totals.records_failed,
        duration_ms=duration_ms,
        error=error,
        metadata={
            "tables": [outcome.as_dict() for outcome in outcomes],
            "tables_succeeded": totals.units_succeeded,
            "tables_failed": totals.units_failed,
            "tables_skipped": totals.units_skipped,
            **metadata,
        },
    )
