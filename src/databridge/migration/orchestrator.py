"""
Pipeline orchestrator.

Facade used by callers (CLI, embedding applications) to start executions,
query their progress and control the queue. It owns no state of its own:
stage rows live in the state store and jobs in the injected queue.
"""

from dataclasses import dataclass

from databridge.client.exceptions import ConfigurationError, NotFoundError
from databridge.config import PipelineConfig
from databridge.migration.models import ExecutionStage
from databridge.migration.pipeline import PIPELINE_STAGES
from databridge.migration.queue import JobQueue, QueueStats, stage_job_id
from databridge.migration.state import ExecutionStateStore
from databridge.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class StageSnapshot:
    """Read-only view of one stage row."""

    stage_id: str
    stage_name: str
    stage_order: int
    status: str
    attempts: int = 0
    records_processed: int = 0
    records_failed: int = 0
    duration_ms: int | None = None
    error: str | None = None

    @classmethod
    def from_row(cls, row: ExecutionStage) -> "StageSnapshot":
        return cls(
            stage_id=row.stage_id,
            stage_name=row.stage_name,
            stage_order=row.stage_order,
            status=row.status,
            attempts=row.attempts or 0,
            records_processed=row.records_processed or 0,
            records_failed=row.records_failed or 0,
            duration_ms=row.duration_ms,
            error=row.error_message,
        )


@dataclass(frozen=True)
class ExecutionStatus:
    """Aggregated status of an execution."""

    execution_id: str
    status: str
    stages: tuple[StageSnapshot, ...]
    progress: int
    records_processed: int
    records_failed: int


def aggregate_status(statuses: list[str]) -> str:
    """
    Derive the execution status from its stage statuses.

    failed if any stage failed; running if any stage runs or only some
    completed; completed if all completed; pending otherwise.
    """
    if any(status == "failed" for status in statuses):
        return "failed"
    completed = sum(1 for status in statuses if status == "completed")
    if statuses and completed == len(statuses):
        return "completed"
    if any(status == "running" for status in statuses) or completed:
        return "running"
    return "pending"


class PipelineOrchestrator:
    """
    Starts and monitors pipeline executions.

    Args:
        queue: Queue receiving the stage jobs
        state: Store holding the stage rows
    """

    def __init__(self, queue: JobQueue, state: ExecutionStateStore):
        self.queue = queue
        self.state = state

    def start_execution(
        self, project_id: str, execution_id: str, config: PipelineConfig | None
    ) -> list[str]:
        """
        Create the stage rows of an execution and enqueue its six jobs.

        Calling it again for the same execution creates nothing new and
        returns the same job ids.

        Returns:
            Job ids in stage order

        Raises:
            ConfigurationError: If an id or the configuration is missing
        """
        if not project_id:
            raise ConfigurationError("project_id is required")
        if not execution_id:
            raise ConfigurationError("execution_id is required")
        if config is None:
            raise ConfigurationError("A pipeline configuration is required")

        created = self.state.create_stages(project_id, execution_id)
        job_ids = self.queue.enqueue_pipeline(project_id, execution_id, config)
        logger.info(
            "execution_started",
            project_id=project_id,
            execution_id=execution_id,
            stages_created=created,
            jobs=len(job_ids),
            error_handling=config.error_handling.value,
        )
        return job_ids

    def status(self, execution_id: str) -> ExecutionStatus:
        """
        Aggregate the stage rows of an execution.

        Raises:
            NotFoundError: If the execution has no stage rows
        """
        rows = self.state.list_stages(execution_id)
        if not rows:
            raise NotFoundError(f"Unknown execution: {execution_id}")

        stages = tuple(StageSnapshot.from_row(row) for row in rows)
        completed = sum(1 for stage in stages if stage.status == "completed")
        return ExecutionStatus(
            execution_id=execution_id,
            status=aggregate_status([stage.status for stage in stages]),
            stages=stages,
            progress=round(completed / len(stages) * 100),
            records_processed=sum(stage.records_processed for stage in stages),
            records_failed=sum(stage.records_failed for stage in stages),
        )

    def pause(self) -> None:
        self.queue.pause()

    def resume(self) -> None:
        self.queue.resume()

    def cancel(self, execution_id: str) -> list[str]:
        """
        Cancel the stage jobs of an execution that have not started yet.

        Stages are cancelled from last to first.

        Returns:
            Ids of the cancelled jobs
        """
        cancelled = [
            job_id
            for job_id in (stage_job_id(execution_id, stage) for stage in reversed(PIPELINE_STAGES))
            if self.queue.cancel(job_id)
        ]
        logger.info("execution_cancelled", execution_id=execution_id, jobs=cancelled)
        return cancelled

    def queue_stats(self) -> QueueStats:
        return self.queue.stats()
