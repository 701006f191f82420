"""
Stage runner: the job processor plugged into the queue.

Each job carries ``project_id``, ``execution_id``, ``stage_id`` and the
pipeline configuration. The runner keeps the stage row in step with the
job: running when it starts, completed or failed when the executor
returns. A failed stage is raised back to the queue so it can be retried.
"""

from collections.abc import Mapping

from databridge.client.exceptions import StageExecutionError
from databridge.config import PipelineConfig
from databridge.migration.pipeline import StageId, StageResult
from databridge.migration.queue import Job
from databridge.migration.stages import STAGE_EXECUTORS, StageContext, StageExecutor
from databridge.migration.stages.base import Stopwatch
from databridge.utils.logging import get_logger, log_error

logger = get_logger(__name__)


class StageRunner:
    """
    Processes stage jobs.

    Args:
        context: Collaborators handed to every executor
        executors: Stage registry (defaults to the built-in executors)
    """

    def __init__(
        self,
        context: StageContext,
        executors: Mapping[StageId, StageExecutor] | None = None,
    ):
        self.context = context
        self.executors = STAGE_EXECUTORS if executors is None else executors

    async def __call__(self, job: Job) -> StageResult:
        """
        Run the stage described by a job.

        Returns:
            The stage result when it succeeded

        Raises:
            StageExecutionError: When the stage failed, so the queue retries it
        """
        project_id = job.data["project_id"]
        execution_id = job.data["execution_id"]
        stage = StageId(job.data["stage_id"])
        config = PipelineConfig.model_validate(job.data.get("config") or {})
        log = logger.bind(execution_id=execution_id, stage_id=stage.value, job_id=job.id)

        state = self.context.state
        state.mark_stage_running(execution_id, stage)
        job.update_progress(10)
        log.info("stage_started", stage_name=stage.display_name, attempt=job.attempts_made)

        watch = Stopwatch()
        try:
            executor = self.executors[stage]
            result = await executor(self.context, project_id, execution_id, config)
        except Exception as e:
            log_error(log, e, f"stage {stage.value}")
            result = StageResult(
                success=False,
                duration_ms=watch.elapsed_ms,
                error=str(e) or type(e).__name__,
            )

        state.finish_stage(execution_id, stage, result)
        if not result.success:
            log.error("stage_failed", duration_ms=result.duration_ms, error=result.error)
            raise StageExecutionError(stage.value, result.error)

        job.update_progress(100)
        log.info(
            "stage_completed",
            duration_ms=result.duration_ms,
            records_processed=result.records_processed,
            records_failed=result.records_failed,
        )
        return result
