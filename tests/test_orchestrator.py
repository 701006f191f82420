"""Tests for the pipeline orchestrator, the stage runner and a full run."""

import pytest
from conftest import query

from databridge.client.exceptions import ConfigurationError, MigrationError, NotFoundError
from databridge.config import PipelineConfig, QueueConfig
from databridge.migration.identity import RecordIdentityMapper
from databridge.migration.orchestrator import PipelineOrchestrator, aggregate_status
from databridge.migration.pipeline import PIPELINE_STAGES, StageId, StageResult
from databridge.migration.queue import AsyncJobQueue
from databridge.migration.stages import (
    STAGE_EXECUTORS,
    extract_to_staging,
    get_executor,
    register_stage,
)
from databridge.migration.worker import StageRunner


def queue_config() -> QueueConfig:
    return QueueConfig(concurrency=2, rate_limit_max=100, backoff_delay_ms=1)


async def succeed(ctx, project_id, execution_id, config):
    return StageResult(success=True, records_processed=1)


class Flaky:
    """Executor that raises a number of times before succeeding."""

    def __init__(self, failures: int, message: str = "boom"):
        self.failures = failures
        self.message = message
        self.calls = 0

    async def __call__(self, ctx, project_id, execution_id, config):
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError(self.message)
        return StageResult(success=True, records_processed=5)


def stub_executors(**overrides):
    executors = {stage: succeed for stage in PIPELINE_STAGES}
    for name, executor in overrides.items():
        executors[StageId(name.replace("_", "-"))] = executor
    return executors


async def run_to_idle(queue: AsyncJobQueue, timeout: float = 10) -> None:
    await queue.start()
    try:
        await queue.wait_until_idle(timeout)
    finally:
        await queue.close()


class TestAggregateStatus:
    @pytest.mark.parametrize(
        "statuses,expected",
        [
            (["pending"] * 6, "pending"),
            (["completed"] * 6, "completed"),
            (["completed", "running", "pending"], "running"),
            (["completed", "pending", "pending"], "running"),
            (["completed", "failed", "pending"], "failed"),
            ([], "pending"),
        ],
    )
    def test_aggregate(self, statuses, expected):
        assert aggregate_status(statuses) == expected


class TestStartExecution:
    def test_creates_six_pending_stages(self, state):
        orchestrator = PipelineOrchestrator(AsyncJobQueue(queue_config()), state)

        job_ids = orchestrator.start_execution("p1", "e1", PipelineConfig())
        status = orchestrator.status("e1")

        assert len(job_ids) == 6
        assert status.status == "pending"
        assert status.progress == 0
        assert [s.stage_id for s in status.stages] == [s.value for s in PIPELINE_STAGES]
        assert all(s.attempts == 0 for s in status.stages)

    def test_starting_twice_is_idempotent(self, state):
        queue = AsyncJobQueue(queue_config())
        orchestrator = PipelineOrchestrator(queue, state)

        first = orchestrator.start_execution("p1", "e1", PipelineConfig())
        second = orchestrator.start_execution("p1", "e1", PipelineConfig())

        assert first == second
        assert len(state.list_stages("e1")) == 6
        assert queue.stats().total == 6

    @pytest.mark.parametrize(
        "project_id,execution_id,config",
        [("", "e1", PipelineConfig()), ("p1", "", PipelineConfig()), ("p1", "e1", None)],
    )
    def test_missing_arguments(self, state, project_id, execution_id, config):
        orchestrator = PipelineOrchestrator(AsyncJobQueue(queue_config()), state)

        with pytest.raises(ConfigurationError):
            orchestrator.start_execution(project_id, execution_id, config)

    def test_unknown_execution(self, state):
        orchestrator = PipelineOrchestrator(AsyncJobQueue(queue_config()), state)

        with pytest.raises(NotFoundError):
            orchestrator.status("missing")

    def test_cancel_removes_every_waiting_job(self, state):
        queue = AsyncJobQueue(queue_config())
        orchestrator = PipelineOrchestrator(queue, state)
        orchestrator.start_execution("p1", "e1", PipelineConfig())

        cancelled = orchestrator.cancel("e1")

        assert cancelled == [f"e1-{s.value}" for s in reversed(PIPELINE_STAGES)]
        assert orchestrator.queue_stats().total == 0
        assert orchestrator.status("e1").status == "pending"


class TestStageRegistry:
    def test_lookup(self):
        assert get_executor("extract") is extract_to_staging

    def test_unknown_stage(self):
        with pytest.raises(MigrationError):
            get_executor("publish")

    def test_register_replaces_executor(self):
        original = STAGE_EXECUTORS[StageId.REPORT]
        try:
            register_stage("report", succeed)
            assert get_executor(StageId.REPORT) is succeed
        finally:
            register_stage(StageId.REPORT, original)


class TestStageRunner:
    async def test_stages_run_in_order_and_complete(self, state, stage_context):
        queue = AsyncJobQueue(queue_config(), processor=StageRunner(stage_context, stub_executors()))
        orchestrator = PipelineOrchestrator(queue, state)
        orchestrator.start_execution("p1", "e1", PipelineConfig(retry_delay_ms=1))

        await run_to_idle(queue)
        status = orchestrator.status("e1")

        assert status.status == "completed"
        assert status.progress == 100
        assert status.records_processed == 6
        starts = [state.get_stage("e1", stage).start_time for stage in PIPELINE_STAGES]
        assert starts == sorted(starts)

    async def test_stage_retried_until_success(self, state, stage_context):
        flaky = Flaky(failures=2)
        queue = AsyncJobQueue(
            queue_config(), processor=StageRunner(stage_context, stub_executors(transform=flaky))
        )
        orchestrator = PipelineOrchestrator(queue, state)
        orchestrator.start_execution("p1", "e1", PipelineConfig(retry_attempts=3, retry_delay_ms=1))

        await run_to_idle(queue)

        transform = state.get_stage("e1", StageId.TRANSFORM)
        assert transform.status == "completed"
        assert transform.attempts == 3
        assert transform.error_message is None
        assert transform.records_processed == 5
        assert orchestrator.status("e1").status == "completed"

    async def test_failed_stage_blocks_later_stages(self, state, stage_context):
        queue = AsyncJobQueue(
            queue_config(),
            processor=StageRunner(stage_context, stub_executors(transform=Flaky(failures=99))),
        )
        orchestrator = PipelineOrchestrator(queue, state)
        orchestrator.start_execution("p1", "e1", PipelineConfig(retry_attempts=1, retry_delay_ms=1))

        await run_to_idle(queue)

        transform = state.get_stage("e1", StageId.TRANSFORM)
        assert transform.status == "failed"
        assert transform.error_message == "boom"
        assert transform.attempts == 1

        for stage in PIPELINE_STAGES[2:]:
            row = state.get_stage("e1", stage)
            assert row.status == "pending"
            assert row.attempts == 0
            assert row.start_time is None

        status = orchestrator.status("e1")
        assert status.status == "failed"
        assert status.progress == 17
        assert queue.status("e1-load-dimensions").failed_reason == "dependency e1-transform failed"

    async def test_unsuccessful_result_fails_stage(self, state, stage_context):
        async def reports_failure(ctx, project_id, execution_id, config):
            return StageResult(success=False, records_failed=2, error="2 rows rejected")

        queue = AsyncJobQueue(
            queue_config(),
            processor=StageRunner(stage_context, stub_executors(extract=reports_failure)),
        )
        orchestrator = PipelineOrchestrator(queue, state)
        orchestrator.start_execution("p1", "e1", PipelineConfig(retry_attempts=1, retry_delay_ms=1))

        await run_to_idle(queue)

        extract = state.get_stage("e1", StageId.EXTRACT)
        assert extract.status == "failed"
        assert extract.error_message == "2 rows rejected"
        assert extract.records_failed == 2


class TestFullPipeline:
    async def test_sqlite_to_sqlite(self, state, stage_context, target_db, pipeline_config):
        queue = AsyncJobQueue(queue_config(), processor=StageRunner(stage_context))
        orchestrator = PipelineOrchestrator(queue, state)
        orchestrator.start_execution("p1", "e1", pipeline_config)

        await run_to_idle(queue, timeout=30)
        status = orchestrator.status("e1")

        assert status.status == "completed", [(s.stage_id, s.error) for s in status.stages]
        assert query(target_db, "SELECT name, tier FROM dim_customer ORDER BY source_customer_id") == [
            ("ADA", "gold"),
            ("GRACE", "standard"),
            ("LINUS", "silver"),
        ]
        assert query(target_db, "SELECT COUNT(*) FROM fact_orders") == [(3,)]

        index = RecordIdentityMapper(state).document_index("e1")
        assert set(index) == {"orders_10", "orders_11", "orders_12"}
        assert {record.table_name for record in index.values()} == {"fact_orders"}

        report = state.get_report("e1")
        assert report is not None
        assert report.project_name == "Sales"
        assert report.summary["stages_completed"] == 5
        assert report.summary["identity_mappings"] == 3
        assert report.summary["validations_failed"] == 0
        assert {d["table"] for d in report.table_details} == {"dim_customer", "fact_orders"}
