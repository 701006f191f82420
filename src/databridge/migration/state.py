"""
Execution state store.

This module provides the ExecutionStateStore class, the persistence layer
for stage rows, attachment outcomes, validation checks and reports of
migration executions. It holds no pipeline logic.
"""

import threading
from collections.abc import Generator, Iterable
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import Engine, delete, func, select
from sqlalchemy.orm import Session

from databridge.client.exceptions import StateError
from databridge.config import StateConfig
from databridge.migration.database import create_database_engine, init_database, session_scope
from databridge.migration.models import (
    AttachmentMigration,
    DataValidation,
    ExecutionStage,
    MigrationReport,
    RecordIdentityMapping,
)
from databridge.migration.pipeline import PIPELINE_STAGES, StageId, StageResult
from databridge.utils.logging import get_logger

logger = get_logger(__name__)


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns of the state tables."""
    return datetime.now(UTC).replace(tzinfo=None)


@dataclass(frozen=True)
class AttachmentOutcome:
    """Terminal outcome of one attachment transfer."""

    document_id: str
    attachment_name: str
    success: bool
    target_record_id: str | None = None
    source_url: str | None = None
    target_url: str | None = None
    content_type: str | None = None
    size_bytes: int | None = None
    error: str | None = None


@dataclass(frozen=True)
class ValidationCheck:
    """Result of one validation check, before it is persisted."""

    table_name: str
    validation_type: str
    status: str
    expected_value: str | None = None
    actual_value: str | None = None
    message: str | None = None


class ExecutionStateStore:
    """
    Persists the state of migration executions.

    Thread-safe: every operation runs in its own session under a reentrant
    lock. Rows returned are detached and safe to read after the call.

    Usage:
        store = ExecutionStateStore(StateConfig(db_path="state.db"))
        store.create_stages("p1", "e1")
        store.mark_stage_running("e1", StageId.EXTRACT)
    """

    def __init__(self, config: StateConfig | None = None, engine: Engine | None = None):
        """
        Initialize the state store.

        Args:
            config: State configuration (ignored when an engine is given)
            engine: Pre-built engine, e.g. shared with tests

        Raises:
            StateError: If the database cannot be initialized
        """
        self.config = config or StateConfig()
        self._lock = threading.RLock()

        try:
            self.engine = engine or create_database_engine(
                self.config.database_url,
                pool_size=self.config.db_pool_size,
                max_overflow=self.config.db_max_overflow,
                pool_timeout=self.config.db_pool_timeout,
                pool_recycle=self.config.db_pool_recycle,
            )
            self._session_factory = init_database(self.engine)
        except Exception as e:
            logger.error("state_store_init_failed", error=str(e))
            raise StateError(f"Failed to initialize execution state store: {e}") from e

        logger.debug("state_store_initialized", dialect=self.engine.dialect.name)

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """Locked session scope; commits on success and raises StateError on failure."""
        with self._lock:
            with session_scope(self._session_factory) as session:
                yield session

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Stage rows
    # ------------------------------------------------------------------

    def create_stages(self, project_id: str, execution_id: str) -> int:
        """
        Create the pending stage rows of an execution.

        Rows that already exist are left untouched, so calling this twice for
        the same execution does not create duplicates.

        Args:
            project_id: Project the execution belongs to
            execution_id: Execution identifier

        Returns:
            Number of rows created (0 when all six already existed)
        """
        with self.session() as session:
            existing = set(
                session.scalars(
                    select(ExecutionStage.stage_id).where(
                        ExecutionStage.execution_id == execution_id
                    )
                )
            )
            created = 0
            for stage in PIPELINE_STAGES:
                if stage.value in existing:
                    continue
                session.add(
                    ExecutionStage(
                        execution_id=execution_id,
                        project_id=project_id,
                        stage_id=stage.value,
                        stage_name=stage.display_name,
                        stage_order=stage.order,
                        status="pending",
                        records_processed=0,
                        records_failed=0,
                        attempts=0,
                    )
                )
                created += 1

        if created:
            logger.info("stages_created", execution_id=execution_id, created=created)
        else:
            logger.info("stages_already_exist", execution_id=execution_id)
        return created

    def get_stage(self, execution_id: str, stage_id: StageId | str) -> ExecutionStage | None:
        with self.session() as session:
            return self._find_stage(session, execution_id, stage_id)

    def list_stages(self, execution_id: str) -> list[ExecutionStage]:
        """Stage rows of an execution in pipeline order."""
        with self.session() as session:
            return list(
                session.scalars(
                    select(ExecutionStage)
                    .where(ExecutionStage.execution_id == execution_id)
                    .order_by(ExecutionStage.stage_order)
                )
            )

    def _find_stage(
        self, session: Session, execution_id: str, stage_id: StageId | str
    ) -> ExecutionStage | None:
        return session.scalars(
            select(ExecutionStage).where(
                ExecutionStage.execution_id == execution_id,
                ExecutionStage.stage_id == StageId(stage_id).value,
            )
        ).first()

    def mark_stage_running(self, execution_id: str, stage_id: StageId | str) -> None:
        """
        Transition a stage to running and count the attempt.

        Raises:
            StateError: If the stage row does not exist
        """
        with self.session() as session:
            stage = self._find_stage(session, execution_id, stage_id)
            if stage is not None:
                stage.status = "running"
                stage.start_time = utcnow()
                stage.end_time = None
                stage.error_message = None
                stage.attempts = (stage.attempts or 0) + 1

        if stage is None:
            raise StateError(f"No stage row for {execution_id}/{StageId(stage_id).value}")
        logger.debug(
            "stage_marked_running",
            execution_id=execution_id,
            stage_id=StageId(stage_id).value,
            attempt=stage.attempts,
        )

    def finish_stage(
        self, execution_id: str, stage_id: StageId | str, result: StageResult
    ) -> None:
        """
        Persist the result of a stage run as completed or failed.

        Raises:
            StateError: If the stage row does not exist
        """
        with self.session() as session:
            stage = self._find_stage(session, execution_id, stage_id)
            if stage is not None:
                stage.status = "completed" if result.success else "failed"
                stage.end_time = utcnow()
                stage.duration_ms = result.duration_ms
                stage.records_processed = result.records_processed
                stage.records_failed = result.records_failed
                stage.error_message = result.error
                stage.stage_metadata = result.metadata or None

        if stage is None:
            raise StateError(f"No stage row for {execution_id}/{StageId(stage_id).value}")
        logger.debug(
            "stage_result_saved",
            execution_id=execution_id,
            stage_id=StageId(stage_id).value,
            status=stage.status,
        )

    def delete_execution(self, execution_id: str) -> int:
        """Delete every row owned by an execution. Returns the number of rows removed."""
        removed = 0
        with self.session() as session:
            for model in (
                ExecutionStage,
                AttachmentMigration,
                RecordIdentityMapping,
                DataValidation,
                MigrationReport,
            ):
                result = session.execute(delete(model).where(model.execution_id == execution_id))
                removed += result.rowcount or 0
        logger.info("execution_deleted", execution_id=execution_id, rows=removed)
        return removed

    # ------------------------------------------------------------------
    # Attachment outcomes
    # ------------------------------------------------------------------

    def record_attachment(
        self, execution_id: str, project_id: str, outcome: AttachmentOutcome
    ) -> None:
        """
        Write the outcome of one attachment transfer.

        The row is keyed by (execution, document, attachment name); a later
        outcome for the same key replaces the earlier one.
        """
        with self.session() as session:
            row = session.scalars(
                select(AttachmentMigration).where(
                    AttachmentMigration.execution_id == execution_id,
                    AttachmentMigration.document_id == outcome.document_id,
                    AttachmentMigration.attachment_name == outcome.attachment_name,
                )
            ).first()
            if row is None:
                row = AttachmentMigration(
                    execution_id=execution_id,
                    document_id=outcome.document_id,
                    attachment_name=outcome.attachment_name,
                )
                session.add(row)

            row.project_id = project_id
            row.target_record_id = outcome.target_record_id
            row.source_url = outcome.source_url
            row.target_url = outcome.target_url if outcome.success else None
            row.content_type = outcome.content_type
            row.size_bytes = outcome.size_bytes
            row.status = "success" if outcome.success else "failed"
            row.error_message = None if outcome.success else outcome.error
            row.migrated_at = utcnow() if outcome.success else None

    def list_attachments(
        self, execution_id: str, status: str | None = None
    ) -> list[AttachmentMigration]:
        with self.session() as session:
            query = select(AttachmentMigration).where(
                AttachmentMigration.execution_id == execution_id
            )
            if status:
                query = query.where(AttachmentMigration.status == status)
            return list(session.scalars(query.order_by(AttachmentMigration.id)))

    def attachment_stats(self, execution_id: str) -> dict[str, int]:
        """Counts of attachment rows by status, plus the total."""
        with self.session() as session:
            rows = session.execute(
                select(AttachmentMigration.status, func.count())
                .where(AttachmentMigration.execution_id == execution_id)
                .group_by(AttachmentMigration.status)
            ).all()
        stats = {"total": 0, "success": 0, "failed": 0, "pending": 0}
        for status, count in rows:
            stats[status] = count
            stats["total"] += count
        return stats

    # ------------------------------------------------------------------
    # Validations
    # ------------------------------------------------------------------

    def replace_validations(
        self, execution_id: str, project_id: str, checks: Iterable[ValidationCheck]
    ) -> int:
        """
        Store the validation checks of an execution.

        Checks from an earlier run of the validate stage are removed first.

        Returns:
            Number of checks stored
        """
        checks = list(checks)
        with self.session() as session:
            session.execute(
                delete(DataValidation).where(DataValidation.execution_id == execution_id)
            )
            session.add_all(
                DataValidation(
                    execution_id=execution_id,
                    project_id=project_id,
                    table_name=check.table_name,
                    validation_type=check.validation_type,
                    expected_value=check.expected_value,
                    actual_value=check.actual_value,
                    status=check.status,
                    message=check.message,
                    validated_at=utcnow(),
                )
                for check in checks
            )
        return len(checks)

    def list_validations(self, execution_id: str) -> list[DataValidation]:
        with self.session() as session:
            return list(
                session.scalars(
                    select(DataValidation)
                    .where(DataValidation.execution_id == execution_id)
                    .order_by(DataValidation.id)
                )
            )

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    def get_report(self, execution_id: str) -> MigrationReport | None:
        with self.session() as session:
            return session.scalars(
                select(MigrationReport).where(MigrationReport.execution_id == execution_id)
            ).first()

    def save_report(self, execution_id: str, project_id: str, **fields: Any) -> MigrationReport:
        """
        Create the report of an execution.

        Reports are immutable: when one already exists it is returned
        unchanged and ``fields`` are ignored.
        """
        with self.session() as session:
            existing = session.scalars(
                select(MigrationReport).where(MigrationReport.execution_id == execution_id)
            ).first()
            if existing is not None:
                logger.info("report_already_exists", execution_id=execution_id)
                return existing

            report = MigrationReport(execution_id=execution_id, project_id=project_id, **fields)
            session.add(report)

        logger.info("report_saved", execution_id=execution_id)
        return report
