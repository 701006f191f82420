"""
SQLAlchemy models for the execution state store.

This module defines the tables that track a migration execution: one row
per pipeline stage, per migrated attachment, per source-to-target record
identity, per validation check, and one final report.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class ExecutionStage(Base):
    """
    State of one pipeline stage within one execution.

    All six rows of an execution are created up front as pending by the
    orchestrator; afterwards only the worker running the stage updates its row.
    """

    __tablename__ = "etl_execution_stages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    execution_id: Mapped[str] = mapped_column(
        String(255), nullable=False, index=True, comment="Groups the stages of one run"
    )
    project_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    stage_id: Mapped[str] = mapped_column(
        String(50), nullable=False, comment="extract, transform, load-dimensions, ..."
    )
    stage_name: Mapped[str] = mapped_column(String(100), nullable=False)
    stage_order: Mapped[int] = mapped_column(Integer, nullable=False, comment="1-6")
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="pending",
        comment="Stage status: pending, running, completed, failed",
    )

    start_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    end_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    records_processed: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    records_failed: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    stage_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata", JSON, nullable=True, comment="Stage-specific detail"
    )
    attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Times the stage was started"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("execution_id", "stage_id", name="uq_execution_stage"),
        CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'failed')",
            name="ck_execution_stage_status",
        ),
        Index("idx_execution_stage_order", "execution_id", "stage_order"),
    )

    def __repr__(self) -> str:
        return (
            f"<ExecutionStage(execution_id='{self.execution_id}', "
            f"stage_id='{self.stage_id}', status='{self.status}')>"
        )


class AttachmentMigration(Base):
    """
    Outcome of migrating one attachment of one source document.

    Written when an upload concludes (success or terminal failure).
    """

    __tablename__ = "attachment_migrations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    execution_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    project_id: Mapped[str] = mapped_column(String(255), nullable=False)
    document_id: Mapped[str] = mapped_column(String(512), nullable=False)
    attachment_name: Mapped[str] = mapped_column(String(512), nullable=False)
    target_record_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, comment="Target row the attachment was linked to"
    )
    source_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    target_url: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Object store URL, set only on success"
    )
    content_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    migrated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint(
            "execution_id", "document_id", "attachment_name", name="uq_attachment_per_execution"
        ),
        CheckConstraint(
            "status IN ('pending', 'success', 'failed')", name="ck_attachment_migration_status"
        ),
        Index("idx_attachment_execution_status", "execution_id", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<AttachmentMigration(document_id='{self.document_id}', "
            f"attachment_name='{self.attachment_name}', status='{self.status}')>"
        )


class RecordIdentityMapping(Base):
    """
    Association between a source record and the row it became in the target.

    Used to find the target row of a source document when its attachments
    are migrated.
    """

    __tablename__ = "record_identity_mappings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    execution_id: Mapped[str] = mapped_column(String(255), nullable=False)
    project_id: Mapped[str] = mapped_column(String(255), nullable=False)
    table_name: Mapped[str] = mapped_column(
        String(255), nullable=False, comment="Target fact table"
    )
    source_id: Mapped[str] = mapped_column(String(255), nullable=False)
    source_id_column: Mapped[str] = mapped_column(String(255), nullable=False)
    target_id: Mapped[str] = mapped_column(String(255), nullable=False)
    target_id_column: Mapped[str] = mapped_column(String(255), nullable=False)
    source_document_key: Mapped[str] = mapped_column(
        String(512), nullable=False, comment="Id of the matching source document"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint(
            "execution_id", "table_name", "source_id", name="uq_identity_execution_table_source"
        ),
        Index("idx_identity_document_key", "execution_id", "source_document_key"),
    )

    def __repr__(self) -> str:
        return (
            f"<RecordIdentityMapping(table_name='{self.table_name}', "
            f"source_id='{self.source_id}', target_id='{self.target_id}')>"
        )


class DataValidation(Base):
    """One validation check performed by the validate stage."""

    __tablename__ = "data_validations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    execution_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    project_id: Mapped[str] = mapped_column(String(255), nullable=False)
    table_name: Mapped[str] = mapped_column(String(255), nullable=False)
    validation_type: Mapped[str] = mapped_column(
        String(50), nullable=False, comment="row_count, null_constraint, attachment, custom"
    )
    expected_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    actual_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    validated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('passed', 'failed', 'warning')", name="ck_data_validation_status"
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<DataValidation(table_name='{self.table_name}', "
            f"validation_type='{self.validation_type}', status='{self.status}')>"
        )


class MigrationReport(Base):
    """Final report of an execution. Created once and never updated."""

    __tablename__ = "migration_reports"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    execution_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    project_id: Mapped[str] = mapped_column(String(255), nullable=False)
    project_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    start_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    end_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    summary: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    stages: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    validations: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    table_details: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    errors: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    warnings: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<MigrationReport(execution_id='{self.execution_id}', project_id='{self.project_id}')>"
