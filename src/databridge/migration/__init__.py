"""
Migration module for DataBridge.

This module provides the execution state store, record identity mapping,
attachment migration, the stage job queue and the pipeline orchestrator.
"""

# Database utilities
from databridge.migration.database import create_database_engine, init_database, session_scope

# Database models
from databridge.migration.models import (
    AttachmentMigration,
    Base,
    DataValidation,
    ExecutionStage,
    MigrationReport,
    RecordIdentityMapping,
)

# Pipeline definition
from databridge.migration.pipeline import PIPELINE_STAGES, StageId, StageResult, TableOutcome

# State and identities
from databridge.migration.state import ExecutionStateStore
from databridge.migration.identity import RecordIdentityMapper
from databridge.migration.attachments import AttachmentMigrator

# Catalog
from databridge.migration.catalog import (
    InMemoryProjectCatalog,
    ProjectCatalog,
    ProjectDefinition,
    YamlProjectCatalog,
)

# Queue and orchestration
from databridge.migration.queue import AsyncJobQueue, JobQueue
from databridge.migration.stages import StageContext
from databridge.migration.worker import StageRunner
from databridge.migration.orchestrator import ExecutionStatus, PipelineOrchestrator

__all__ = [
    # Models
    "Base",
    "ExecutionStage",
    "AttachmentMigration",
    "RecordIdentityMapping",
    "DataValidation",
    "MigrationReport",
    # Database utilities
    "create_database_engine",
    "init_database",
    "session_scope",
    # Pipeline definition
    "PIPELINE_STAGES",
    "StageId",
    "StageResult",
    "TableOutcome",
    # State and identities
    "ExecutionStateStore",
    "RecordIdentityMapper",
    "AttachmentMigrator",
    # Catalog
    "ProjectCatalog",
    "ProjectDefinition",
    "InMemoryProjectCatalog",
    "YamlProjectCatalog",
    # Queue and orchestration
    "JobQueue",
    "AsyncJobQueue",
    "StageContext",
    "StageRunner",
    "PipelineOrchestrator",
    "ExecutionStatus",
]
