"""
Stage 4: load fact tables, capture record identities, migrate attachments.

Fact tables are loaded one transaction per table. Identity pairs returned by
each insert are held in memory and persisted only once every table has been
attempted, and only for tables whose transaction committed. When the
project's source is a document store, the attachments of the loaded
documents are then moved to the object store and linked to their target
rows through the identity index.
"""

from dataclasses import replace
from typing import Any

from sqlalchemy import Engine, MetaData, Table, update

from databridge.client.exceptions import AttachmentMigrationError, ConfigurationError
from databridge.client.object_store import ObjectStoreClient
from databridge.config import PipelineConfig
from databridge.migration.attachments import AttachmentMigrationSummary, AttachmentMigrator
from databridge.migration.catalog import ProjectDefinition, TableKind
from databridge.migration.identity import IdentityCandidate, IdentityRecord, RecordIdentityMapper
from databridge.migration.pipeline import StageResult
from databridge.migration.stages.base import StageContext, Stopwatch, conclude_stage
from databridge.migration.stages.loading import (
    ATTACHMENT_METADATA_COLUMN,
    ATTACHMENT_URL_COLUMN,
    LoadedTable,
    TableLoader,
    load_tables,
)
from databridge.migration.stages.staging import StagingArea
from databridge.utils.logging import get_logger

logger = get_logger(__name__)


class TargetRowLinker:
    """Writes the object-store URL and metadata of an attachment to its target row."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._tables: dict[str, Table] = {}

    def _table(self, name: str) -> Table:
        if name not in self._tables:
            self._tables[name] = Table(name, MetaData(), autoload_with=self.engine)
        return self._tables[name]

    def __call__(self, identity: IdentityRecord, url: str, metadata: dict[str, Any]) -> None:
        table = self._table(identity.table_name)
        with self.engine.begin() as conn:
            conn.execute(
                update(table)
                .where(table.c[identity.target_id_column] == identity.target_id)
                .values({ATTACHMENT_URL_COLUMN: url, ATTACHMENT_METADATA_COLUMN: metadata})
            )


def identity_candidates(
    execution_id: str, project_id: str, loaded: list[LoadedTable]
) -> list[IdentityCandidate]:
    """Candidates of every committed table whose key could be identified."""
    candidates: list[IdentityCandidate] = []
    for item in loaded:
        if not (item.outcome.success and item.identifiable and item.source_table):
            continue
        candidates.extend(
            RecordIdentityMapper.build_candidates(
                execution_id=execution_id,
                project_id=project_id,
                table_name=item.outcome.table,
                document_type=item.source_table,
                source_id_column=item.key_column,
                target_id_column=item.target_id_column,
                pairs=item.pairs,
            )
        )
    return candidates


async def load_facts(
    ctx: StageContext, project_id: str, execution_id: str, config: PipelineConfig
) -> StageResult:
    watch = Stopwatch()
    project = ctx.catalog.get_project(project_id)
    mappings = project.ordered_tables(TableKind.FACT)
    mapper = RecordIdentityMapper(ctx.state, batch_size=ctx.identity_batch_size)

    object_store = None
    if project.source.is_document_store:
        if ctx.object_store_factory is None:
            raise ConfigurationError("Document-store projects need an object store for attachments")
        object_store = ctx.object_store_factory()

    attachments = AttachmentMigrationSummary(migrated=0, failed=0)
    attachment_error = None
    try:
        with ctx.engine(project.target) as engine:
            loader = TableLoader(engine, config, StagingArea(config.staging, engine.dialect.name))
            loaded = load_tables(loader, mappings, config, capture_identity=True)

            created = mapper.persist(identity_candidates(execution_id, project_id, loaded))
            halted = config.fail_fast and any(not item.outcome.success for item in loaded)

            if object_store is not None and not halted:
                try:
                    attachments = await _migrate_attachments(
                        ctx, project, engine, object_store, mapper,
                        execution_id, project_id, config,
                    )
                except AttachmentMigrationError as e:
                    attachment_error = str(e)
    finally:
        if object_store is not None:
            await object_store.close()

    outcomes = [item.outcome for item in loaded]
    metadata = {
        "tables_loaded": sum(1 for o in outcomes if o.success and not o.skipped),
        "identity_mappings_created": created,
        "attachments_migrated": attachments.migrated,
        "attachments_failed": attachments.failed,
    }

    if attachment_error is not None:
        stats = ctx.state.attachment_stats(execution_id)
        metadata["attachments_migrated"] = stats["success"]
        metadata["attachments_failed"] = stats["failed"]
        result = conclude_stage(outcomes, watch, config, **metadata)
        return replace(result, success=False, error=attachment_error)

    return conclude_stage(outcomes, watch, config, **metadata)


async def _migrate_attachments(
    ctx: StageContext,
    project: ProjectDefinition,
    engine: Engine,
    object_store: ObjectStoreClient,
    mapper: RecordIdentityMapper,
    execution_id: str,
    project_id: str,
    config: PipelineConfig,
) -> AttachmentMigrationSummary:
    async with ctx.document_store_factory(project.source) as source:
        documents = await source.list_documents_with_attachments()
        logger.info(
            "documents_with_attachments",
            execution_id=execution_id,
            documents=len(documents),
        )
        migrator = AttachmentMigrator(
            source,
            object_store,
            ctx.state,
            TargetRowLinker(engine),
            config=ctx.attachments,
            sleep=ctx.sleep,
        )
        return await migrator.migrate(
            execution_id,
            project_id,
            documents,
            mapper.document_index(execution_id),
            error_handling=config.error_handling,
        )
