"""
Shared pieces of the stage executors.

``StageContext`` carries the collaborators an executor needs (state store,
catalog, engine and client factories) so executors are plain async
functions with the signature ``(ctx, project_id, execution_id, config)``.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Protocol

from sqlalchemy import Engine

from databridge.client.document_store import DocumentStoreClient
from databridge.client.object_store import ObjectStoreClient
from databridge.config import AttachmentConfig, ConnectionConfig, EngineConfig, PipelineConfig
from databridge.migration.catalog import ProjectCatalog
from databridge.migration.database import create_database_engine
from databridge.migration.pipeline import StageResult, TableOutcome, summarize
from databridge.migration.state import ExecutionStateStore


def _default_engine_factory(connection: ConnectionConfig) -> Engine:
    return create_database_engine(connection.sqlalchemy_url())


@dataclass
class StageContext:
    """Collaborators available to every stage executor."""

    state: ExecutionStateStore
    catalog: ProjectCatalog
    engine_factory: Callable[[ConnectionConfig], Engine] = _default_engine_factory
    document_store_factory: Callable[[ConnectionConfig], DocumentStoreClient] = (
        DocumentStoreClient.from_connection
    )
    object_store_factory: Callable[[], ObjectStoreClient] | None = None
    attachments: AttachmentConfig = field(default_factory=AttachmentConfig)
    identity_batch_size: int = 500
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep

    @classmethod
    def from_config(
        cls, config: EngineConfig, state: ExecutionStateStore, catalog: ProjectCatalog
    ) -> "StageContext":
        """Build a context wired to the configured object store."""
        return cls(
            state=state,
            catalog=catalog,
            object_store_factory=lambda: ObjectStoreClient.from_config(config.object_store),
            attachments=config.attachments,
            identity_batch_size=config.identity_batch_size,
        )

    @contextmanager
    def engine(self, connection: ConnectionConfig):
        """Engine for a project database, disposed when the block exits."""
        engine = self.engine_factory(connection)
        try:
            yield engine
        finally:
            engine.dispose()


class StageExecutor(Protocol):
    def __call__(
        self, ctx: StageContext, project_id: str, execution_id: str, config: PipelineConfig
    ) -> Awaitable[StageResult]: ...


class Stopwatch:
    """Elapsed wall time in whole milliseconds."""

    def __init__(self) -> None:
        self._start = time.perf_counter()

    @property
    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self._start) * 1000)


def conclude_stage(
    outcomes: list[TableOutcome], watch: Stopwatch, config: PipelineConfig, **metadata: Any
) -> StageResult:
    """Fold per-table outcomes into the stage result.

    In fail-fast mode the first failed table fails the stage; otherwise
    failures are only counted.
    """
    failed = next((o for o in outcomes if not o.success), None)
    if failed is not None and config.fail_fast:
        return summarize(
            outcomes,
            watch.elapsed_ms,
            success=False,
            error=f"{failed.table}: {failed.error}",
            **metadata,
        )
    return summarize(outcomes, watch.elapsed_ms, **metadata)
