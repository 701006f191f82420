"""
Record identity mapping.

After a fact table load, the (target key, source key) pairs returned by the
insert are turned into identity candidates. Candidates stay in memory until
the table's transaction has committed and are then persisted in batches.
The persisted mappings let the attachment subsystem find the target row of
each source document.
"""

from collections.abc import Iterable
from dataclasses import dataclass

from sqlalchemy import delete, func, select

from databridge.migration.models import RecordIdentityMapping
from databridge.migration.state import ExecutionStateStore
from databridge.utils.logging import get_logger

logger = get_logger(__name__)


def document_key(document_type: str, source_id: object) -> str:
    """Id of the source document a staged row came from (``<type>_<id>``)."""
    return f"{document_type.lower()}_{source_id}"


@dataclass(frozen=True)
class IdentityCandidate:
    """A mapping captured during a load, not yet persisted."""

    execution_id: str
    project_id: str
    table_name: str
    source_id: str
    source_id_column: str
    target_id: str
    target_id_column: str
    source_document_key: str


@dataclass(frozen=True)
class IdentityRecord:
    """A persisted mapping, detached from the database session."""

    table_name: str
    source_id: str
    target_id: str
    target_id_column: str
    source_document_key: str

    @classmethod
    def from_row(cls, row: RecordIdentityMapping) -> "IdentityRecord":
        return cls(
            table_name=row.table_name,
            source_id=row.source_id,
            target_id=row.target_id,
            target_id_column=row.target_id_column,
            source_document_key=row.source_document_key,
        )


class RecordIdentityMapper:
    """Persists and resolves source-to-target record identities."""

    def __init__(self, state: ExecutionStateStore, batch_size: int = 500):
        self.state = state
        self.batch_size = batch_size

    @staticmethod
    def build_candidates(
        execution_id: str,
        project_id: str,
        table_name: str,
        document_type: str,
        source_id_column: str,
        target_id_column: str,
        pairs: Iterable[tuple[object, object]],
    ) -> list[IdentityCandidate]:
        """
        Turn (target_id, source_id) pairs captured by an insert into candidates.

        Args:
            execution_id: Execution the load belongs to
            project_id: Project the execution belongs to
            table_name: Target table that received the rows
            document_type: Source table / document type used for document keys
            source_id_column: Staging column holding the source key
            target_id_column: Target primary key column
            pairs: (target_id, source_id) tuples, one per inserted row

        Returns:
            Candidates in insert order; pairs with a null source key are dropped
        """
        return [
            IdentityCandidate(
                execution_id=execution_id,
                project_id=project_id,
                table_name=table_name,
                source_id=str(source_id),
                source_id_column=source_id_column,
                target_id=str(target_id),
                target_id_column=target_id_column,
                source_document_key=document_key(document_type, source_id),
            )
            for target_id, source_id in pairs
            if source_id is not None and target_id is not None
        ]

    def persist(self, candidates: Iterable[IdentityCandidate]) -> int:
        """
        Write candidates as identity mapping rows.

        Existing rows for the same (execution, table) are replaced, so a
        re-run of the load stage does not collide with its earlier mappings.
        When a source id appears more than once the last candidate wins.

        Returns:
            Number of rows written
        """
        by_key: dict[tuple[str, str, str], IdentityCandidate] = {}
        for candidate in candidates:
            by_key[(candidate.execution_id, candidate.table_name, candidate.source_id)] = candidate
        if not by_key:
            return 0

        unique = list(by_key.values())
        scopes = {(c.execution_id, c.table_name) for c in unique}

        with self.state.session() as session:
            for execution_id, table_name in scopes:
                session.execute(
                    delete(RecordIdentityMapping).where(
                        RecordIdentityMapping.execution_id == execution_id,
                        RecordIdentityMapping.table_name == table_name,
                    )
                )

            for start in range(0, len(unique), self.batch_size):
                batch = unique[start : start + self.batch_size]
                session.add_all(
                    RecordIdentityMapping(
                        execution_id=c.execution_id,
                        project_id=c.project_id,
                        table_name=c.table_name,
                        source_id=c.source_id,
                        source_id_column=c.source_id_column,
                        target_id=c.target_id,
                        target_id_column=c.target_id_column,
                        source_document_key=c.source_document_key,
                    )
                    for c in batch
                )
                session.flush()
                logger.debug("identity_batch_written", rows=len(batch))

        logger.info("identity_mappings_persisted", rows=len(unique), tables=len(scopes))
        return len(unique)

    def lookup_by_document_key(self, execution_id: str, key: str) -> IdentityRecord | None:
        with self.state.session() as session:
            row = session.scalars(
                select(RecordIdentityMapping).where(
                    RecordIdentityMapping.execution_id == execution_id,
                    RecordIdentityMapping.source_document_key == key,
                )
            ).first()
            return IdentityRecord.from_row(row) if row else None

    def lookup_by_source_id(
        self, execution_id: str, table_name: str, source_id: object
    ) -> IdentityRecord | None:
        with self.state.session() as session:
            row = session.scalars(
                select(RecordIdentityMapping).where(
                    RecordIdentityMapping.execution_id == execution_id,
                    RecordIdentityMapping.table_name == table_name,
                    RecordIdentityMapping.source_id == str(source_id),
                )
            ).first()
            return IdentityRecord.from_row(row) if row else None

    def document_index(self, execution_id: str) -> dict[str, IdentityRecord]:
        """All mappings of an execution keyed by source document key."""
        with self.state.session() as session:
            rows = session.scalars(
                select(RecordIdentityMapping).where(
                    RecordIdentityMapping.execution_id == execution_id
                )
            )
            return {row.source_document_key: IdentityRecord.from_row(row) for row in rows}

    def stats(self, execution_id: str) -> dict[str, object]:
        """Total mapping count and a per-table breakdown."""
        with self.state.session() as session:
            rows = session.execute(
                select(RecordIdentityMapping.table_name, func.count())
                .where(RecordIdentityMapping.execution_id == execution_id)
                .group_by(RecordIdentityMapping.table_name)
            ).all()
        by_table = {table: count for table, count in rows}
        return {"total": sum(by_table.values()), "by_table": by_table}
