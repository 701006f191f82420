"""
Transactional table loader shared by the dimension and fact stages.

Each table is loaded in its own transaction on the target engine: optional
attachment columns are added, the target is cleared or merged according to
the load strategy, and staged rows are copied with ``INSERT ... SELECT``.
When the staging key column is mapped to a target column, the insert also
returns (target primary key, source key) for every inserted row.
"""

from dataclasses import dataclass

from sqlalchemy import JSON, Connection, Engine, MetaData, Table, Text, func, inspect, select, text
from sqlalchemy.exc import SQLAlchemyError

from databridge.client.exceptions import TableLoadError
from databridge.config import LoadStrategy, PipelineConfig
from databridge.migration.catalog import TableMapping
from databridge.migration.pipeline import TableOutcome
from databridge.migration.stages.staging import StagingArea
from databridge.utils.logging import get_logger

logger = get_logger(__name__)

ATTACHMENT_URL_COLUMN = "attachment_url"
ATTACHMENT_METADATA_COLUMN = "attachment_metadata"


@dataclass(frozen=True)
class LoadedTable:
    """Outcome of one table load plus the identity pairs it captured."""

    outcome: TableOutcome
    source_table: str | None = None
    key_column: str | None = None
    target_id_column: str | None = None
    pairs: tuple[tuple[object, object], ...] = ()

    @property
    def identifiable(self) -> bool:
        return self.key_column is not None and self.target_id_column is not None


def ensure_attachment_columns(conn: Connection, table_name: str) -> list[str]:
    """Add the attachment url/metadata columns to a target table if missing.

    Returns:
        Names of the columns that were added
    """
    existing = {column["name"] for column in inspect(conn).get_columns(table_name)}
    preparer = conn.dialect.identifier_preparer
    added = []
    for name, column_type in (
        (ATTACHMENT_URL_COLUMN, Text()),
        (ATTACHMENT_METADATA_COLUMN, JSON()),
    ):
        if name in existing:
            continue
        conn.execute(
            text(
                f"ALTER TABLE {preparer.quote(table_name)} "
                f"ADD COLUMN {preparer.quote(name)} {column_type.compile(dialect=conn.dialect)}"
            )
        )
        added.append(name)
    if added:
        logger.info("attachment_columns_added", table=table_name, columns=added)
    return added


class TableLoader:
    """Loads staged rows into target tables, one transaction per table."""

    def __init__(self, engine: Engine, config: PipelineConfig, staging: StagingArea):
        self.engine = engine
        self.config = config
        self.staging = staging

    def staged_count(self, mapping: TableMapping) -> int:
        """Rows waiting in the staging table (0 when it does not exist)."""
        with self.engine.connect() as conn:
            if not self.staging.exists(conn, mapping.source_table):
                return 0
            table = self.staging.reflect(conn, mapping.source_table)
            return conn.execute(select(func.count()).select_from(table)).scalar_one()

    def load(self, mapping: TableMapping, capture_identity: bool = False) -> LoadedTable:
        """
        Load one table mapping.

        Args:
            mapping: Table mapping to load
            capture_identity: Add attachment columns and return identity pairs

        Returns:
            LoadedTable with the outcome and captured pairs

        Raises:
            TableLoadError: If the transaction was rolled back
        """
        if not mapping.columns:
            logger.warning("table_skipped_no_columns", table=mapping.target_table)
            return LoadedTable(
                outcome=TableOutcome(
                    table=mapping.target_table,
                    success=True,
                    skipped=True,
                    error=None,
                ),
                source_table=mapping.source_table,
            )

        try:
            with self.engine.begin() as conn:
                return self._load_in_transaction(conn, mapping, capture_identity)
        except (SQLAlchemyError, KeyError) as e:  # KeyError: unmapped staging column
            records_failed = self._safe_staged_count(mapping)
            logger.error(
                "table_load_failed",
                table=mapping.target_table,
                records_failed=records_failed,
                error=str(e),
            )
            raise TableLoadError(mapping.target_table, str(e), records_failed) from e

    def _load_in_transaction(
        self, conn: Connection, mapping: TableMapping, capture_identity: bool
    ) -> LoadedTable:
        if capture_identity:
            ensure_attachment_columns(conn, mapping.target_table)

        staging_table = self.staging.reflect(conn, mapping.source_table)
        key_column = self.staging.key_column(staging_table)
        target = Table(mapping.target_table, MetaData(), autoload_with=conn)

        key_mapping = mapping.column_for_source(key_column)
        key_target = key_mapping.target_column if key_mapping else None
        target_id_column = self._target_id_column(target, mapping)

        if self.config.load_strategy == LoadStrategy.TRUNCATE_LOAD:
            conn.execute(target.delete())
        elif self.config.load_strategy == LoadStrategy.MERGE and key_target:
            # Replace rows that are about to be re-inserted
            conn.execute(
                target.delete().where(
                    target.c[key_target].in_(select(staging_table.c[key_column]))
                )
            )

        source_columns = [staging_table.c[c.source_column] for c in mapping.columns]
        target_columns = [c.target_column for c in mapping.columns]
        insert = target.insert().from_select(target_columns, select(*source_columns))

        identifiable = (
            capture_identity
            and key_target is not None
            and target_id_column is not None
            and conn.dialect.insert_returning
        )
        pairs: tuple[tuple[object, object], ...] = ()
        if identifiable:
            rows = conn.execute(
                insert.returning(target.c[target_id_column], target.c[key_target])
            ).all()
            pairs = tuple((row[0], row[1]) for row in rows)
            inserted = len(rows)
        else:
            result = conn.execute(insert)
            inserted = result.rowcount if result.rowcount >= 0 else 0
            if capture_identity:
                logger.warning(
                    "table_has_no_identifiable_key",
                    table=mapping.target_table,
                    staging_key=key_column,
                )

        logger.info(
            "table_loaded",
            table=mapping.target_table,
            strategy=self.config.load_strategy.value,
            rows=inserted,
            identity_pairs=len(pairs),
        )
        return LoadedTable(
            outcome=TableOutcome(
                table=mapping.target_table, success=True, records_processed=inserted
            ),
            source_table=mapping.source_table,
            key_column=key_column if identifiable else None,
            target_id_column=target_id_column if identifiable else None,
            pairs=pairs,
        )

    @staticmethod
    def _target_id_column(target: Table, mapping: TableMapping) -> str | None:
        if mapping.target_id_column in target.c:
            return mapping.target_id_column
        primary_key = list(target.primary_key.columns)
        return primary_key[0].name if len(primary_key) == 1 else None

    def _safe_staged_count(self, mapping: TableMapping) -> int:
        try:
            return self.staged_count(mapping)
        except SQLAlchemyError as e:
            logger.warning("staged_count_failed", table=mapping.source_table, error=str(e))
            return 0


def load_tables(
    loader: TableLoader,
    mappings: list[TableMapping],
    config: PipelineConfig,
    capture_identity: bool = False,
) -> list[LoadedTable]:
    """
    Load table mappings in order.

    A rolled-back table becomes a failed outcome carrying its staged row
    count. In fail-fast mode loading stops after the first failed table,
    which is then the last element of the returned list.
    """
    loaded: list[LoadedTable] = []
    for mapping in mappings:
        try:
            item = loader.load(mapping, capture_identity=capture_identity)
        except TableLoadError as e:
            item = LoadedTable(
                outcome=TableOutcome(
                    table=mapping.target_table,
                    success=False,
                    records_failed=e.records_failed,
                    error=e.reason,
                ),
                source_table=mapping.source_table,
            )
        loaded.append(item)
        if not item.outcome.success and config.fail_fast:
            break
    return loaded
