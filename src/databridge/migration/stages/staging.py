"""
Staging area inside the target database.

Extracted rows land in ``<schema>.<prefix><source table>__raw`` and are
copied into the working table ``<schema>.<prefix><source table>``, which is
what the transform stage rewrites and the load stages read. The raw copy is
never modified after extraction, so transforming again starts from the
extracted values. Both tables keep the column order of the source, so their
leading column is the source's leading (key) column.
"""

from collections.abc import Iterable

from sqlalchemy import Column, Connection, MetaData, Table, Text, delete, inspect, select
from sqlalchemy.schema import CreateSchema
from sqlalchemy.types import TypeEngine

from databridge.config import StagingConfig
from databridge.utils.logging import get_logger

logger = get_logger(__name__)

RAW_SUFFIX = "__raw"


def generic_type(column_type: TypeEngine) -> TypeEngine:
    """Dialect-neutral version of a reflected type (Text when there is none)."""
    try:
        return column_type.as_generic()
    except NotImplementedError:
        return Text()


class StagingArea:
    """Names, creates and reflects staging tables."""

    def __init__(self, config: StagingConfig, dialect_name: str):
        self.config = config
        self.dialect_name = dialect_name
        # SQLite has no schemas beyond attached databases
        if dialect_name == "sqlite":
            self.schema = None
        else:
            self.schema = config.schema_name or None

    def table_name(self, source_table: str) -> str:
        return f"{self.config.table_prefix}{source_table.lower()}"

    def raw_table_name(self, source_table: str) -> str:
        return f"{self.table_name(source_table)}{RAW_SUFFIX}"

    def qualified_name(self, source_table: str) -> str:
        return self._qualify(self.table_name(source_table))

    def _qualify(self, name: str) -> str:
        return f"{self.schema}.{name}" if self.schema else name

    def ensure_schema(self, conn: Connection) -> None:
        if self.schema:
            conn.execute(CreateSchema(self.schema, if_not_exists=True))

    def exists(self, conn: Connection, source_table: str) -> bool:
        return inspect(conn).has_table(self.table_name(source_table), schema=self.schema)

    def define(
        self, source_table: str, columns: Iterable[tuple[str, TypeEngine]], raw: bool = False
    ) -> Table:
        """Build (but do not create) a staging table with the given columns."""
        name = self.raw_table_name(source_table) if raw else self.table_name(source_table)
        return Table(
            name,
            MetaData(),
            *(Column(column, column_type, nullable=True) for column, column_type in columns),
            schema=self.schema,
        )

    def recreate(
        self, conn: Connection, source_table: str, columns: Iterable[tuple[str, TypeEngine]]
    ) -> Table:
        """Drop and create the raw and working tables of a source table.

        Returns:
            The raw table, which extraction fills
        """
        columns = list(columns)
        tables = [self.define(source_table, columns, raw=True), self.define(source_table, columns)]
        for table in tables:
            table.drop(conn, checkfirst=True)
            table.create(conn)
        logger.debug("staging_table_created", table=self.qualified_name(source_table))
        return tables[0]

    def reflect(self, conn: Connection, source_table: str) -> Table:
        """Working table of a source table."""
        return Table(
            self.table_name(source_table), MetaData(), schema=self.schema, autoload_with=conn
        )

    def reflect_raw(self, conn: Connection, source_table: str) -> Table:
        return Table(
            self.raw_table_name(source_table), MetaData(), schema=self.schema, autoload_with=conn
        )

    def reset_working(self, conn: Connection, source_table: str) -> Table:
        """Replace the working table's rows with the extracted (raw) rows."""
        raw = self.reflect_raw(conn, source_table)
        working = self.reflect(conn, source_table)
        names = [column.name for column in raw.columns]
        conn.execute(delete(working))
        conn.execute(working.insert().from_select(names, select(*raw.columns)))
        return working

    def drop(self, conn: Connection, source_table: str) -> int:
        """Drop the working and raw tables; returns how many existed."""
        inspector = inspect(conn)
        dropped = 0
        for name in (self.table_name(source_table), self.raw_table_name(source_table)):
            if not inspector.has_table(name, schema=self.schema):
                continue
            Table(name, MetaData(), schema=self.schema, autoload_with=conn).drop(conn)
            logger.info("staging_table_dropped", table=self._qualify(name))
            dropped += 1
        return dropped

    @staticmethod
    def key_column(table: Table) -> str:
        """Leading column of a staging table (first by ordinal position)."""
        return next(iter(table.columns)).name
