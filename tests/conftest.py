"""Shared fixtures: SQLite state store, source/target databases and a catalog."""

from pathlib import Path

import pytest
from sqlalchemy import create_engine, text

from databridge.config import (
    ConnectionConfig,
    DatabaseEngine,
    ErrorHandling,
    PipelineConfig,
    StagingConfig,
    StateConfig,
)
from databridge.migration.catalog import (
    ColumnMapping,
    InMemoryProjectCatalog,
    ProjectDefinition,
    TableKind,
    TableMapping,
)
from databridge.migration.stages import StageContext
from databridge.migration.state import ExecutionStateStore

SOURCE_DDL = [
    "CREATE TABLE Customer (id INTEGER PRIMARY KEY, name TEXT, tier TEXT)",
    "CREATE TABLE Orders (order_id INTEGER PRIMARY KEY, customer_id INTEGER, amount REAL)",
    "INSERT INTO Customer VALUES (1, 'ada', 'gold'), (2, 'grace', NULL), (3, 'linus', 'silver')",
    "INSERT INTO Orders VALUES (10, 1, 99.5), (11, 2, 12.0), (12, 3, 7.25)",
]

TARGET_DDL = [
    "CREATE TABLE dim_customer ("
    " id INTEGER PRIMARY KEY AUTOINCREMENT,"
    " source_customer_id INTEGER,"
    " name TEXT NOT NULL,"
    " tier TEXT)",
    "CREATE TABLE fact_orders ("
    " id INTEGER PRIMARY KEY AUTOINCREMENT,"
    " source_order_id INTEGER,"
    " customer_id INTEGER,"
    " amount NUMERIC NOT NULL)",
]


def build_sqlite(path: Path, statements: list[str]) -> ConnectionConfig:
    """Create a SQLite database file and return its connection descriptor."""
    engine = create_engine(f"sqlite:///{path}")
    with engine.begin() as conn:
        for statement in statements:
            conn.execute(text(statement))
    engine.dispose()
    return ConnectionConfig(engine=DatabaseEngine.SQLITE, database=str(path))


def query(connection: ConnectionConfig, sql: str) -> list[tuple]:
    engine = create_engine(f"sqlite:///{connection.database}")
    try:
        with engine.connect() as conn:
            return [tuple(row) for row in conn.execute(text(sql))]
    finally:
        engine.dispose()


def sales_tables() -> list[TableMapping]:
    return [
        TableMapping(
            source_table="Customer",
            target_table="dim_customer",
            mapping_order=1,
            kind=TableKind.DIMENSION,
            columns=[
                ColumnMapping(source_column="id", target_column="source_customer_id"),
                ColumnMapping(
                    source_column="name",
                    target_column="name",
                    transformation_id="uppercase",
                    is_nullable=False,
                ),
                ColumnMapping(source_column="tier", target_column="tier", default_value="standard"),
            ],
        ),
        TableMapping(
            source_table="Orders",
            target_table="fact_orders",
            mapping_order=2,
            kind=TableKind.FACT,
            columns=[
                ColumnMapping(source_column="order_id", target_column="source_order_id"),
                ColumnMapping(source_column="customer_id", target_column="customer_id"),
                ColumnMapping(source_column="amount", target_column="amount", is_nullable=False),
            ],
        ),
    ]


@pytest.fixture
def state(tmp_path):
    store = ExecutionStateStore(StateConfig(db_path=str(tmp_path / "state.db")))
    yield store
    store.close()


@pytest.fixture
def source_db(tmp_path) -> ConnectionConfig:
    return build_sqlite(tmp_path / "source.db", SOURCE_DDL)


@pytest.fixture
def target_db(tmp_path) -> ConnectionConfig:
    return build_sqlite(tmp_path / "target.db", TARGET_DDL)


@pytest.fixture
def project(source_db, target_db) -> ProjectDefinition:
    return ProjectDefinition(
        project_id="p1",
        name="Sales",
        source=source_db,
        target=target_db,
        tables=sales_tables(),
    )


@pytest.fixture
def catalog(project) -> InMemoryProjectCatalog:
    return InMemoryProjectCatalog([project])


@pytest.fixture
def stage_context(state, catalog) -> StageContext:
    async def no_sleep(seconds: float) -> None:
        return None

    return StageContext(state=state, catalog=catalog, sleep=no_sleep)


@pytest.fixture
def pipeline_config() -> PipelineConfig:
    return PipelineConfig(
        batch_size=2,
        error_handling=ErrorHandling.FAIL_FAST,
        staging=StagingConfig(table_prefix="stg_"),
        retry_attempts=1,
        retry_delay_ms=1,
    )
