"""
Project catalog: connections and table mappings resolved by project id.

The engine does not manage projects itself. It asks a ProjectCatalog for the
source and target connections of a project and for its ordered table and
column mappings. A YAML-backed catalog is provided for the CLI and an
in-memory one for embedding.
"""

from enum import Enum
from pathlib import Path
from typing import Any, Protocol

import yaml
from pydantic import BaseModel, Field

from databridge.client.exceptions import ConfigurationError, NotFoundError
from databridge.config import ConnectionConfig, expand_env_vars
from databridge.utils.logging import get_logger, sanitize_payload

logger = get_logger(__name__)


class TableKind(str, Enum):
    """Whether a table is loaded by the dimension or the fact stage."""

    DIMENSION = "dimension"
    FACT = "fact"


class ColumnMapping(BaseModel):
    """Source column to target column, with an optional transformation."""

    source_column: str
    target_column: str
    transformation_id: str | None = None
    transformation_config: dict[str, Any] = Field(default_factory=dict)
    is_nullable: bool = True
    default_value: str | None = None


class TableMapping(BaseModel):
    """Source table to target table mapping."""

    source_table: str
    target_table: str
    mapping_order: int = Field(default=0, description="Load order within its stage")
    kind: TableKind = TableKind.FACT
    is_active: bool = True
    target_id_column: str = Field(default="id", description="Primary key of the target table")
    columns: list[ColumnMapping] = Field(default_factory=list)

    def column_for_source(self, source_column: str) -> ColumnMapping | None:
        for column in self.columns:
            if column.source_column == source_column:
                return column
        return None


class ProjectDefinition(BaseModel):
    """Everything the engine needs to know about a project."""

    project_id: str
    name: str
    source: ConnectionConfig
    target: ConnectionConfig
    tables: list[TableMapping] = Field(default_factory=list)

    def ordered_tables(self, kind: TableKind | None = None) -> list[TableMapping]:
        """Active table mappings in mapping order, optionally of one kind."""
        tables = [t for t in self.tables if t.is_active and (kind is None or t.kind == kind)]
        return sorted(tables, key=lambda t: t.mapping_order)


class ProjectCatalog(Protocol):
    """Resolves project definitions by id."""

    def get_project(self, project_id: str) -> ProjectDefinition: ...


class InMemoryProjectCatalog:
    """Catalog backed by a dictionary of project definitions."""

    def __init__(self, projects: list[ProjectDefinition] | None = None):
        self._projects = {p.project_id: p for p in projects or []}

    def add(self, project: ProjectDefinition) -> None:
        self._projects[project.project_id] = project

    def get_project(self, project_id: str) -> ProjectDefinition:
        try:
            return self._projects[project_id]
        except KeyError:
            raise NotFoundError(f"Unknown project: {project_id}") from None


class YamlProjectCatalog(InMemoryProjectCatalog):
    """
    Catalog loaded from a YAML file.

    Layout::

        projects:
          sales:
            name: Sales migration
            source: {engine: couchdb, url: "http://couch:5984", database: sales}
            target: {engine: postgresql, url: "${TARGET_DB_URL}", database: dw}
            tables:
              - source_table: Customer
                target_table: dim_customer
                kind: dimension
                columns: [...]

    ``${VAR}`` references are expanded from the environment.
    """

    def __init__(self, path: str | Path):
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Catalog file not found: {path}")

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        try:
            raw_projects = expand_env_vars(data).get("projects") or {}
            projects = [
                ProjectDefinition(project_id=str(project_id), **definition)
                for project_id, definition in raw_projects.items()
            ]
        except ValueError as e:
            raise ConfigurationError(f"Invalid catalog file {path}: {e}") from e

        super().__init__(projects)
        logger.debug(
            "catalog_loaded",
            path=str(path),
            projects=[
                sanitize_payload({"id": p.project_id, "source": p.source.model_dump()})
                for p in projects
            ],
        )
