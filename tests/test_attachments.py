"""Tests for attachment migration, alone and inside the fact load stage."""

import json

import pytest
from conftest import build_sqlite, query

from databridge.client.document_store import AttachmentRef, SourceDocument
from databridge.client.exceptions import AttachmentMigrationError, NetworkError
from databridge.config import (
    AttachmentConfig,
    ConnectionConfig,
    DatabaseEngine,
    ErrorHandling,
    PipelineConfig,
    StagingConfig,
)
from databridge.migration.attachments import NOT_FOUND_MESSAGE, AttachmentMigrator
from databridge.migration.catalog import (
    ColumnMapping,
    InMemoryProjectCatalog,
    ProjectDefinition,
    TableKind,
    TableMapping,
)
from databridge.migration.identity import IdentityRecord
from databridge.migration.stages import StageContext, extract_to_staging, load_facts


class FakeSource:
    """In-memory document store."""

    def __init__(self, documents=None, attachments=None):
        self.documents = documents or []
        self.attachments = attachments or {}
        self.downloads: list[tuple[str, str]] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None

    def attachment_url(self, document_id, attachment_name):
        return f"http://couch:5984/sales/{document_id}/{attachment_name}"

    async def list_documents(self, prefix=None):
        return [d for d in self.documents if prefix is None or d["_id"].startswith(prefix)]

    async def list_documents_with_attachments(self):
        return [
            SourceDocument(document_id=doc_id, attachments=tuple(refs))
            for doc_id, refs in self.attachments.items()
        ]

    async def download_attachment(self, document_id, attachment_name):
        self.downloads.append((document_id, attachment_name))
        return f"{document_id}/{attachment_name}".encode()


class FakeTarget:
    """Object store whose uploads fail a configurable number of times."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.uploads: list[tuple[str, str, bytes]] = []
        self.closed = False

    async def upload(self, document_id, data, attachment):
        if self.failures > 0:
            self.failures -= 1
            raise NetworkError("connection reset")
        self.uploads.append((document_id, attachment.name, data))
        return f"https://objects.example/{document_id}/{attachment.name}"

    async def close(self):
        self.closed = True


class Linker:
    def __init__(self):
        self.calls = []

    def __call__(self, identity, url, metadata):
        self.calls.append((identity.target_id, url, metadata))


class RecordingSleep:
    def __init__(self):
        self.waits: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.waits.append(seconds)


def identity(document_id: str, target_id: str = "41") -> IdentityRecord:
    return IdentityRecord(
        table_name="fact_invoice",
        source_id=document_id.split("_", 1)[1],
        target_id=target_id,
        target_id_column="id",
        source_document_key=document_id,
    )


def refs(*names: str) -> tuple[AttachmentRef, ...]:
    return tuple(AttachmentRef(name=name, content_type="application/pdf", size=7) for name in names)


def make_migrator(state, source, target, linker=None, sleep=None, **config):
    return AttachmentMigrator(
        source,
        target,
        state,
        linker or Linker(),
        config=AttachmentConfig(**config),
        sleep=sleep or RecordingSleep(),
    )


class TestAttachmentMigrator:
    async def test_missing_identity_fails_without_network(self, state):
        source = FakeSource()
        target = FakeTarget()
        migrator = make_migrator(state, source, target)
        document = SourceDocument("invoice_9", refs("a.pdf", "b.pdf", "c.pdf"))

        summary = await migrator.migrate("e1", "p1", [document], identity_map={})

        assert summary.migrated == 0
        assert summary.failed == 3
        assert source.downloads == []
        assert target.uploads == []
        rows = state.list_attachments("e1", status="failed")
        assert [row.attachment_name for row in rows] == ["a.pdf", "b.pdf", "c.pdf"]
        assert all(row.error_message.startswith("not found") for row in rows)
        assert all(row.target_url is None for row in rows)

    async def test_success_links_target_row(self, state):
        source = FakeSource()
        target = FakeTarget()
        linker = Linker()
        migrator = make_migrator(state, source, target, linker=linker)
        document = SourceDocument("invoice_1", refs("a.pdf"))

        summary = await migrator.migrate("e1", "p1", [document], {"invoice_1": identity("invoice_1")})

        assert summary.migrated == 1
        assert summary.failed == 0
        assert target.uploads == [("invoice_1", "a.pdf", b"invoice_1/a.pdf")]
        target_id, url, metadata = linker.calls[0]
        assert target_id == "41"
        assert url == "https://objects.example/invoice_1/a.pdf"
        assert metadata["source_document_id"] == "invoice_1"

        (row,) = state.list_attachments("e1")
        assert row.status == "success"
        assert row.target_record_id == "41"
        assert row.target_url == url
        assert row.source_url == "http://couch:5984/sales/invoice_1/a.pdf"
        assert row.migrated_at is not None

    async def test_transient_failures_are_retried(self, state):
        target = FakeTarget(failures=2)
        sleep = RecordingSleep()
        migrator = make_migrator(state, FakeSource(), target, sleep=sleep, max_retries=3)
        document = SourceDocument("invoice_1", refs("a.pdf"))

        summary = await migrator.migrate("e1", "p1", [document], {"invoice_1": identity("invoice_1")})

        assert summary.migrated == 1
        assert sleep.waits == [2.0, 4.0]
        assert state.attachment_stats("e1") == {"total": 1, "success": 1, "failed": 0, "pending": 0}

    async def test_exhausted_retries_record_failure(self, state):
        target = FakeTarget(failures=10)
        migrator = make_migrator(state, FakeSource(), target, max_retries=2)
        document = SourceDocument("invoice_1", refs("a.pdf"))

        summary = await migrator.migrate("e1", "p1", [document], {"invoice_1": identity("invoice_1")})

        assert summary.failed == 1
        (row,) = state.list_attachments("e1")
        assert row.status == "failed"
        assert row.error_message == "connection reset"
        assert row.target_url is None

    async def test_fail_fast_raises_after_recording(self, state):
        migrator = make_migrator(state, FakeSource(), FakeTarget())
        documents = [
            SourceDocument("invoice_9", refs("a.pdf", "b.pdf")),
            SourceDocument("invoice_1", refs("c.pdf")),
        ]

        with pytest.raises(AttachmentMigrationError) as excinfo:
            await migrator.migrate(
                "e1",
                "p1",
                documents,
                {"invoice_1": identity("invoice_1")},
                error_handling=ErrorHandling.FAIL_FAST,
            )

        assert excinfo.value.document_id == "invoice_9"
        assert state.attachment_stats("e1")["failed"] == 2
        assert state.attachment_stats("e1")["success"] == 0

    async def test_chunks_follow_concurrency(self, state):
        target = FakeTarget()
        migrator = make_migrator(state, FakeSource(), target, concurrency=2)
        documents = [SourceDocument(f"invoice_{i}", refs("a.pdf")) for i in range(5)]
        identities = {d.document_id: identity(d.document_id, str(i)) for i, d in enumerate(documents)}

        summary = await migrator.migrate("e1", "p1", documents, identities)

        assert summary.migrated == 5
        assert len(target.uploads) == 5


class TestDocumentStoreProject:
    @pytest.fixture
    def source(self):
        return FakeSource(
            documents=[
                {"_id": "invoice_1", "_rev": "1-a", "amount": "10.50", "lines": [1, 2],
                 "_attachments": {"scan.pdf": {"content_type": "application/pdf", "length": 7}}},
                {"_id": "invoice_2", "_rev": "1-b", "amount": "3.00"},
                {"_id": "customer_1", "_rev": "1-c", "name": "ada"},
            ],
            attachments={
                "invoice_1": refs("scan.pdf"),
                "invoice_7": refs("orphan.pdf"),
                "customer_1": refs("photo.jpg"),
            },
        )

    @pytest.fixture
    def document_project(self, tmp_path) -> ProjectDefinition:
        target = build_sqlite(
            tmp_path / "docs_target.db",
            [
                "CREATE TABLE fact_invoice ("
                " id INTEGER PRIMARY KEY AUTOINCREMENT, source_id TEXT, amount TEXT, lines TEXT)"
            ],
        )
        return ProjectDefinition(
            project_id="docs",
            name="Invoices",
            source=ConnectionConfig(
                engine=DatabaseEngine.COUCHDB, url="http://couch:5984", database="sales"
            ),
            target=target,
            tables=[
                TableMapping(
                    source_table="Invoice",
                    target_table="fact_invoice",
                    kind=TableKind.FACT,
                    columns=[
                        ColumnMapping(source_column="source_id", target_column="source_id"),
                        ColumnMapping(source_column="amount", target_column="amount"),
                        ColumnMapping(source_column="lines", target_column="lines"),
                    ],
                )
            ],
        )

    def context(self, state, project, source, target) -> StageContext:
        return StageContext(
            state=state,
            catalog=InMemoryProjectCatalog([project]),
            document_store_factory=lambda connection: source,
            object_store_factory=lambda: target,
            sleep=RecordingSleep(),
        )

    def config(self, error_handling=ErrorHandling.CONTINUE_ON_ERROR) -> PipelineConfig:
        return PipelineConfig(
            batch_size=10, error_handling=error_handling, staging=StagingConfig(table_prefix="stg_")
        )

    async def test_documents_are_loaded_and_attachments_linked(
        self, state, document_project, source
    ):
        target = FakeTarget()
        ctx = self.context(state, document_project, source, target)

        extracted = await extract_to_staging(ctx, "docs", "e1", self.config())
        result = await load_facts(ctx, "docs", "e1", self.config())

        assert extracted.records_processed == 2
        assert result.success
        assert result.records_processed == 2
        assert result.metadata["identity_mappings_created"] == 2
        assert result.metadata["attachments_migrated"] == 1
        assert result.metadata["attachments_failed"] == 2
        assert target.closed
        assert ("customer_1", "photo.jpg") not in source.downloads

        rows = query(
            document_project.target,
            "SELECT source_id, amount, lines, attachment_url, attachment_metadata"
            " FROM fact_invoice ORDER BY source_id",
        )
        assert rows[0][:4] == (
            "1",
            "10.50",
            "[1, 2]",
            "https://objects.example/invoice_1/scan.pdf",
        )
        assert json.loads(rows[0][4])["attachment_name"] == "scan.pdf"
        assert rows[1][3] is None

        failed = state.list_attachments("e1", status="failed")
        assert [row.document_id for row in failed] == ["invoice_7", "customer_1"]
        assert failed[1].error_message == NOT_FOUND_MESSAGE.format(document_id="customer_1")

    async def test_fail_fast_attachment_error_fails_stage(self, state, document_project, source):
        target = FakeTarget()
        ctx = self.context(state, document_project, source, target)
        config = self.config(ErrorHandling.FAIL_FAST)
        await extract_to_staging(ctx, "docs", "e1", config)

        result = await load_facts(ctx, "docs", "e1", config)

        assert not result.success
        assert "invoice_7/orphan.pdf" in result.error
        assert result.metadata["tables_loaded"] == 1
        assert result.metadata["attachments_failed"] == 1
        assert target.closed
