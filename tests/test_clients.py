"""Tests for the document store and object store HTTP clients."""

import json

import httpx
import pytest
import respx

from databridge.client.document_store import AttachmentRef, DocumentStoreClient
from databridge.client.exceptions import (
    APIError,
    AuthenticationError,
    ConfigurationError,
    NetworkError,
    NotFoundError,
    RateLimitError,
    ResourceNotFoundError,
    ServerError,
)
from databridge.client.object_store import ObjectStoreClient
from databridge.config import ConnectionConfig, DatabaseEngine, ObjectStoreConfig

COUCH = "http://couch:5984"
OBJECTS = "https://objects.example"


@pytest.fixture
async def couch():
    client = DocumentStoreClient(base_url=COUCH, database="sales", username="reader", password="pw")
    yield client
    await client.close()


@pytest.fixture
async def objects():
    client = ObjectStoreClient(base_url=OBJECTS, api_key="token-1", custom_key="extra-key")
    yield client
    await client.close()


ALL_DOCS = {
    "rows": [
        {"id": "_design/views", "doc": {"_id": "_design/views"}},
        {
            "id": "invoice_1",
            "doc": {
                "_id": "invoice_1",
                "amount": "10",
                "_attachments": {
                    "scan.pdf": {"content_type": "application/pdf", "length": 12, "stub": True}
                },
            },
        },
        {"id": "invoice_2", "doc": {"_id": "invoice_2", "amount": "3"}},
    ]
}


class TestDocumentStoreClient:
    @respx.mock
    async def test_list_documents_by_prefix(self, couch):
        route = respx.get(f"{COUCH}/sales/_all_docs").mock(
            return_value=httpx.Response(200, json=ALL_DOCS)
        )

        documents = await couch.list_documents("invoice_")

        assert [d["_id"] for d in documents] == ["invoice_1", "invoice_2"]
        params = route.calls.last.request.url.params
        assert params["include_docs"] == "true"
        assert json.loads(params["startkey"]) == "invoice_"
        assert json.loads(params["endkey"]) == "invoice_\ufff0"
        assert route.calls.last.request.headers["Authorization"].startswith("Basic ")

    @respx.mock
    async def test_documents_with_attachments(self, couch):
        respx.get(f"{COUCH}/sales/_all_docs").mock(return_value=httpx.Response(200, json=ALL_DOCS))

        documents = await couch.list_documents_with_attachments()

        assert len(documents) == 1
        assert documents[0].document_id == "invoice_1"
        assert documents[0].attachments == (
            AttachmentRef(name="scan.pdf", content_type="application/pdf", size=12),
        )

    @respx.mock
    async def test_download_attachment(self, couch):
        respx.get(f"{COUCH}/sales/invoice_1/scan%20copy.pdf").mock(
            return_value=httpx.Response(200, content=b"%PDF-1.4")
        )

        assert await couch.download_attachment("invoice_1", "scan copy.pdf") == b"%PDF-1.4"

    async def test_attachment_url(self, couch):
        assert couch.attachment_url("invoice_1", "a b.pdf") == f"{COUCH}/sales/invoice_1/a%20b.pdf"

    @respx.mock
    async def test_missing_attachment(self, couch):
        respx.get(f"{COUCH}/sales/invoice_1/gone.pdf").mock(
            return_value=httpx.Response(404, json={"error": "not_found", "reason": "missing"})
        )

        with pytest.raises(ResourceNotFoundError) as excinfo:
            await couch.download_attachment("invoice_1", "gone.pdf")

        assert isinstance(excinfo.value, NotFoundError)
        assert excinfo.value.status_code == 404

    @respx.mock
    async def test_unauthorized(self, couch):
        respx.get(f"{COUCH}/sales/_all_docs").mock(
            return_value=httpx.Response(401, json={"error": "unauthorized"})
        )

        with pytest.raises(AuthenticationError):
            await couch.list_documents()

    async def test_from_connection(self):
        client = DocumentStoreClient.from_connection(
            ConnectionConfig(engine=DatabaseEngine.COUCHDB, host="couch", database="sales")
        )
        try:
            assert client.base_url == COUCH
            assert client.database == "sales"
        finally:
            await client.close()


class TestObjectStoreClient:
    @respx.mock
    async def test_upload_returns_url(self, objects):
        route = respx.post(f"{OBJECTS}/upload").mock(
            return_value=httpx.Response(200, json={"url": f"{OBJECTS}/o/1"})
        )

        url = await objects.upload(
            "invoice_1", b"data", AttachmentRef(name="scan.pdf", content_type="application/pdf")
        )

        assert url == f"{OBJECTS}/o/1"
        request = route.calls.last.request
        assert request.headers["Authorization"] == "Bearer token-1"
        assert request.headers["apiKey"] == "extra-key"
        body = request.content
        assert b'name="documentId"' in body
        assert b"invoice_1" in body
        assert b'filename="scan.pdf"' in body

    @respx.mock
    async def test_file_url_fallback(self, objects):
        respx.post(f"{OBJECTS}/upload").mock(
            return_value=httpx.Response(201, json={"fileUrl": f"{OBJECTS}/o/2"})
        )

        assert await objects.upload("d", b"x", AttachmentRef(name="a")) == f"{OBJECTS}/o/2"

    @respx.mock
    async def test_missing_url_is_an_error(self, objects):
        respx.post(f"{OBJECTS}/upload").mock(return_value=httpx.Response(200, json={"ok": True}))

        with pytest.raises(APIError, match="did not include an object URL"):
            await objects.upload("d", b"x", AttachmentRef(name="a"))

    @respx.mock
    async def test_rate_limited(self, objects):
        respx.post(f"{OBJECTS}/upload").mock(
            return_value=httpx.Response(429, headers={"Retry-After": "3"}, json={})
        )

        with pytest.raises(RateLimitError) as excinfo:
            await objects.upload("d", b"x", AttachmentRef(name="a"))

        assert excinfo.value.retry_after == 3

    @respx.mock
    async def test_server_error_reason(self, objects):
        respx.post(f"{OBJECTS}/upload").mock(
            return_value=httpx.Response(503, json={"message": "maintenance"})
        )

        with pytest.raises(ServerError, match="Server error: maintenance") as excinfo:
            await objects.upload("d", b"x", AttachmentRef(name="a"))

        assert excinfo.value.status_code == 503

    @respx.mock
    async def test_transport_failure(self, objects):
        respx.post(f"{OBJECTS}/upload").mock(side_effect=httpx.ConnectError("refused"))

        with pytest.raises(NetworkError, match="refused"):
            await objects.upload("d", b"x", AttachmentRef(name="a"))

    def test_from_config_requires_credentials(self):
        with pytest.raises(ConfigurationError):
            ObjectStoreClient.from_config(ObjectStoreConfig(url=OBJECTS))

    async def test_from_config(self):
        client = ObjectStoreClient.from_config(
            ObjectStoreConfig(url=OBJECTS, api_key="k", upload_path="/v2/files")
        )
        try:
            assert client.upload_path == "/v2/files"
            assert client.client.headers["Authorization"] == "Bearer k"
        finally:
            await client.close()
