"""Client for CouchDB-style document stores.

Reads documents through ``_all_docs`` and downloads binary attachments.
Documents follow the ``<type>_<id>`` naming convention, so listing by
prefix returns every document of one source table.
"""

import json
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

import httpx

from databridge.client.base_client import BaseAPIClient
from databridge.config import ConnectionConfig
from databridge.utils.logging import get_logger
from databridge.utils.retry import retry_on_network_error

logger = get_logger(__name__)


@dataclass(frozen=True)
class AttachmentRef:
    """Attachment stub as listed in a document's ``_attachments``."""

    name: str
    content_type: str = "application/octet-stream"
    size: int = 0


@dataclass(frozen=True)
class SourceDocument:
    """A source document that carries one or more attachments."""

    document_id: str
    attachments: tuple[AttachmentRef, ...] = field(default_factory=tuple)


class DocumentStoreClient(BaseAPIClient):
    """Async client for one database of a CouchDB-compatible server."""

    def __init__(
        self,
        base_url: str,
        database: str,
        username: str | None = None,
        password: str | None = None,
        verify_ssl: bool = True,
        timeout: int = 30,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        auth = (username, password or "") if username else None
        super().__init__(
            base_url=base_url,
            auth=auth,
            verify_ssl=verify_ssl,
            timeout=timeout,
            transport=transport,
        )
        self.database = database

    @classmethod
    def from_connection(cls, connection: ConnectionConfig) -> "DocumentStoreClient":
        """Create a client from a project connection descriptor."""
        return cls(
            base_url=connection.http_base_url(),
            database=connection.database,
            username=connection.username,
            password=connection.password,
            verify_ssl=connection.verify_ssl,
            timeout=connection.timeout,
        )

    def _doc_path(self, document_id: str) -> str:
        return f"{quote(self.database, safe='')}/{quote(document_id, safe='')}"

    def attachment_url(self, document_id: str, attachment_name: str) -> str:
        """Absolute URL of an attachment in the source store."""
        return self._build_url(f"{self._doc_path(document_id)}/{quote(attachment_name, safe='')}")

    @retry_on_network_error(max_attempts=3)
    async def list_documents(self, prefix: str | None = None) -> list[dict[str, Any]]:
        """List documents with their bodies, optionally restricted to an id prefix.

        Design documents (``_design/...``) are never returned.

        Args:
            prefix: Only return documents whose id starts with this string

        Returns:
            Document bodies including ``_id`` and ``_attachments`` stubs
        """
        params: dict[str, str] = {"include_docs": "true"}
        if prefix:
            params["startkey"] = json.dumps(prefix)
            params["endkey"] = json.dumps(prefix + "\ufff0")

        data = await self.get(f"{quote(self.database, safe='')}/_all_docs", params=params)
        documents = [
            row["doc"]
            for row in data.get("rows", [])
            if row.get("doc") and not str(row.get("id", "")).startswith("_design/")
        ]
        logger.debug(
            "documents_listed", database=self.database, prefix=prefix, count=len(documents)
        )
        return documents

    async def list_documents_with_attachments(self) -> list[SourceDocument]:
        """List every document that has at least one attachment."""
        documents = await self.list_documents()
        result = []
        for doc in documents:
            stubs = doc.get("_attachments") or {}
            if not stubs:
                continue
            refs = tuple(
                AttachmentRef(
                    name=name,
                    content_type=stub.get("content_type", "application/octet-stream"),
                    size=int(stub.get("length", 0)),
                )
                for name, stub in stubs.items()
            )
            result.append(SourceDocument(document_id=doc["_id"], attachments=refs))

        logger.info(
            "attachments_discovered",
            database=self.database,
            documents=len(result),
            attachments=sum(len(d.attachments) for d in result),
        )
        return result

    async def download_attachment(self, document_id: str, attachment_name: str) -> bytes:
        """Download the raw bytes of one attachment."""
        response = await self.send(
            "GET",
            f"{self._doc_path(document_id)}/{quote(attachment_name, safe='')}",
            headers={"Accept": "*/*"},
        )
        return response.content
