"""Client for the attachment object store.

Uploads are multipart POSTs carrying the file plus the originating
document id, content type and size. The store answers with the public
location of the object in ``url`` (or ``fileUrl``).
"""

import httpx

from databridge.client.base_client import BaseAPIClient
from databridge.client.document_store import AttachmentRef
from databridge.client.exceptions import APIError, ConfigurationError
from databridge.config import ObjectStoreConfig
from databridge.utils.logging import get_logger

logger = get_logger(__name__)


class ObjectStoreClient(BaseAPIClient):
    """Async upload client for the target object store."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        custom_key: str | None = None,
        custom_key_header: str = "apiKey",
        upload_path: str = "/upload",
        timeout: int = 300,
        verify_ssl: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.custom_key = custom_key
        self.custom_key_header = custom_key_header
        self.upload_path = upload_path
        super().__init__(
            base_url=base_url,
            token=api_key,
            verify_ssl=verify_ssl,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_config(cls, config: ObjectStoreConfig) -> "ObjectStoreClient":
        """Create a client from engine configuration.

        Raises:
            ConfigurationError: If the URL or API key is missing
        """
        if not config.url or not config.api_key:
            raise ConfigurationError(
                "object_store.url and object_store.api_key are required to migrate attachments"
            )
        return cls(
            base_url=config.url,
            api_key=config.api_key,
            custom_key=config.custom_key,
            custom_key_header=config.custom_key_header,
            upload_path=config.upload_path,
            timeout=config.timeout,
            verify_ssl=config.verify_ssl,
        )

    def _build_headers(self) -> dict[str, str]:
        headers = super()._build_headers()
        if self.custom_key:
            headers[self.custom_key_header] = self.custom_key
        return headers

    async def upload(self, document_id: str, data: bytes, attachment: AttachmentRef) -> str:
        """Upload one attachment and return its location in the store.

        Args:
            document_id: Source document the attachment belongs to
            data: Attachment bytes
            attachment: Name and content type of the attachment

        Returns:
            URL of the stored object

        Raises:
            APIError: If the store rejects the upload or returns no URL
            NetworkError: For transport failures
        """
        body = await self.post(
            self.upload_path,
            files={"file": (attachment.name, data, attachment.content_type)},
            data={
                "documentId": document_id,
                "contentType": attachment.content_type,
                "size": str(len(data)),
            },
        )

        url = body.get("url") or body.get("fileUrl")
        if not url:
            raise APIError("Upload response did not include an object URL", response=body)

        logger.debug(
            "attachment_uploaded",
            document_id=document_id,
            attachment_name=attachment.name,
            size=len(data),
            url=url,
        )
        return url
