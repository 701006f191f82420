"""
Attachment migration subsystem.

Moves binary attachments of source documents into the target object store.
Attachments are processed in fixed-size chunks of concurrent transfers. Each
transfer (download + upload) is retried with exponential backoff, and every
attachment ends with exactly one terminal row in the state store.
"""

import asyncio
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from tenacity import RetryCallState

from databridge.client.document_store import AttachmentRef, SourceDocument
from databridge.client.exceptions import AttachmentMigrationError
from databridge.config import AttachmentConfig, ErrorHandling
from databridge.migration.identity import IdentityRecord
from databridge.migration.state import AttachmentOutcome, ExecutionStateStore
from databridge.utils.logging import get_logger
from databridge.utils.retry import exponential_retrying

logger = get_logger(__name__)

NOT_FOUND_MESSAGE = "not found: no identity mapping for document {document_id}"


class AttachmentSource(Protocol):
    def attachment_url(self, document_id: str, attachment_name: str) -> str: ...

    async def download_attachment(self, document_id: str, attachment_name: str) -> bytes: ...


class AttachmentTarget(Protocol):
    async def upload(self, document_id: str, data: bytes, attachment: AttachmentRef) -> str: ...


# Links a migrated attachment to its target row: (identity, url, metadata)
RowLinker = Callable[[IdentityRecord, str, dict[str, Any]], None]


@dataclass(frozen=True)
class AttachmentMigrationSummary:
    """Counts of one subsystem call, plus the individual outcomes."""

    migrated: int
    failed: int
    outcomes: tuple[AttachmentOutcome, ...] = ()

    @property
    def total(self) -> int:
        return self.migrated + self.failed


@dataclass(frozen=True)
class _Transfer:
    document: SourceDocument
    attachment: AttachmentRef
    identity: IdentityRecord


class AttachmentMigrator:
    """
    Migrates attachments of source documents to the object store.

    Args:
        source: Document store client (download side)
        target: Object store client (upload side)
        state: State store receiving one row per attachment
        link_target_row: Callable updating the target row with the new URL
        config: Chunk size, attempts and backoff base
        sleep: Coroutine used between retries (injectable for tests)
    """

    def __init__(
        self,
        source: AttachmentSource,
        target: AttachmentTarget,
        state: ExecutionStateStore,
        link_target_row: RowLinker,
        config: AttachmentConfig | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ):
        self.source = source
        self.target = target
        self.state = state
        self.link_target_row = link_target_row
        self.config = config or AttachmentConfig()
        self._sleep = sleep

    async def migrate(
        self,
        execution_id: str,
        project_id: str,
        source_docs: Sequence[SourceDocument],
        identity_map: Mapping[str, IdentityRecord],
        error_handling: ErrorHandling = ErrorHandling.CONTINUE_ON_ERROR,
    ) -> AttachmentMigrationSummary:
        """
        Migrate every attachment of the given documents.

        Documents missing from ``identity_map`` fail all of their attachments
        with a not-found reason and no network I/O. In fail-fast mode the
        first failure is raised after the rows of the current chunk (or of
        the unmapped document) have been written.

        Args:
            execution_id: Execution the rows belong to
            project_id: Project the execution belongs to
            source_docs: Documents with their attachment stubs
            identity_map: Target row per source document id
            error_handling: fail-fast or continue-on-error

        Returns:
            Summary with migrated and failed counts

        Raises:
            AttachmentMigrationError: On the first failure in fail-fast mode
        """
        fail_fast = error_handling == ErrorHandling.FAIL_FAST
        outcomes: list[AttachmentOutcome] = []
        transfers: list[_Transfer] = []

        for document in source_docs:
            identity = identity_map.get(document.document_id)
            if identity is not None:
                transfers.extend(_Transfer(document, ref, identity) for ref in document.attachments)
                continue

            message = NOT_FOUND_MESSAGE.format(document_id=document.document_id)
            logger.warning(
                "attachment_identity_missing",
                execution_id=execution_id,
                document_id=document.document_id,
                attachments=len(document.attachments),
            )
            for ref in document.attachments:
                outcome = AttachmentOutcome(
                    document_id=document.document_id,
                    attachment_name=ref.name,
                    success=False,
                    content_type=ref.content_type,
                    size_bytes=ref.size,
                    error=message,
                )
                self.state.record_attachment(execution_id, project_id, outcome)
                outcomes.append(outcome)

            if fail_fast and document.attachments:
                raise AttachmentMigrationError(
                    document.document_id, document.attachments[0].name, message
                )

        chunk_size = self.config.concurrency
        for start in range(0, len(transfers), chunk_size):
            chunk = transfers[start : start + chunk_size]
            results = await asyncio.gather(
                *(self._migrate_one(transfer) for transfer in chunk), return_exceptions=True
            )

            chunk_outcomes = []
            for transfer, result in zip(chunk, results, strict=True):
                if isinstance(result, BaseException):
                    if not isinstance(result, Exception):
                        raise result
                    result = self._failure(transfer, result)
                self.state.record_attachment(execution_id, project_id, result)
                chunk_outcomes.append(result)
            outcomes.extend(chunk_outcomes)

            first_failure = next((o for o in chunk_outcomes if not o.success), None)
            if fail_fast and first_failure is not None:
                raise AttachmentMigrationError(
                    first_failure.document_id,
                    first_failure.attachment_name,
                    first_failure.error or "attachment migration failed",
                )

        migrated = sum(1 for o in outcomes if o.success)
        summary = AttachmentMigrationSummary(
            migrated=migrated, failed=len(outcomes) - migrated, outcomes=tuple(outcomes)
        )
        logger.info(
            "attachments_migrated",
            execution_id=execution_id,
            migrated=summary.migrated,
            failed=summary.failed,
        )
        return summary

    async def _migrate_one(self, transfer: _Transfer) -> AttachmentOutcome:
        document_id = transfer.document.document_id
        ref = transfer.attachment

        try:
            url = await self._transfer(document_id, ref)
        except Exception as e:
            logger.error(
                "attachment_migration_failed",
                document_id=document_id,
                attachment_name=ref.name,
                error=str(e),
            )
            return self._failure(transfer, e)

        metadata = {
            "attachment_name": ref.name,
            "content_type": ref.content_type,
            "size": ref.size,
            "source_document_id": document_id,
        }
        try:
            self.link_target_row(transfer.identity, url, metadata)
        except Exception as e:
            logger.error(
                "attachment_link_failed",
                document_id=document_id,
                table=transfer.identity.table_name,
                target_id=transfer.identity.target_id,
                error=str(e),
            )
            return self._failure(transfer, e)

        return AttachmentOutcome(
            document_id=document_id,
            attachment_name=ref.name,
            success=True,
            target_record_id=transfer.identity.target_id,
            source_url=self.source.attachment_url(document_id, ref.name),
            target_url=url,
            content_type=ref.content_type,
            size_bytes=ref.size,
        )

    async def _transfer(self, document_id: str, ref: AttachmentRef) -> str:
        def on_retry(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "attachment_upload_retrying",
                document_id=document_id,
                attachment_name=ref.name,
                attempt=retry_state.attempt_number,
                error=str(exc) if exc else None,
            )

        retrying = exponential_retrying(
            max_attempts=self.config.max_retries,
            backoff_base=self.config.backoff_base,
            sleep=self._sleep,
            on_retry=on_retry,
        )
        async for attempt in retrying:
            with attempt:
                data = await self.source.download_attachment(document_id, ref.name)
                url = await self.target.upload(document_id, data, ref)
        return url

    def _failure(self, transfer: _Transfer, error: Exception) -> AttachmentOutcome:
        return AttachmentOutcome(
            document_id=transfer.document.document_id,
            attachment_name=transfer.attachment.name,
            success=False,
            target_record_id=transfer.identity.target_id,
            source_url=self.source.attachment_url(
                transfer.document.document_id, transfer.attachment.name
            ),
            content_type=transfer.attachment.content_type,
            size_bytes=transfer.attachment.size,
            error=str(error) or type(error).__name__,
        )
