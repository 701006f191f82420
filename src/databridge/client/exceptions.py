"""Custom exceptions for DataBridge.

This module defines the exception hierarchy shared by the HTTP clients,
the execution state store, the job queue and the stage executors.
"""


class DataBridgeError(Exception):
    """Base exception for all DataBridge errors."""

    pass


class ConfigurationError(DataBridgeError):
    """Raised when configuration is invalid or missing."""

    pass


class StateError(DataBridgeError):
    """Raised when the execution state store cannot be read or written."""

    pass


class NotFoundError(DataBridgeError):
    """Raised when a project, execution or remote resource does not exist."""

    pass


class APIError(DataBridgeError):
    """Base class for HTTP API errors."""

    def __init__(self, message: str, status_code: int | None = None, response: dict | None = None):
        """Initialize API error.

        Args:
            message: Error message
            status_code: HTTP status code
            response: API response body
        """
        self.message = message
        self.status_code = status_code
        self.response = response
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format error message with status code and response."""
        msg = self.message
        if self.status_code:
            msg = f"[{self.status_code}] {msg}"
        if self.response:
            msg = f"{msg}: {self.response}"
        return msg


class AuthenticationError(APIError):
    """Raised when authentication fails (401/403)."""

    pass


class ResourceNotFoundError(APIError, NotFoundError):
    """Raised when a remote resource is not found (404 Not Found)."""

    pass


class RateLimitError(APIError):
    """Raised when API rate limit is exceeded (429 Too Many Requests)."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response: dict | None = None,
        retry_after: int | None = None,
    ):
        super().__init__(message, status_code, response)
        self.retry_after = retry_after


class ServerError(APIError):
    """Raised when server returns 5xx error."""

    pass


class NetworkError(DataBridgeError):
    """Raised when network-related errors occur (timeouts, connection failures)."""

    pass


class MigrationError(DataBridgeError):
    """Raised when migration operations fail."""

    pass


class StageExecutionError(MigrationError):
    """Raised by the stage runner when a stage ends in failure.

    Attributes:
        stage_id: Identifier of the failed stage
    """

    def __init__(self, stage_id: str, message: str | None):
        self.stage_id = stage_id
        super().__init__(message or f"Stage {stage_id} failed")


class TableLoadError(MigrationError):
    """Raised when a table load is rolled back.

    Attributes:
        table: Target or staging table name
        reason: Database error that caused the rollback
        records_failed: Rows that were not loaded because of the rollback
    """

    def __init__(self, table: str, message: str, records_failed: int = 0):
        self.table = table
        self.records_failed = records_failed
        self.reason = message
        super().__init__(f"{table}: {message}")


class TransformationError(MigrationError):
    """Raised when a column transformation cannot be applied."""

    pass


class AttachmentMigrationError(MigrationError):
    """Raised when an attachment fails to migrate in fail-fast mode."""

    def __init__(self, document_id: str, attachment_name: str, message: str):
        self.document_id = document_id
        self.attachment_name = attachment_name
        super().__init__(f"{document_id}/{attachment_name}: {message}")


class QueueError(DataBridgeError):
    """Raised when the job queue rejects an operation."""

    pass


class JobNotFoundError(QueueError):
    """Raised when a job id is unknown to the queue."""

    pass
