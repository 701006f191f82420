"""Shared async HTTP plumbing for the document store and object store clients.

Every call goes through ``BaseAPIClient.send``, which logs the round trip
and turns transport failures and error statuses into DataBridge exceptions.
"""

import time
from typing import Any

import httpx

from databridge.client.exceptions import (
    APIError,
    AuthenticationError,
    NetworkError,
    RateLimitError,
    ResourceNotFoundError,
    ServerError,
)
from databridge.utils.logging import get_logger, log_api_request

logger = get_logger(__name__)

_STATUS_ERRORS: dict[int, tuple[type[APIError], str]] = {
    401: (AuthenticationError, "Authentication failed"),
    403: (AuthenticationError, "Authentication failed"),
    404: (ResourceNotFoundError, "Resource not found"),
}


def _error_body(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {"detail": response.text}
    return body if isinstance(body, dict) else {"detail": str(body)}


def error_for_response(response: httpx.Response) -> APIError:
    """Build the exception describing an error response.

    CouchDB reports problems as ``{"error": ..., "reason": ...}``, other
    services use ``detail`` or ``message``; the first one present is used.
    """
    status = response.status_code
    body = _error_body(response)
    reason = next(
        (body[key] for key in ("reason", "detail", "message", "error") if body.get(key)),
        "Unknown error",
    )

    if status in _STATUS_ERRORS:
        error_class, message = _STATUS_ERRORS[status]
        return error_class(message, status_code=status, response=body)
    if status == 429:
        retry_after = response.headers.get("Retry-After", "")
        return RateLimitError(
            "Rate limit exceeded",
            status_code=status,
            response=body,
            retry_after=int(retry_after) if retry_after.isdigit() else None,
        )
    if status >= 500:
        return ServerError(f"Server error: {reason}", status_code=status, response=body)
    return APIError(f"API error: {reason}", status_code=status, response=body)


class BaseAPIClient:
    """Async HTTP client bound to one base URL.

    Subclasses extend ``_build_headers`` for their authentication scheme.
    Usable as an async context manager.
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        auth: httpx.Auth | tuple[str, str] | None = None,
        verify_ssl: bool = True,
        timeout: int = 30,
        max_connections: int = 50,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Args:
            base_url: Service root; endpoints are resolved against it
            token: Bearer token, if the service uses one
            auth: httpx auth such as a (username, password) tuple
            verify_ssl: Verify TLS certificates
            timeout: Read timeout in seconds
            max_connections: Size of the connection pool
            transport: Replacement httpx transport
        """
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.client = httpx.AsyncClient(
            headers=self._build_headers(),
            auth=auth,
            timeout=httpx.Timeout(timeout, connect=10.0),
            limits=httpx.Limits(max_connections=max_connections),
            verify=verify_ssl,
            follow_redirects=True,
            transport=transport,
        )
        logger.debug("client_initialized", client=type(self).__name__, base_url=self.base_url)

    def _build_headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _build_url(self, endpoint: str) -> str:
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    async def send(self, method: str, endpoint: str, **kwargs: Any) -> httpx.Response:
        """Send a request and return the successful response.

        Args:
            method: HTTP method
            endpoint: Path relative to the base URL
            **kwargs: Passed through to httpx

        Raises:
            NetworkError: On timeouts and transport failures
            APIError: On any 4xx/5xx status, see error_for_response
        """
        url = self._build_url(endpoint)
        started = time.monotonic()
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            logger.error("http_timeout", method=method, url=url, error=str(e))
            raise NetworkError(f"Request timeout: {e}") from e
        except httpx.TransportError as e:
            logger.error("http_transport_error", method=method, url=url, error=str(e))
            raise NetworkError(f"Network error: {e}") from e

        log_api_request(
            logger,
            method=method,
            url=url,
            status_code=response.status_code,
            duration_ms=(time.monotonic() - started) * 1000,
        )
        if response.is_error:
            raise error_for_response(response)
        return response

    async def request(self, method: str, endpoint: str, **kwargs: Any) -> dict[str, Any]:
        """Like send, but decode the JSON body (empty bodies give {})."""
        response = await self.send(method, endpoint, **kwargs)
        return response.json() if response.content else {}

    async def get(self, endpoint: str, **kwargs: Any) -> dict[str, Any]:
        return await self.request("GET", endpoint, **kwargs)

    async def post(self, endpoint: str, **kwargs: Any) -> dict[str, Any]:
        return await self.request("POST", endpoint, **kwargs)

    async def close(self) -> None:
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
