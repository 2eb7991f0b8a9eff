"""
Microsoft Graph API client for workspace mail, contacts, calendar and folders.
Handles client initialization, paging via @odata.nextLink, retry with backoff
and mapping of Graph error codes.
Returns raw payload dicts; normalization happens in the sync pipeline.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any, Protocol

import httpx

from workspace_sync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

GRAPH_API_BASE_URL = "https://graph.microsoft.com/v1.0"

# Request timeouts and retry configuration
REQUEST_TIMEOUT = 30  # seconds
MAX_RETRIES = 3
BACKOFF_FACTOR = 2
MAX_RETRY_AFTER = 60  # seconds
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}

DEFAULT_PAGE_SIZE = 100
DEFAULT_MAX_PAGES = 10

FOLDER_FIELDS = "id,displayName,parentFolderId,childFolderCount,unreadItemCount,totalItemCount"
CONTACT_FIELDS = (
    "id,displayName,givenName,surname,emailAddresses,mobilePhone,businessPhones,"
    "companyName,department,jobTitle,officeLocation"
)
PEOPLE_FIELDS = (
    "id,displayName,givenName,surname,scoredEmailAddresses,phones,companyName,"
    "department,jobTitle,officeLocation"
)
USER_FIELDS = (
    "id,displayName,givenName,surname,mail,userPrincipalName,mobilePhone,businessPhones,"
    "department,jobTitle,officeLocation,city"
)
MESSAGE_FIELDS = (
    "id,subject,bodyPreview,sender,from,receivedDateTime,isRead,flag,hasAttachments,"
    "importance,parentFolderId,webLink"
)
EVENT_FIELDS = "id,subject,start,end,attendees,organizer,location,isOnlineMeeting"

TokenProvider = Callable[[], Awaitable[str]]


class GraphApiError(Exception):
    """Custom exception for Microsoft Graph API errors."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int | None = None,
        response_data: dict | None = None,
    ):
        super().__init__(message)
        self.error_code = error_code
        self.status_code = status_code
        self.response_data = response_data or {}

    @property
    def retryable(self) -> bool:
        if self.status_code is None:
            return self.error_code == "NETWORK_ERROR"
        return self.status_code in RETRY_STATUS_CODES


class WorkspaceApi(Protocol):
    """Remote calls the sync orchestrator depends on."""

    async def list_folders(self) -> list[dict[str, Any]]: ...

    async def list_contacts(self, top: int) -> list[dict[str, Any]]: ...

    async def list_people(self, top: int) -> list[dict[str, Any]]: ...

    async def list_users(self, top: int) -> list[dict[str, Any]]: ...

    async def list_messages(
        self, start: datetime, end: datetime, top: int
    ) -> list[dict[str, Any]]: ...

    async def list_events(
        self, start: datetime, end: datetime, top: int
    ) -> list[dict[str, Any]]: ...


def static_token(access_token: str) -> TokenProvider:
    """Token provider for a fixed bearer token."""

    async def _provider() -> str:
        return access_token

    return _provider


def _graph_timestamp(value: datetime) -> str:
    """UTC timestamp with microseconds in the form Graph $filter expressions accept."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class GraphClient:
    """
    Client for the Microsoft Graph endpoints used by the unified sync.

    Every list operation pages through @odata.nextLink until the requested
    cap or ``max_pages`` is reached, and raises GraphApiError on failure.
    """

    def __init__(
        self,
        token_provider: TokenProvider,
        *,
        base_url: str = GRAPH_API_BASE_URL,
        timeout: float = REQUEST_TIMEOUT,
        max_retries: int = MAX_RETRIES,
        backoff_factor: float = BACKOFF_FACTOR,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_pages: int = DEFAULT_MAX_PAGES,
    ):
        self._token_provider = token_provider
        self.base_url = base_url.rstrip("/")
        self.max_retries = max(1, max_retries)
        self.backoff_factor = backoff_factor
        self.page_size = page_size
        self.max_pages = max_pages
        self._client = self._create_client(timeout)

    def _create_client(self, timeout: float) -> httpx.AsyncClient:
        """Create async HTTP client for Graph API."""
        return httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            limits=httpx.Limits(max_keepalive_connections=20, max_connections=50),
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    def _backoff_seconds(self, attempt: int, response: httpx.Response | None = None) -> float:
        if response is not None:
            retry_after = response.headers.get("Retry-After")
            if retry_after and retry_after.isdigit():
                return min(float(retry_after), MAX_RETRY_AFTER)
        return self.backoff_factor * (2 ** (attempt - 1))

    async def _request_with_retry(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Execute an HTTP request with retry and backoff."""
        for attempt in range(1, self.max_retries + 1):
            try:
                response = await self._client.request(method, url, **kwargs)
                if response.status_code in RETRY_STATUS_CODES and attempt < self.max_retries:
                    backoff = self._backoff_seconds(attempt, response)
                    logger.debug(
                        "Graph API retrying request",
                        attempt=attempt,
                        status_code=response.status_code,
                        backoff_seconds=backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                return response
            except httpx.RequestError as e:
                if attempt >= self.max_retries:
                    raise GraphApiError(
                        f"Graph API unreachable: {e}", error_code="NETWORK_ERROR"
                    ) from e
                backoff = self._backoff_seconds(attempt)
                logger.debug(
                    "Graph API request error, retrying",
                    attempt=attempt,
                    error=str(e),
                    backoff_seconds=backoff,
                )
                await asyncio.sleep(backoff)
        raise RuntimeError("Graph API retry loop exhausted")

    async def _get_auth_headers(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        """Get authorization headers for Graph API requests."""
        token = await self._token_provider()
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }
        if extra:
            headers.update(extra)
        return headers

    def _handle_api_response(self, response: httpx.Response, operation: str) -> dict:
        """
        Handle and validate Graph API response.

        Raises:
            GraphApiError: If response contains errors
        """
        if response.is_success:
            try:
                return response.json() if response.text else {}
            except ValueError as e:
                logger.error(f"Failed to parse Graph API {operation} response", error=str(e))
                raise GraphApiError(f"Invalid response format: {e}", error_code="INVALID_RESPONSE") from e

        try:
            error_data = response.json() if response.text else {}
        except ValueError:
            logger.error(
                f"Graph API {operation} failed with non-JSON response",
                status_code=response.status_code,
                response_text=response.text[:200] if response.text else "",
            )
            raise GraphApiError(
                f"Graph API error (HTTP {response.status_code})",
                status_code=response.status_code,
            ) from None

        error_info = error_data.get("error", {}) if isinstance(error_data, dict) else {}
        error_code = error_info.get("code", "unknown")
        error_message = error_info.get("message", "Unknown Graph API error")

        logger.error(
            f"Graph API {operation} failed",
            status_code=response.status_code,
            error_code=error_code,
            error_message=error_message,
        )

        raise GraphApiError(
            self._map_graph_error(error_code, response.status_code, error_message),
            error_code=str(error_code),
            status_code=response.status_code,
            response_data=error_data,
        )

    def _map_graph_error(self, error_code: str, status_code: int, error_message: str) -> str:
        """Map Graph error codes to readable messages."""
        error_mappings = {
            "InvalidAuthenticationToken": "Workspace authorization expired. Please reconnect.",
            "Authorization_RequestDenied": "Workspace access denied. Please check permissions.",
            "ErrorAccessDenied": "Workspace access denied. Please check permissions.",
            "Forbidden": "Workspace access denied. Please check permissions.",
            "ResourceNotFound": "Requested workspace resource not found.",
            "ErrorItemNotFound": "Requested workspace resource not found.",
            "TooManyRequests": "Too many workspace requests. Please try again later.",
            "ApplicationThrottled": "Too many workspace requests. Please try again later.",
            "ServiceNotAvailable": "Workspace service temporarily unavailable.",
            "BadRequest": "Invalid workspace request format.",
        }
        if error_code in error_mappings:
            return error_mappings[error_code]

        status_mappings = {
            401: "Workspace authorization expired. Please reconnect.",
            403: "Workspace access denied. Please check permissions.",
            404: "Requested workspace resource not found.",
            429: "Too many workspace requests. Please try again later.",
        }
        if status_code in status_mappings:
            return status_mappings[status_code]
        if status_code >= 500:
            return "Workspace service temporarily unavailable."
        return f"Workspace error: {error_message}"

    async def _get_collection(
        self,
        operation: str,
        path: str,
        params: dict[str, Any],
        cap: int,
        extra_headers: dict[str, str] | None = None,
    ) -> list[dict[str, Any]]:
        """Follow @odata.nextLink pages until ``cap`` items or ``max_pages`` pages."""
        if cap <= 0:
            return []

        try:
            headers = await self._get_auth_headers(extra_headers)
            url: str | None = f"{self.base_url}{path}"
            request_params: dict[str, Any] | None = {"$top": min(self.page_size, cap), **params}
            items: list[dict[str, Any]] = []
            pages = 0

            while url and pages < self.max_pages and len(items) < cap:
                response = await self._request_with_retry(
                    "GET", url, headers=headers, params=request_params
                )
                data = self._handle_api_response(response, operation)
                items.extend(data.get("value", []))
                pages += 1
                url = data.get("@odata.nextLink")
                # nextLink already carries the query string
                request_params = None

            logger.debug(
                "Graph collection fetched",
                operation=operation,
                item_count=min(len(items), cap),
                pages=pages,
            )
            return items[:cap]

        except GraphApiError:
            raise
        except Exception as e:
            logger.error(f"Unexpected error in Graph {operation}", error=str(e))
            raise GraphApiError(f"Failed to {operation.replace('_', ' ')}: {e}") from e

    async def list_folders(self, top: int = 200) -> list[dict[str, Any]]:
        """List the user's mail folders."""
        return await self._get_collection(
            "list_folders", "/me/mailFolders", {"$select": FOLDER_FIELDS}, top
        )

    async def list_contacts(self, top: int = 200) -> list[dict[str, Any]]:
        """List personal contacts, ordered by display name."""
        return await self._get_collection(
            "list_contacts",
            "/me/contacts",
            {"$select": CONTACT_FIELDS, "$orderby": "displayName"},
            top,
        )

    async def list_people(self, top: int = 100) -> list[dict[str, Any]]:
        """List people relevant to the user (suggested people)."""
        return await self._get_collection(
            "list_people", "/me/people", {"$select": PEOPLE_FIELDS}, top
        )

    async def list_users(self, top: int = 50) -> list[dict[str, Any]]:
        """List users of the workspace directory."""
        return await self._get_collection("list_users", "/users", {"$select": USER_FIELDS}, top)

    async def list_messages(
        self, start: datetime, end: datetime, top: int = 500
    ) -> list[dict[str, Any]]:
        """List messages received in [start, end], newest first."""
        params = {
            "$filter": (
                f"receivedDateTime ge {_graph_timestamp(start)} "
                f"and receivedDateTime le {_graph_timestamp(end)}"
            ),
            "$orderby": "receivedDateTime desc",
            "$select": MESSAGE_FIELDS,
        }
        return await self._get_collection("list_messages", "/me/messages", params, top)

    async def list_events(
        self, start: datetime, end: datetime, top: int = 200
    ) -> list[dict[str, Any]]:
        """List calendar events starting in [start, end], newest first, times in UTC."""
        params = {
            "$filter": (
                f"start/dateTime ge '{_graph_timestamp(start)}' "
                f"and start/dateTime le '{_graph_timestamp(end)}'"
            ),
            "$orderby": "start/dateTime desc",
            "$select": EVENT_FIELDS,
        }
        return await self._get_collection(
            "list_events",
            "/me/events",
            params,
            top,
            extra_headers={"Prefer": 'outlook.timezone="UTC"'},
        )
