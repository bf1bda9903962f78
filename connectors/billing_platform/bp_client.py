"""Billing platform HTTP client.

Low-level HTTP client for the billing platform public API.
Handles bearer-token validation, credential reload on 401, server-directed
backoff on 429, multipart document uploads and the typed error taxonomy.

Every call returns an ApiResponse (parsed body + X-RateLimit-* metadata) or
raises one of:
- TokenExpiredError: token missing/expired locally, or rejected twice by the server
- RateLimitError: still rate limited after the retry budget
- ApiError: any other HTTP error (status, message, parsed body)
- TransportError: the request never got an HTTP response
"""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import aiohttp

from connectors.billing_platform.bp_connection import Connection, ConnectionStore
from connectors.billing_platform.bp_models import ApiResponse, RateLimitInfo
from connectors.erp_base import Document
from core.config import DEFAULT_API_BASE_URL, SyncSettings
from core.observability.logging import get_logger
from core.observability.metrics import get_metrics

logger = get_logger(__name__)


# =============================================================================
# Errors
# =============================================================================

class BillingPlatformError(Exception):
    """Base exception for billing platform API errors."""
    def __init__(self, message: str, status_code: int = 0, response_body: Any = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.response_body = response_body


class TokenExpiredError(BillingPlatformError):
    """Access token expired locally or rejected by the server (401)."""
    def __init__(self, message: str = "Access token expired or missing", status_code: int = 401, response_body: Any = None):
        super().__init__(message, status_code, response_body)


class RateLimitError(BillingPlatformError):
    """Rate limit exceeded (429) after all inline retries."""
    def __init__(self, message: str, retry_after: int = 60):
        super().__init__(message, 429)
        self.retry_after = retry_after


class ApiError(BillingPlatformError):
    """HTTP error other than 401/429."""

    @property
    def status(self) -> int:
        return self.status_code

    @property
    def body(self) -> Any:
        return self.response_body

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404

    @property
    def is_client_error(self) -> bool:
        return 400 <= self.status_code < 500


class TransportError(ApiError):
    """Network failure or timeout before any HTTP status was received."""
    def __init__(self, message: str):
        super().__init__(message, 0, None)


def is_not_found(error: BaseException) -> bool:
    """True if the error is a 404 from the billing platform."""
    return isinstance(error, ApiError) and error.is_not_found


# =============================================================================
# Configuration
# =============================================================================

@dataclass
class RetryConfig:
    """Configuration for rate-limit retries."""
    max_retries: int = 3
    default_retry_after: int = 60  # seconds, when Retry-After is absent
    min_wait: float = 1.0  # seconds
    max_wait: float = 120.0  # longer server waits are left to the sync queue

    def get_wait(self, retry_after: int) -> float:
        return max(self.min_wait, float(retry_after))


@dataclass
class BPApiConfig:
    """Configuration for the billing platform client."""
    base_url: str = DEFAULT_API_BASE_URL
    connection_name: str = "default"
    token_margin_minutes: int = 5
    timeout_seconds: int = 30
    retry_config: RetryConfig = field(default_factory=RetryConfig)

    @classmethod
    def from_settings(cls, settings: SyncSettings) -> "BPApiConfig":
        return cls(
            base_url=settings.api_base_url,
            connection_name=settings.connection_name,
            token_margin_minutes=settings.token_margin_minutes,
            timeout_seconds=settings.http_timeout_seconds,
            retry_config=RetryConfig(
                max_retries=settings.rate_limit_max_retries,
                default_retry_after=settings.rate_limit_default_wait,
                max_wait=settings.rate_limit_max_wait,
            ),
        )


@dataclass
class MultipartBody:
    """Form fields plus the single `file` attachment of a document upload."""
    fields: Dict[str, Any]
    document: Document


# =============================================================================
# Helpers
# =============================================================================

def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _parse_body(text: str) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return None


def _parse_int(value: Optional[str]) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(float(value))
    except ValueError:
        return None


def _lower_headers(headers: Any) -> Dict[str, str]:
    return {str(k).lower(): v for k, v in (headers or {}).items()}


def parse_rate_limit(headers: Any) -> RateLimitInfo:
    """Read X-RateLimit-Limit/-Remaining/-Reset, case-insensitively."""
    lowered = _lower_headers(headers)
    return RateLimitInfo(
        limit=_parse_int(lowered.get("x-ratelimit-limit")),
        remaining=_parse_int(lowered.get("x-ratelimit-remaining")),
        reset=_parse_int(lowered.get("x-ratelimit-reset")),
    )


def format_form_value(value: Any) -> str:
    """Multipart form values are strings; None becomes an empty field."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Decimal):
        return format(value, "f")
    return str(value)


def build_form_data(body: MultipartBody) -> aiohttp.FormData:
    """Build the multipart payload. A FormData can only be sent once, so
    each attempt builds a fresh one."""
    form = aiohttp.FormData()
    for name, value in body.fields.items():
        form.add_field(name, format_form_value(value))
    form.add_field(
        "file",
        body.document.content,
        filename=body.document.filename,
        content_type=body.document.content_type,
    )
    return form


def list_nodes(data: Any) -> List[Dict[str, Any]]:
    """Items of a list response, whether paginated ({nodes}) or a bare array."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        return data.get("nodes") or data.get("items") or []
    return []


# =============================================================================
# Client
# =============================================================================

class BillingPlatformClient:
    """HTTP client for the billing platform API.

    Provides:
    - Bearer-token validation with a safety margin before every call
    - One connection reload and retry on 401
    - Retry-After driven backoff on 429
    - Resource helpers (accounts, contacts, invoices, credit notes, allocations)

    Usage:
        async with BillingPlatformClient(store, BPApiConfig.from_settings(settings)) as client:
            response = await client.accounts.get(account_id)
            account = RemoteAccount.model_validate(response.data)
    """

    def __init__(
        self,
        connection_store: ConnectionStore,
        api_config: Optional[BPApiConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize API client.

        Args:
            connection_store: Durable source of the Connection (tokens)
            api_config: API configuration
            session: Existing HTTP session; one is created by connect() otherwise
            sleep: Coroutine used to wait between rate-limited attempts
        """
        self.connection_store = connection_store
        self.api_config = api_config or BPApiConfig()
        self._session = session
        self._owns_session = False
        self._sleep = sleep
        self.connection: Optional[Connection] = None
        self.last_rate_limit: Optional[RateLimitInfo] = None

        self.organizations = OrganizationsResource(self)
        self.accounts = AccountsResource(self)
        self.contacts = ContactsResource(self)
        self.invoices = InvoicesResource(self)
        self.credit_notes = CreditNotesResource(self)
        self.credit_allocations = CreditAllocationsResource(self)

    @classmethod
    def from_settings(
        cls,
        settings: SyncSettings,
        connection_store: ConnectionStore,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> "BillingPlatformClient":
        return cls(connection_store, BPApiConfig.from_settings(settings), session=session)

    async def connect(self) -> None:
        """Open an HTTP session if none was supplied."""
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True

    async def close(self) -> None:
        """Close the HTTP session if this client created it."""
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None
            self._owns_session = False

    async def __aenter__(self) -> "BillingPlatformClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # =========================================================================
    # Connection handling
    # =========================================================================

    def reload_connection(self) -> Connection:
        """Re-read the connection; a concurrent refresh may have rotated tokens."""
        self.connection = self.connection_store.get(self.api_config.connection_name)
        get_metrics().record_token_reload()
        return self.connection

    def _token_valid(self) -> bool:
        return self.connection is not None and self.connection.is_access_token_valid(
            margin_minutes=self.api_config.token_margin_minutes
        )

    def ensure_valid_token(self) -> Connection:
        """Return a connection with a usable access token.

        Reloads once from storage if the current token is missing or about to
        expire.

        Raises:
            TokenExpiredError: If the reloaded token is still not valid
        """
        if not self._token_valid():
            self.reload_connection()
            if not self._token_valid():
                raise TokenExpiredError(
                    f"Access token for connection '{self.api_config.connection_name}' "
                    f"is expired or missing"
                )
        return self.connection

    # =========================================================================
    # Request
    # =========================================================================

    async def request(
        self,
        method: str,
        path: str,
        json_body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        multipart: Optional[MultipartBody] = None,
    ) -> ApiResponse:
        """Make an authenticated API request.

        Args:
            method: HTTP method
            path: Path under the API base URL (e.g. "/accounts")
            json_body: JSON request body
            params: Query parameters (None values are dropped)
            multipart: Form fields and document for upload endpoints

        Returns:
            ApiResponse with the parsed body (None for 204)

        Raises:
            TokenExpiredError: Token invalid locally or rejected twice
            RateLimitError: Rate limit persisted through all retries
            ApiError: Any other HTTP error
            TransportError: Network failure or timeout
        """
        if self._session is None:
            await self.connect()

        self.ensure_valid_token()

        url = f"{self.api_config.base_url}{path}"
        query = {k: str(v) for k, v in (params or {}).items() if v is not None}
        retry_config = self.api_config.retry_config
        timeout = aiohttp.ClientTimeout(total=self.api_config.timeout_seconds)
        retried_after_401 = False
        rate_limit_retries = 0

        while True:
            headers = {
                "Authorization": self.connection.authorization_header,
                "Accept": "application/json",
            }
            kwargs: Dict[str, Any] = {"headers": headers, "timeout": timeout}
            if query:
                kwargs["params"] = query
            if multipart is not None:
                kwargs["data"] = build_form_data(multipart)
            elif json_body is not None:
                headers["Content-Type"] = "application/json"
                kwargs["data"] = json.dumps(json_body, default=_json_default)

            try:
                async with self._session.request(method, url, **kwargs) as response:
                    status = response.status
                    response_headers = response.headers
                    response_text = await response.text()
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                raise TransportError(f"{method} {path} failed: {type(e).__name__}: {e}") from e

            get_metrics().record_api_request(status)

            if status == 429:
                retry_after = _parse_int(_lower_headers(response_headers).get("retry-after"))
                if retry_after is None:
                    retry_after = retry_config.default_retry_after
                wait = retry_config.get_wait(retry_after)

                if rate_limit_retries >= retry_config.max_retries:
                    raise RateLimitError(
                        f"Rate limit exceeded on {method} {path} after {rate_limit_retries} retries",
                        retry_after,
                    )
                if wait > retry_config.max_wait:
                    raise RateLimitError(
                        f"Rate limited on {method} {path}; server asked for {retry_after}s",
                        retry_after,
                    )

                rate_limit_retries += 1
                logger.warning(
                    f"Rate limited on {method} {path}, waiting {wait:.0f}s "
                    f"(retry {rate_limit_retries}/{retry_config.max_retries})"
                )
                await self._sleep(wait)
                continue

            if status == 401:
                if retried_after_401:
                    raise TokenExpiredError(
                        "Server rejected the access token",
                        401,
                        _parse_body(response_text),
                    )
                logger.warning(f"Got 401 on {method} {path}, reloading connection and retrying")
                retried_after_401 = True
                self.reload_connection()
                if not self._token_valid():
                    raise TokenExpiredError(
                        "Server rejected the access token and no fresh token is stored",
                        401,
                        _parse_body(response_text),
                    )
                continue

            body = _parse_body(response_text)

            if status >= 400:
                message = None
                if isinstance(body, dict):
                    message = body.get("message")
                raise ApiError(message or f"API Error {status}", status, body)

            rate_limit = parse_rate_limit(response_headers)
            self.last_rate_limit = rate_limit
            if rate_limit.limit is not None or rate_limit.remaining is not None:
                get_metrics().record_rate_limit(rate_limit.limit, rate_limit.remaining, rate_limit.reset)

            return ApiResponse(
                data=None if status == 204 else body,
                rate_limit=rate_limit,
                status=status,
            )

    async def paginate(
        self,
        fetch: Callable[[Dict[str, Any]], Awaitable[ApiResponse]],
        params: Optional[Dict[str, Any]] = None,
    ) -> AsyncIterator[ApiResponse]:
        """Iterate pages of a cursor-paginated list.

        Usage:
            async for page in client.paginate(client.invoices.list, {"organizationId": org, "first": 100}):
                for invoice in list_nodes(page.data):
                    ...
        """
        cursor = None
        while True:
            page_params = dict(params or {})
            page_params["after"] = cursor
            page = await fetch(page_params)
            yield page

            page_info = (page.data or {}).get("pageInfo") if isinstance(page.data, dict) else None
            if not page_info:
                return
            cursor = page_info.get("endCursor")
            if not cursor or page_info.get("hasNextPage") is False:
                return


# =============================================================================
# Resources
# =============================================================================

class _Resource:
    def __init__(self, client: BillingPlatformClient):
        self._client = client


class OrganizationsResource(_Resource):
    async def list(self, params: Optional[Dict[str, Any]] = None) -> ApiResponse:
        return await self._client.request("GET", "/organizations", params=params)

    async def get(self, organization_id: str) -> ApiResponse:
        return await self._client.request("GET", f"/organizations/{organization_id}")


class AccountsResource(_Resource):
    async def list(self, params: Optional[Dict[str, Any]] = None) -> ApiResponse:
        """List accounts; `organizationId` is required by the platform."""
        return await self._client.request("GET", "/accounts", params=params)

    async def get(self, account_id: str) -> ApiResponse:
        return await self._client.request("GET", f"/accounts/{account_id}")

    async def create(self, payload: Dict[str, Any]) -> ApiResponse:
        return await self._client.request("POST", "/accounts", json_body=payload)

    async def update(self, account_id: str, payload: Dict[str, Any]) -> ApiResponse:
        return await self._client.request("PUT", f"/accounts/{account_id}", json_body=payload)

    async def delete(self, account_id: str) -> ApiResponse:
        """Delete an account. The platform cascades to its contacts and documents."""
        return await self._client.request("DELETE", f"/accounts/{account_id}")

    async def link_source(self, account_id: str, connection_id: str, source_id: str) -> ApiResponse:
        return await self._client.request(
            "PUT",
            f"/accounts/{account_id}/source",
            json_body={"connectionId": connection_id, "sourceId": source_id},
        )

    async def unlink_source(self, account_id: str) -> ApiResponse:
        return await self._client.request("DELETE", f"/accounts/{account_id}/source")


class ContactsResource(_Resource):
    async def list(self, account_id: str) -> ApiResponse:
        return await self._client.request("GET", f"/accounts/{account_id}/contacts")

    async def get(self, account_id: str, contact_id: str) -> ApiResponse:
        return await self._client.request("GET", f"/accounts/{account_id}/contacts/{contact_id}")

    async def create(self, account_id: str, payload: Dict[str, Any]) -> ApiResponse:
        return await self._client.request("POST", f"/accounts/{account_id}/contacts", json_body=payload)

    async def update(self, account_id: str, contact_id: str, payload: Dict[str, Any]) -> ApiResponse:
        return await self._client.request(
            "PUT", f"/accounts/{account_id}/contacts/{contact_id}", json_body=payload
        )

    async def delete(self, account_id: str, contact_id: str) -> ApiResponse:
        return await self._client.request("DELETE", f"/accounts/{account_id}/contacts/{contact_id}")

    async def upsert(self, account_id: str, payload: Dict[str, Any]) -> ApiResponse:
        """Match by email, else by name, else create (decided by the platform)."""
        return await self._client.request(
            "PUT", f"/accounts/{account_id}/contacts/upsert", json_body=payload
        )


class InvoicesResource(_Resource):
    async def list(self, params: Optional[Dict[str, Any]] = None) -> ApiResponse:
        return await self._client.request("GET", "/invoices", params=params)

    async def get(self, invoice_id: str) -> ApiResponse:
        return await self._client.request("GET", f"/invoices/{invoice_id}")

    async def create(self, fields: Dict[str, Any], document: Document) -> ApiResponse:
        return await self._client.request(
            "POST", "/invoices", multipart=MultipartBody(fields=fields, document=document)
        )

    async def delete(self, invoice_id: str) -> ApiResponse:
        return await self._client.request("DELETE", f"/invoices/{invoice_id}")

    async def update_paid_amount(self, invoice_id: str, paid_amount: Decimal) -> ApiResponse:
        return await self._client.request(
            "PUT", f"/invoices/{invoice_id}/paid-amount", json_body={"paidAmount": paid_amount}
        )


class CreditNotesResource(_Resource):
    async def list(self, params: Optional[Dict[str, Any]] = None) -> ApiResponse:
        return await self._client.request("GET", "/credit-notes", params=params)

    async def get(self, credit_note_id: str) -> ApiResponse:
        return await self._client.request("GET", f"/credit-notes/{credit_note_id}")

    async def create(self, fields: Dict[str, Any], document: Document) -> ApiResponse:
        return await self._client.request(
            "POST", "/credit-notes", multipart=MultipartBody(fields=fields, document=document)
        )

    async def delete(self, credit_note_id: str) -> ApiResponse:
        return await self._client.request("DELETE", f"/credit-notes/{credit_note_id}")


class CreditAllocationsResource(_Resource):
    async def apply(self, credit_note_id: str, invoice_id: str, amount: Decimal) -> ApiResponse:
        return await self._client.request(
            "POST",
            "/credit-allocations",
            json_body={"creditNoteId": credit_note_id, "invoiceId": invoice_id, "amount": amount},
        )

    async def remove(self, credit_note_id: str, invoice_id: str) -> ApiResponse:
        return await self._client.request(
            "POST",
            "/credit-allocations/remove",
            json_body={"creditNoteId": credit_note_id, "invoiceId": invoice_id},
        )
