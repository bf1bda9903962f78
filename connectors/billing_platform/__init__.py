"""Billing platform connector.

Components:
- bp_connection: Connection snapshots and their SQLite store
- bp_client: Resilient HTTP client and resource helpers
- bp_models: Remote entity models
- bp_oauth: Token refresh process
"""

from connectors.billing_platform.bp_client import (
    ApiError,
    BillingPlatformClient,
    BillingPlatformError,
    BPApiConfig,
    RateLimitError,
    RetryConfig,
    TokenExpiredError,
    TransportError,
    is_not_found,
    list_nodes,
)
from connectors.billing_platform.bp_connection import Connection, ConnectionStore
from connectors.billing_platform.bp_models import (
    ApiResponse,
    RateLimitInfo,
    RemoteAccount,
    RemoteContact,
    RemoteCreditNote,
    RemoteDate,
    RemoteInvoice,
)
from connectors.billing_platform.bp_oauth import refresh_all_connections, decode_token_expiry

__all__ = [
    # Client
    "BillingPlatformClient",
    "BPApiConfig",
    "RetryConfig",
    # Errors
    "BillingPlatformError",
    "TokenExpiredError",
    "RateLimitError",
    "ApiError",
    "TransportError",
    "is_not_found",
    "list_nodes",
    # Connection
    "Connection",
    "ConnectionStore",
    # Models
    "ApiResponse",
    "RateLimitInfo",
    "RemoteAccount",
    "RemoteContact",
    "RemoteCreditNote",
    "RemoteDate",
    "RemoteInvoice",
    # OAuth
    "refresh_all_connections",
    "decode_token_expiry",
]
