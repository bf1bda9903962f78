"""OAuth token refresh for billing platform connections.

Implements the refresh half of the OAuth 2.0 flow:
- refresh_token grant against the platform token endpoint
- access/refresh expiry read from the JWT `exp` claim
- rotation-safe storage (the old refresh token is kept if none is returned)

The authorization-code/PKCE handshake that first establishes the tokens is
done by the operator setup screens and is not part of this module.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import aiohttp
import jwt

from connectors.billing_platform.bp_connection import Connection, ConnectionStore
from core.config import DEFAULT_TOKEN_URL
from core.observability.logging import get_logger, with_correlation

logger = get_logger(__name__)


def decode_jwt_payload(token: Optional[str]) -> Optional[Dict[str, Any]]:
    """Decode the payload of a JWT without verifying its signature.

    Returns:
        The claims dict, or None if the token is not a well-formed JWT
    """
    if not token or not isinstance(token, str):
        return None

    try:
        return jwt.decode(token, options={"verify_signature": False, "verify_exp": False})
    except jwt.InvalidTokenError as e:
        logger.debug(f"Could not decode JWT payload: {e}")
        return None


def decode_token_expiry(token: Optional[str]) -> Optional[datetime]:
    """Expiry of a JWT from its `exp` claim, as a naive UTC datetime."""
    claims = decode_jwt_payload(token)
    if not claims or "exp" not in claims:
        return None
    try:
        return datetime.utcfromtimestamp(float(claims["exp"]))
    except (TypeError, ValueError, OverflowError):
        return None


@dataclass
class TokenRefreshResult:
    """Outcome of one refresh_token grant."""
    ok: bool
    status: int
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


async def request_token_refresh(
    session: aiohttp.ClientSession,
    refresh_token: str,
    client_id: str,
    client_secret: Optional[str] = None,
    token_url: str = DEFAULT_TOKEN_URL,
) -> TokenRefreshResult:
    """POST a refresh_token grant to the token endpoint.

    Never raises on an HTTP error status; the caller decides what to do with
    a failed result.
    """
    data = {
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
        "client_id": client_id,
    }
    if client_secret:
        data["client_secret"] = client_secret

    async with session.post(
        token_url,
        data=data,
        headers={
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
        },
    ) as response:
        status = response.status
        text = await response.text()

    try:
        body = json.loads(text) if text else {}
    except ValueError:
        body = None

    if status < 200 or status >= 300:
        error = "Token refresh failed."
        if isinstance(body, dict):
            error = body.get("message") or body.get("error") or error
        return TokenRefreshResult(ok=False, status=status, error=error)

    if not isinstance(body, dict):
        return TokenRefreshResult(ok=False, status=status, error="Token response was not valid JSON.")

    if not body.get("access_token"):
        return TokenRefreshResult(ok=False, status=status, data=body, error="Token response missing access_token.")

    return TokenRefreshResult(ok=True, status=status, data=body)


@dataclass
class RefreshOutcome:
    """What happened to one connection during a refresh run."""
    connection_name: str
    status: str  # "refreshed", "skipped" or "failed"
    message: Optional[str] = None
    access_token_expires_at: Optional[str] = None


@dataclass
class RefreshSummary:
    """Result of refresh_all_connections()."""
    outcomes: List[RefreshOutcome] = field(default_factory=list)

    @property
    def refreshed(self) -> int:
        return sum(1 for o in self.outcomes if o.status == "refreshed")

    @property
    def skipped(self) -> int:
        return sum(1 for o in self.outcomes if o.status == "skipped")

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if o.status == "failed")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "refreshed": self.refreshed,
            "skipped": self.skipped,
            "failed": self.failed,
            "outcomes": [o.__dict__ for o in self.outcomes],
        }


async def refresh_connection(
    store: ConnectionStore,
    connection: Connection,
    session: aiohttp.ClientSession,
    token_url: str = DEFAULT_TOKEN_URL,
    now: Optional[datetime] = None,
) -> RefreshOutcome:
    """Rotate the tokens of one connection.

    Args:
        store: Where the rotated tokens are written (token columns only)
        connection: Snapshot holding the current refresh token and client credentials
        session: HTTP session for the token endpoint
        token_url: OAuth token endpoint
        now: Current UTC time (for tests)
    """
    now = now or datetime.utcnow()

    if not connection.refresh_token or not connection.client_id:
        return RefreshOutcome(connection.name, "skipped", "No refresh token or client id stored")

    if connection.is_refresh_token_expired(now):
        logger.error(
            f"Refresh token of connection '{connection.name}' expired at "
            f"{connection.refresh_token_expires_at.isoformat()}; reconnect required"
        )
        return RefreshOutcome(connection.name, "skipped", "Refresh token expired")

    result = await request_token_refresh(
        session,
        refresh_token=connection.refresh_token,
        client_id=connection.client_id,
        client_secret=connection.client_secret,
        token_url=token_url,
    )

    if not result.ok:
        logger.error(
            f"Token refresh failed for connection '{connection.name}': {result.error}",
            extra_fields={"status": result.status},
        )
        return RefreshOutcome(connection.name, "failed", f"HTTP {result.status}: {result.error}")

    token_body = result.data
    access_token = token_body["access_token"]
    access_expires_at = decode_token_expiry(access_token)
    if access_expires_at is None and token_body.get("expires_in"):
        access_expires_at = now + timedelta(seconds=int(token_body["expires_in"]))

    new_refresh_token = token_body.get("refresh_token")
    refresh_expires_at = decode_token_expiry(new_refresh_token) if new_refresh_token else None

    store.update_tokens(
        connection.name,
        access_token=access_token,
        access_token_expires_at=access_expires_at,
        refresh_token=new_refresh_token,
        refresh_token_expires_at=refresh_expires_at,
    )

    logger.info(
        f"Refreshed tokens for connection '{connection.name}'",
        extra_fields={
            "access_expires_at": access_expires_at.isoformat() if access_expires_at else None,
            "rotated_refresh_token": bool(new_refresh_token),
        },
    )
    return RefreshOutcome(
        connection.name,
        "refreshed",
        access_token_expires_at=access_expires_at.isoformat() if access_expires_at else None,
    )


async def refresh_all_connections(
    store: ConnectionStore,
    token_url: str = DEFAULT_TOKEN_URL,
    session: Optional[aiohttp.ClientSession] = None,
) -> RefreshSummary:
    """Refresh every connected connection holding a refresh token.

    One failing connection never stops the others.
    """
    summary = RefreshSummary()
    owns_session = session is None
    if owns_session:
        session = aiohttp.ClientSession()

    try:
        for connection in store.list_connected():
            with with_correlation(connection=connection.name):
                try:
                    outcome = await refresh_connection(store, connection, session, token_url)
                except (aiohttp.ClientError, KeyError, ValueError) as e:
                    logger.exception(f"Token refresh error for connection '{connection.name}': {e}")
                    outcome = RefreshOutcome(connection.name, "failed", f"{type(e).__name__}: {e}")
            summary.outcomes.append(outcome)
    finally:
        if owns_session:
            await session.close()

    logger.info(
        f"Token refresh run complete: {summary.refreshed} refreshed, "
        f"{summary.skipped} skipped, {summary.failed} failed"
    )
    return summary
