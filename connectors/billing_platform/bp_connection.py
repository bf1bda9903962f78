"""Billing platform connection records.

A Connection binds this ERP to one billing platform organization: OAuth client
credentials, the current access/refresh tokens and their expiry, and the
selected organization. Connections are persisted by name in SQLite.

The in-memory representation is an immutable snapshot. Code that changes a
connection builds a new snapshot with dataclasses.replace() and hands it to
ConnectionStore.save(); nothing mutates shared state.

Several processes (queue processor, per-record triggers, token refresh) read
and write the same row, so:
- readers re-load before deciding whether a token is still valid
- save() only writes fields that carry a value (partial-field writes)
- update_tokens() touches the token columns and nothing else
"""

import sqlite3
from dataclasses import dataclass, fields
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.config import DEFAULT_DB_PATH
from core.security.encryption import SecretCipher


SECRET_FIELDS = (
    "client_secret",
    "registration_access_token",
    "access_token",
    "refresh_token",
    "pkce_verifier",
)

DATETIME_FIELDS = ("access_token_expires_at", "refresh_token_expires_at")

TOKEN_FIELDS = (
    "access_token",
    "access_token_expires_at",
    "refresh_token",
    "refresh_token_expires_at",
)


@dataclass(frozen=True)
class Connection:
    """Snapshot of a connection row.

    Timestamps are naive UTC datetimes.
    """
    name: str
    id: Optional[int] = None
    organization_id: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    registration_access_token: Optional[str] = None
    access_token: Optional[str] = None
    access_token_expires_at: Optional[datetime] = None
    refresh_token: Optional[str] = None
    refresh_token_expires_at: Optional[datetime] = None
    pkce_verifier: Optional[str] = None
    oauth_state: Optional[str] = None
    connected: bool = False

    def is_access_token_valid(self, margin_minutes: int = 5, now: Optional[datetime] = None) -> bool:
        """Check the access token is present and not expiring within the margin."""
        if not self.access_token or not self.access_token_expires_at:
            return False
        now = now or datetime.utcnow()
        return now < self.access_token_expires_at - timedelta(minutes=margin_minutes)

    def is_refresh_token_expired(self, now: Optional[datetime] = None) -> bool:
        """Check if the refresh token is past its expiry.

        A refresh token without a known expiry is assumed usable.
        """
        if not self.refresh_token_expires_at:
            return False
        now = now or datetime.utcnow()
        return now >= self.refresh_token_expires_at

    @property
    def has_organization(self) -> bool:
        return bool(self.organization_id)

    @property
    def authorization_header(self) -> str:
        return f"Bearer {self.access_token}"

    def to_status(self) -> Dict[str, Any]:
        """Operator-facing view without any secret."""
        return {
            "id": self.id,
            "name": self.name,
            "organization_id": self.organization_id,
            "client_id": self.client_id,
            "connected": self.connected,
            "has_access_token": bool(self.access_token),
            "has_refresh_token": bool(self.refresh_token),
            "access_token_expires_at": self.access_token_expires_at.isoformat() if self.access_token_expires_at else None,
            "refresh_token_expires_at": self.refresh_token_expires_at.isoformat() if self.refresh_token_expires_at else None,
            "access_token_valid": self.is_access_token_valid(),
        }


COLUMNS = [f.name for f in fields(Connection) if f.name not in ("id", "name", "connected")]


def init_connection_db(db_path: Path = DEFAULT_DB_PATH) -> None:
    """Initialize the connections table.

    Args:
        db_path: Path to SQLite database file
    """
    conn = sqlite3.connect(db_path)
    try:
        cursor = conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS connections (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE,
                organization_id TEXT,
                client_id TEXT,
                client_secret TEXT,
                registration_access_token TEXT,
                access_token TEXT,
                access_token_expires_at TEXT,
                refresh_token TEXT,
                refresh_token_expires_at TEXT,
                pkce_verifier TEXT,
                oauth_state TEXT,
                connected INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        conn.commit()
    finally:
        conn.close()


class ConnectionStore:
    """SQLite persistence of Connection snapshots, keyed by name.

    Usage:
        store = ConnectionStore(settings.db_path, cipher)
        connection = store.get("default")
        connection = store.save(replace(connection, organization_id="org-1"))
    """

    def __init__(
        self,
        db_path: Path = DEFAULT_DB_PATH,
        cipher: Optional[SecretCipher] = None,
        initialize: bool = True,
    ):
        self.db_path = Path(db_path)
        self.cipher = cipher
        if initialize:
            init_connection_db(self.db_path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    # =========================================================================
    # Value encoding
    # =========================================================================

    def _encode(self, name: str, field_name: str, value: Any) -> Any:
        if value is None or value == "":
            return None
        if field_name in DATETIME_FIELDS:
            return value.isoformat()
        if field_name in SECRET_FIELDS and self.cipher:
            return self.cipher.encrypt(value, context=name)
        return value

    def _decode(self, name: str, field_name: str, value: Any) -> Any:
        if value is None:
            return None
        if field_name in DATETIME_FIELDS:
            return datetime.fromisoformat(value)
        if field_name in SECRET_FIELDS and self.cipher:
            return self.cipher.decrypt(value, context=name)
        return value

    def _row_to_connection(self, row: sqlite3.Row) -> Connection:
        name = row["name"]
        values = {column: self._decode(name, column, row[column]) for column in COLUMNS}
        return Connection(name=name, id=row["id"], connected=bool(row["connected"]), **values)

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, name: str) -> Connection:
        """Load a connection by name.

        Returns an empty, unsaved snapshot (id None) when none exists yet.
        """
        conn = self._connect()
        try:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM connections WHERE name = ?", (name,))
            row = cursor.fetchone()
            if row is None:
                return Connection(name=name)
            return self._row_to_connection(row)
        finally:
            conn.close()

    def list_connected(self) -> List[Connection]:
        """Connections flagged connected that hold a refresh token."""
        conn = self._connect()
        try:
            cursor = conn.cursor()
            cursor.execute("""
                SELECT * FROM connections
                WHERE connected = 1 AND refresh_token IS NOT NULL
                ORDER BY id
            """)
            return [self._row_to_connection(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    # =========================================================================
    # Writes
    # =========================================================================

    def save(self, connection: Connection) -> Connection:
        """Upsert a snapshot by name.

        Fields that are None or empty are left untouched in storage, so a
        writer never clobbers values it did not set. `connected` is always
        written. The numeric id is assigned on first save.

        Returns:
            The stored connection, re-read from the database
        """
        now = datetime.utcnow().isoformat()
        values = [self._encode(connection.name, column, getattr(connection, column)) for column in COLUMNS]

        column_list = ", ".join(COLUMNS)
        placeholders = ", ".join("?" for _ in COLUMNS)
        updates = ", ".join(
            f"{column} = COALESCE(excluded.{column}, connections.{column})" for column in COLUMNS
        )

        conn = self._connect()
        try:
            cursor = conn.cursor()
            cursor.execute(f"""
                INSERT INTO connections (name, {column_list}, connected, created_at, updated_at)
                VALUES (?, {placeholders}, ?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    {updates},
                    connected = excluded.connected,
                    updated_at = excluded.updated_at
            """, (connection.name, *values, int(connection.connected), now, now))
            conn.commit()
        finally:
            conn.close()

        return self.get(connection.name)

    def update_tokens(
        self,
        name: str,
        access_token: str,
        access_token_expires_at: Optional[datetime],
        refresh_token: Optional[str] = None,
        refresh_token_expires_at: Optional[datetime] = None,
    ) -> Connection:
        """Store rotated tokens without touching any other column.

        A None refresh token (or expiry) keeps the stored value.
        """
        updates = {
            "access_token": access_token,
            "access_token_expires_at": access_token_expires_at,
            "refresh_token": refresh_token,
            "refresh_token_expires_at": refresh_token_expires_at,
        }
        encoded = {k: self._encode(name, k, v) for k, v in updates.items()}

        conn = self._connect()
        try:
            cursor = conn.cursor()
            cursor.execute("""
                UPDATE connections SET
                    access_token = ?,
                    access_token_expires_at = ?,
                    refresh_token = COALESCE(?, refresh_token),
                    refresh_token_expires_at = COALESCE(?, refresh_token_expires_at),
                    connected = 1,
                    updated_at = ?
                WHERE name = ?
            """, (
                encoded["access_token"],
                encoded["access_token_expires_at"],
                encoded["refresh_token"],
                encoded["refresh_token_expires_at"],
                datetime.utcnow().isoformat(),
                name,
            ))
            if cursor.rowcount == 0:
                raise KeyError(f"Connection {name!r} does not exist")
            conn.commit()
        finally:
            conn.close()

        return self.get(name)

    def disconnect(self, name: str) -> Connection:
        """Mark a connection disconnected and drop its tokens.

        Client credentials and the organization are kept so the operator can
        reconnect without registering a new client.
        """
        clear = ", ".join(f"{column} = NULL" for column in TOKEN_FIELDS)
        conn = self._connect()
        try:
            cursor = conn.cursor()
            cursor.execute(
                f"UPDATE connections SET {clear}, connected = 0, updated_at = ? WHERE name = ?",
                (datetime.utcnow().isoformat(), name),
            )
            conn.commit()
        finally:
            conn.close()

        return self.get(name)
