"""Connection store and secret encryption tests."""

import sqlite3
from dataclasses import replace
from datetime import datetime, timedelta

import pytest

from connectors.billing_platform.bp_connection import Connection, ConnectionStore
from core.security.encryption import SecretCipher, generate_encryption_key


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "sync.db"


class TestConnectionSnapshot:

    def test_access_token_margin(self):
        now = datetime(2024, 1, 1, 12, 0)
        connection = Connection(
            name="default",
            access_token="tok",
            access_token_expires_at=now + timedelta(minutes=4),
        )
        assert not connection.is_access_token_valid(margin_minutes=5, now=now)
        assert connection.is_access_token_valid(margin_minutes=3, now=now)
        assert not Connection(name="default").is_access_token_valid()

    def test_refresh_token_without_expiry_is_usable(self):
        now = datetime(2024, 1, 1)
        assert not Connection(name="default", refresh_token="r").is_refresh_token_expired(now)
        expired = Connection(name="default", refresh_token="r", refresh_token_expires_at=now - timedelta(seconds=1))
        assert expired.is_refresh_token_expired(now)

    def test_status_never_contains_secrets(self):
        connection = Connection(name="default", client_secret="s3cret", access_token="tok", refresh_token="r")
        status = connection.to_status()
        assert "s3cret" not in str(status)
        assert "tok" not in [v for v in status.values() if isinstance(v, str)]
        assert status["has_access_token"] and status["has_refresh_token"]


class TestConnectionStore:

    def test_missing_connection_is_an_empty_snapshot(self, db_path):
        connection = ConnectionStore(db_path).get("default")
        assert connection.id is None
        assert not connection.connected

    def test_save_keeps_fields_it_did_not_set(self, db_path):
        store = ConnectionStore(db_path)
        store.save(Connection(name="default", client_id="client-1", organization_id="org-1", connected=True))

        saved = store.save(Connection(name="default", access_token="tok", connected=True))

        assert saved.id is not None
        assert saved.client_id == "client-1"
        assert saved.organization_id == "org-1"
        assert saved.access_token == "tok"

    def test_update_tokens_keeps_refresh_token_when_not_rotated(self, db_path):
        store = ConnectionStore(db_path)
        store.save(Connection(name="default", refresh_token="r1", connected=True))
        expires = datetime(2030, 1, 1, 0, 0)

        updated = store.update_tokens("default", "tok-2", expires)

        assert updated.access_token == "tok-2"
        assert updated.access_token_expires_at == expires
        assert updated.refresh_token == "r1"

    def test_update_tokens_of_unknown_connection(self, db_path):
        with pytest.raises(KeyError):
            ConnectionStore(db_path).update_tokens("nope", "tok", None)

    def test_list_connected_and_disconnect(self, db_path):
        store = ConnectionStore(db_path)
        store.save(Connection(name="a", refresh_token="r", client_id="c", connected=True))
        store.save(Connection(name="b", connected=True))

        assert [c.name for c in store.list_connected()] == ["a"]

        disconnected = store.disconnect("a")
        assert not disconnected.connected
        assert disconnected.refresh_token is None
        assert disconnected.client_id == "c"
        assert store.list_connected() == []


class TestSecretEncryption:

    def test_secrets_are_encrypted_at_rest(self, db_path):
        store = ConnectionStore(db_path, SecretCipher(generate_encryption_key()))
        store.save(Connection(name="default", client_secret="s3cret", access_token="tok", connected=True))

        conn = sqlite3.connect(db_path)
        try:
            row = conn.execute("SELECT client_secret, access_token FROM connections").fetchone()
        finally:
            conn.close()
        assert all(value.startswith("enc:v1:") for value in row)

        loaded = store.get("default")
        assert loaded.client_secret == "s3cret"
        assert loaded.access_token == "tok"

    def test_value_bound_to_its_connection(self):
        cipher = SecretCipher(generate_encryption_key())
        stored = cipher.encrypt("tok", context="a")

        assert cipher.decrypt(stored, context="a") == "tok"
        with pytest.raises(ValueError):
            cipher.decrypt(stored, context="b")

    def test_plaintext_values_stay_readable(self):
        cipher = SecretCipher(generate_encryption_key())
        assert cipher.decrypt("legacy-token", context="a") == "legacy-token"

    def test_invalid_key(self):
        with pytest.raises(ValueError):
            SecretCipher("c2hvcnQ=")

    def test_snapshots_are_immutable(self):
        connection = Connection(name="default")
        with pytest.raises(Exception):
            connection.access_token = "x"
        assert replace(connection, access_token="x").access_token == "x"
