"""
Operator API Tests

Drives the FastAPI app through TestClient over temporary stores and the
in-memory billing platform.
"""

from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from api.server import create_app
from connectors.billing_platform.bp_connection import Connection, ConnectionStore
from connectors.erp_base import EntityKind
from sync_engine.runtime import SyncRuntime
from sync_queue.queue import QueueStatus


@pytest.fixture
def connections(settings):
    store = ConnectionStore(settings.db_path)
    store.save(Connection(
        name="default",
        organization_id="org-1",
        client_id="client-1",
        client_secret="secret-1",
        access_token="tok-1",
        access_token_expires_at=datetime.utcnow() + timedelta(hours=1),
        refresh_token="refresh-1",
        connected=True,
    ))
    return store


@pytest.fixture
def runtime(settings, connections, records, documents, oplog, queue, ledger):
    return SyncRuntime(
        settings=settings,
        connections=connections,
        records=records,
        documents=documents,
        oplog=oplog,
        queue=queue,
        ledger=ledger,
    )


@pytest.fixture
def client(runtime, platform):
    with TestClient(create_app(runtime=runtime, billing_client=platform)) as client:
        yield client


class TestHealth:

    def test_health_reports_connection(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        services = response.json()["services"]
        assert services["connection"] == "connected"
        assert services["access_token"] == "valid"
        assert services["failed_queue_entries"] == "0"

    def test_ready_requires_connection(self, client, connections):
        assert client.get("/ready").json() == {"status": "ready"}

        connections.disconnect("default")
        response = client.get("/ready")

        assert response.status_code == 503
        assert response.json()["status"] == "not_ready"

    def test_live(self, client):
        assert client.get("/live").json() == {"status": "alive"}


class TestQueueRoutes:

    def test_enqueue_and_list(self, client):
        response = client.post("/queue", json={"entity_kind": "invoice", "record_key": "INV-1"})

        assert response.status_code == 201
        entry = response.json()
        assert entry["action"] == "create_or_update"
        assert entry["status"] == "pending"

        listed = client.get("/queue", params={"entity_kind": "invoice"}).json()
        assert [e["record_key"] for e in listed] == ["INV-1"]
        assert client.get("/queue/stats").json()["pending"] == 1

    def test_contact_delete_without_account_is_rejected(self, client):
        response = client.post("/queue", json={
            "entity_kind": "contact", "record_key": "con-1", "action": "delete",
        })

        assert response.status_code == 422

    def test_reset_and_remove(self, client, queue):
        entry = queue.enqueue(EntityKind.INVOICE, "INV-1", error="ApiError: boom")

        reset = client.post(f"/queue/{entry.id}/reset")
        assert reset.status_code == 200
        assert reset.json()["retry_count"] == 0

        assert client.delete(f"/queue/{entry.id}").status_code == 204
        assert client.get(f"/queue/{entry.id}").status_code == 404
        assert client.delete(f"/queue/{entry.id}").status_code == 404
        assert client.post(f"/queue/{entry.id}/reset").status_code == 404

    def test_status_filter(self, client, queue):
        queue.enqueue(EntityKind.ACCOUNT, "C1")

        assert client.get("/queue", params={"status": QueueStatus.FAILED.value}).json() == []


class TestEvents:

    def test_create_event_syncs_immediately(self, client, platform, account):
        response = client.post(f"/events/account/{account.id}", json={"event": "create"})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "synced"
        assert body["remote_id"] in platform.accounts_by_id
        assert platform.accounts_by_id[body["remote_id"]]["organizationId"] == "org-1"

    def test_delete_event(self, client, platform):
        response = client.post("/events/invoice/INV-9", json={
            "event": "delete", "deleted": {"remote_id": "inv-gone"},
        })

        assert response.json()["status"] == "deleted"
        assert platform.calls == [("invoices.delete", "inv-gone")]

    def test_unknown_kind_is_rejected(self, client):
        response = client.post("/events/supplier/1", json={"event": "create"})
        assert response.status_code == 422

    def test_logs_show_the_sync(self, client, account):
        client.post(f"/events/account/{account.id}", json={"event": "update"})

        logs = client.get("/logs", params={"entity_kind": "account", "local_id": account.id}).json()

        assert [entry["operation"] for entry in logs] == ["accounts.create"]
        assert logs[0]["status"] == "success"


class TestConnectionsAndMetrics:

    def test_connection_status_hides_secrets(self, client):
        status = client.get("/connections/default").json()

        assert status["connected"] is True
        assert status["has_refresh_token"] is True
        assert "access_token" not in status
        assert "client_secret" not in status

    def test_disconnect(self, client):
        status = client.post("/connections/default/disconnect").json()

        assert status["connected"] is False
        assert status["has_access_token"] is False
        assert status["client_id"] == "client-1"

    def test_unknown_connection(self, client):
        assert client.get("/connections/other").status_code == 404
        assert client.post("/connections/other/disconnect").status_code == 404

    def test_metrics_summary(self, client, account):
        client.post(f"/events/account/{account.id}", json={"event": "create"})

        summary = client.get("/metrics").json()

        assert summary["sync"]["succeeded"] >= 1
        assert set(summary) >= {"api", "sync", "queue"}
