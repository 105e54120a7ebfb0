"""API tests for the sync and schedule endpoints (lifespan not started)."""

from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from erp_sync.config import secrets
from erp_sync.controllers import sync_controller
from erp_sync.controllers.sync_controller import resolve_service
from erp_sync.exceptions import InvalidManifest, ManifestNotFound
from erp_sync.main import app
from erp_sync.models.sync import SyncResult
from erp_sync.services.cursor_store import SyncCursor
from erp_sync.utils.constants import SyncStatus

HEADERS = {"x-admin-secret": "s3cret"}


class FakeService:
    stream = "invoices"

    def __init__(self):
        self.status = SyncStatus.IDLE
        self.run_incremental = AsyncMock(return_value=SyncResult(stream="invoices", mode="incremental", status="completed", new=1))
        self.run_snapshot = AsyncMock(return_value=SyncResult(stream="invoices", mode="snapshot", status="completed"))

    def cancel(self):
        return self.status == SyncStatus.RUNNING

    def get_status(self):
        return {"stream": self.stream, "status": self.status}


@pytest.fixture
def service():
    fake = FakeService()
    app.dependency_overrides[resolve_service] = lambda: fake
    yield fake
    app.dependency_overrides.clear()


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(secrets, "admin_secret", "s3cret")
    return TestClient(app)


class TestAuth:

    def test_missing_secret_is_rejected(self, client, service):
        assert client.post("/api/sync/invoices/incremental").status_code == 401

    def test_wrong_secret_is_rejected(self, client, service):
        response = client.get("/api/sync/invoices/status", headers={"x-admin-secret": "nope"})
        assert response.status_code == 401

    def test_unset_secret_rejects_everything(self, client, service, monkeypatch):
        monkeypatch.setattr(secrets, "admin_secret", "")
        assert client.get("/api/sync/invoices/status", headers=HEADERS).status_code == 401

    def test_root_is_public(self, client):
        assert client.get("/").json()["streams"] == ["invoices", "fulfillments", "sales_orders"]


class TestIncrementalEndpoint:

    def test_runs_and_returns_result(self, client, service):
        response = client.post("/api/sync/invoices/incremental?ids=101,102,x&dry_run=true", headers=HEADERS)

        assert response.status_code == 200
        assert response.json()["new"] == 1
        request = service.run_incremental.await_args.args[0]
        assert request.ids == [101, 102]
        assert request.dry_run is True
        assert request.mode == "explicit_ids"

    def test_unknown_stream(self, client):
        response = client.post("/api/sync/payments/incremental", headers=HEADERS)
        assert response.status_code == 404

    def test_invalid_parameters(self, client, service):
        assert client.post("/api/sync/invoices/incremental?since=yesterday", headers=HEADERS).status_code == 422
        assert client.post("/api/sync/invoices/incremental?scope=everyone", headers=HEADERS).status_code == 422
        service.run_incremental.assert_not_awaited()

    def test_running_stream_conflicts(self, client, service):
        service.status = SyncStatus.RUNNING
        assert client.post("/api/sync/invoices/incremental", headers=HEADERS).status_code == 409

    def test_background_run(self, client, service):
        response = client.post("/api/sync/invoices/incremental?background=true&force_all=true", headers=HEADERS)

        assert response.json() == {"status": "started", "stream": "invoices", "mode": "force_all"}
        service.run_incremental.assert_awaited_once()


class TestSnapshotEndpoint:

    def test_manifest_not_found(self, client, service):
        service.run_snapshot.side_effect = ManifestNotFound("manifest_latest.json", 2279)
        assert client.post("/api/sync/invoices/snapshot", headers=HEADERS).status_code == 404

    def test_invalid_manifest(self, client, service):
        service.run_snapshot.side_effect = InvalidManifest("manifest_latest.json", missing=["invoice_lines"])
        response = client.post("/api/sync/invoices/snapshot", headers=HEADERS)

        assert response.status_code == 422
        assert "invoice_lines" in response.json()["detail"]

    def test_snapshot_result(self, client, service):
        response = client.post("/api/sync/invoices/snapshot?dry_run=true", headers=HEADERS)

        assert response.json()["mode"] == "snapshot"
        assert service.run_snapshot.await_args.args[0].dry_run is True


class TestStatusEndpoints:

    def test_status_and_cancel(self, client, service):
        assert client.get("/api/sync/invoices/status", headers=HEADERS).json()["status"] == SyncStatus.IDLE
        assert client.post("/api/sync/invoices/cancel", headers=HEADERS).json()["status"] == "idle"

        service.status = SyncStatus.RUNNING
        assert client.post("/api/sync/invoices/cancel", headers=HEADERS).json()["status"] == "cancelling"

    def test_history(self, client, monkeypatch):
        history = AsyncMock(return_value=[{"id": 2, "stream": "invoices", "status": "completed"}])
        monkeypatch.setattr(sync_controller, "get_sync_history", history)

        response = client.get("/api/sync/history?limit=5&stream=invoices", headers=HEADERS)

        assert response.json()["count"] == 1
        history.assert_awaited_once_with(limit=5, stream="invoices")

    def test_cursors(self, client, monkeypatch):
        store = AsyncMock()
        store.list_all.return_value = [SyncCursor("invoices", "2024-05-01T10:00:00Z", "2024-05-01T09:00:00.000Z")]
        monkeypatch.setattr(sync_controller, "cursor_store", store)

        response = client.get("/api/sync/cursors", headers=HEADERS)

        assert response.json() == {"cursors": [{
            "key": "invoices",
            "last_success_at": "2024-05-01T10:00:00Z",
            "last_cursor": "2024-05-01T09:00:00.000Z",
        }]}


class TestScheduleEndpoints:

    def test_invalid_crontab(self, client):
        response = client.post("/api/schedule", json={"stream": "invoices", "crontab": "every now and then"}, headers=HEADERS)
        assert response.status_code == 422

    def test_unknown_stream(self, client):
        response = client.post("/api/schedule", json={"stream": "payments", "crontab": "*/5 * * * *"}, headers=HEADERS)
        assert response.status_code == 404

    def test_schedule_requires_admin(self, client):
        assert client.get("/api/schedule").status_code == 401
        assert "schedules" in client.get("/api/schedule", headers=HEADERS).json()
