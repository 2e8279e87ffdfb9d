"""Tests for the operations API in pdf_harvester.api."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from tests.conftest import FakeAdapter, FakeMailbox, _build_pdf_email, make_profile

from pdf_harvester.adapters.registry import AdapterRegistry
from pdf_harvester.api import create_app
from pdf_harvester.config import HarvesterConfig, StorageConfig
from pdf_harvester.errors import AccountBusyError, AuthRefreshError, StorageError
from pdf_harvester.service import HarvesterService
from pdf_harvester.stores import MemoryConfigStore, MemoryRecordStore


@pytest.fixture
def adapter() -> FakeAdapter:
    return FakeAdapter(FakeMailbox({"1": _build_pdf_email()}))


@pytest.fixture
def service(adapter: FakeAdapter, storage_config: StorageConfig) -> HarvesterService:
    return HarvesterService(
        HarvesterConfig(storage=storage_config),
        registry=AdapterRegistry([adapter]),
        configs=MemoryConfigStore([make_profile(), make_profile(id="acct-off", active=False)]),
        records=MemoryRecordStore(),
    )


@pytest.fixture
def client(service: HarvesterService) -> TestClient:
    return TestClient(create_app(service))


class TestProbes:
    def test_health_before_scheduler_start(self, client: TestClient):
        resp = client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["service"] == "pdf-harvester"
        assert data["status"] == "stopped"
        assert data["uptime_seconds"] >= 0
        assert data["scheduler"] == {"running": False, "ticks": 0, "in_flight": []}

    def test_not_ready_until_scheduler_runs(self, client: TestClient):
        resp = client.get("/ready")
        assert resp.status_code == 503
        assert resp.json() == {"ready": False}

    def test_ready_with_running_scheduler(self, service: HarvesterService):
        scheduler = MagicMock()
        scheduler.is_running = True
        scheduler.ticks = 7
        scheduler.in_flight = ["acct-1"]
        service.scheduler = scheduler
        client = TestClient(create_app(service))

        assert client.get("/ready").json() == {"ready": True}
        health = client.get("/health").json()
        assert health["status"] == "running"
        assert health["scheduler"] == {"running": True, "ticks": 7, "in_flight": ["acct-1"]}


class TestSyncTriggers:
    def test_sync_account(self, client: TestClient):
        resp = client.post("/accounts/acct-1/sync")
        assert resp.status_code == 200
        data = resp.json()
        assert data["account_id"] == "acct-1"
        assert data["records_created"] == 1
        assert data["skipped"] is False

    def test_sync_inactive_account_is_skipped(self, client: TestClient, adapter: FakeAdapter):
        resp = client.post("/accounts/acct-off/sync")
        assert resp.status_code == 200
        assert resp.json()["skipped"] is True
        assert adapter.connect_calls == 0

    def test_sync_unknown_account(self, client: TestClient):
        assert client.post("/accounts/nope/sync").status_code == 404

    def test_sync_busy_account(self, client: TestClient, service: HarvesterService):
        with patch.object(
            service.orchestrator, "sync_account", AsyncMock(side_effect=AccountBusyError("acct-1"))
        ):
            resp = client.post("/accounts/acct-1/sync")
        assert resp.status_code == 409
        assert "acct-1" in resp.json()["error"]

    def test_sync_auth_failure(self, client: TestClient, adapter: FakeAdapter):
        adapter.connect_error = AuthRefreshError("Auth token expired - requires reauthorization")

        resp = client.post("/accounts/acct-1/sync")

        assert resp.status_code == 502
        assert resp.json()["error_type"] == "AuthRefreshError"
        # Deactivated accounts drop out of the sweep.
        assert client.post("/sync").json() == []

    def test_test_connection(self, client: TestClient, adapter: FakeAdapter):
        assert client.post("/accounts/acct-1/test-connection").json() == {"success": True}
        adapter.connect_error = AuthRefreshError("revoked")
        assert client.post("/accounts/acct-1/test-connection").json() == {"success": False}

    def test_test_connection_unknown_account(self, client: TestClient):
        assert client.post("/accounts/nope/test-connection").status_code == 404

    def test_sync_all(self, client: TestClient):
        resp = client.post("/sync")
        assert resp.status_code == 200
        results = resp.json()
        assert [r["account_id"] for r in results] == ["acct-1"]
        assert results[0]["status"] == "succeeded"
        assert results[0]["report"]["records_created"] == 1


class TestAttachments:
    def _sync(self, client: TestClient) -> dict:
        client.post("/accounts/acct-1/sync")
        records = client.get("/attachments").json()
        assert len(records) == 1
        return records[0]

    def test_list_and_filter(self, client: TestClient):
        record = self._sync(client)
        assert record["file_name"] == "invoice.pdf"
        assert record["profile_id"] == "acct-1"
        assert client.get("/attachments", params={"profile_id": "acct-1"}).json() == [record]
        assert client.get("/attachments", params={"profile_id": "acct-2"}).json() == []

    def test_get(self, client: TestClient):
        record = self._sync(client)
        resp = client.get(f"/attachments/{record['id']}")
        assert resp.status_code == 200
        assert resp.json() == record

    def test_get_unknown(self, client: TestClient):
        assert client.get("/attachments/missing").status_code == 404

    def test_delete_removes_file_and_record(self, client: TestClient):
        record = self._sync(client)
        assert Path(record["local_path"]).exists()

        resp = client.delete(f"/attachments/{record['id']}")

        assert resp.status_code == 200
        assert resp.json() == {"id": record["id"], "deleted": True, "file_removed": True}
        assert not Path(record["local_path"]).exists()
        assert client.get(f"/attachments/{record['id']}").status_code == 404

    def test_delete_with_file_already_gone(self, client: TestClient):
        record = self._sync(client)
        Path(record["local_path"]).unlink()

        resp = client.delete(f"/attachments/{record['id']}")

        assert resp.json()["file_removed"] is False
        assert client.get("/attachments").json() == []

    def test_delete_storage_failure_keeps_record(self, client: TestClient, service: HarvesterService):
        record = self._sync(client)
        with patch.object(service.orchestrator.storage, "delete", side_effect=StorageError("read-only")):
            resp = client.delete(f"/attachments/{record['id']}")
        assert resp.status_code == 500
        assert client.get(f"/attachments/{record['id']}").status_code == 200

    def test_delete_unknown(self, client: TestClient):
        assert client.delete("/attachments/missing").status_code == 404
