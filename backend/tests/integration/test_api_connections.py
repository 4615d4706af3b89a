"""Integration tests for the connection lifecycle API."""

import threading
from unittest.mock import MagicMock

import pytest

from api.connections import get_service
from integrations.exceptions import AuthFailureReason, ProviderAuthError, ProviderConnectionError
from main import app
from services.exceptions import InternalStoreError

LOGIN = {"username": "user@example.com", "password": "hunter2"}
USER = {"X-User-Id": "user-1"}


def _connect(client, headers=USER, **extra):
    response = client.post("/api/sync/acme/connect", json={**LOGIN, **extra}, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


def _wait_for_job(service, connection_id):
    job = service.dispatcher.active_job(connection_id)
    if job is not None:
        assert job.finished.wait(5)


class TestConnect:
    def test_connect(self, client):
        data = _connect(client)

        assert data["provider"] == "acme"
        assert data["user_id"] == "user-1"
        assert data["status"] == "connected"
        assert data["name"] == "acme - user@example.com"
        assert data["sync_frequency"] == "daily"
        assert data["account_count"] == 0
        assert "password" not in data
        assert "external_identity" not in data

    def test_custom_name(self, client):
        assert _connect(client, name="Household")["name"] == "Household"

    def test_bad_credentials(self, client, mock_provider):
        mock_provider.authenticate_error = ProviderAuthError(
            "denied", provider_name="acme", reason=AuthFailureReason.REVOKED
        )

        response = client.post("/api/sync/acme/connect", json=LOGIN, headers=USER)

        assert response.status_code == 401
        assert response.json()["detail"]["reason"] == "revoked"

    def test_otp_required(self, client, mock_provider):
        mock_provider.require_otp = True

        response = client.post("/api/sync/acme/connect", json=LOGIN, headers=USER)

        assert response.status_code == 401
        assert response.json()["detail"]["otp_required"] is True

        response = client.post(
            "/api/sync/acme/connect", json={**LOGIN, "otp_code": "123456"}, headers=USER
        )
        assert response.status_code == 201

    def test_provider_unavailable(self, client, mock_provider):
        mock_provider.authenticate_error = ProviderConnectionError("down", provider_name="acme")

        response = client.post("/api/sync/acme/connect", json=LOGIN, headers=USER)

        assert response.status_code == 502

    def test_duplicate_conflicts(self, client):
        first = _connect(client)

        response = client.post("/api/sync/acme/connect", json=LOGIN, headers=USER)

        assert response.status_code == 409
        assert response.json()["detail"]["existing_connection_id"] == first["id"]

    def test_duplicate_merge(self, client):
        first = _connect(client)

        response = client.post(
            "/api/sync/acme/connect", json={**LOGIN, "merge": True}, headers=USER
        )

        assert response.status_code == 201
        assert response.json()["id"] == first["id"]

    def test_unknown_provider(self, client):
        response = client.post("/api/sync/nope/connect", json=LOGIN, headers=USER)
        assert response.status_code == 404

    def test_missing_password(self, client):
        response = client.post(
            "/api/sync/acme/connect", json={"username": "u"}, headers=USER
        )
        assert response.status_code == 422


class TestListAndGet:
    def test_list_in_creation_order(self, client, mock_provider):
        first = _connect(client)
        mock_provider.external_identity = "identity-2"
        second = _connect(client)

        response = client.get("/api/sync/connections", headers=USER)

        assert response.status_code == 200
        assert [c["id"] for c in response.json()["connections"]] == [first["id"], second["id"]]

    def test_list_scoped_to_user(self, client):
        _connect(client)
        response = client.get("/api/sync/connections", headers={"X-User-Id": "user-2"})
        assert response.json() == {"connections": []}

    def test_default_user(self, client):
        _connect(client, headers={})
        response = client.get("/api/sync/connections")
        assert len(response.json()["connections"]) == 1

    def test_get(self, client):
        conn = _connect(client)
        response = client.get(f"/api/sync/connections/{conn['id']}", headers=USER)
        assert response.status_code == 200
        assert response.json()["id"] == conn["id"]

    def test_get_missing(self, client):
        response = client.get("/api/sync/connections/missing", headers=USER)
        assert response.status_code == 404

    def test_get_other_users_connection(self, client):
        conn = _connect(client)
        response = client.get(
            f"/api/sync/connections/{conn['id']}", headers={"X-User-Id": "user-2"}
        )
        assert response.status_code == 404


class TestUpdate:
    def test_rename_and_frequency(self, client):
        conn = _connect(client)

        response = client.put(
            f"/api/sync/connections/{conn['id']}",
            json={"name": "Joint", "sync_frequency": "hourly"},
            headers=USER,
        )

        assert response.status_code == 200
        assert response.json()["name"] == "Joint"
        assert response.json()["sync_frequency"] == "hourly"

    def test_invalid_frequency(self, client):
        conn = _connect(client)
        response = client.put(
            f"/api/sync/connections/{conn['id']}",
            json={"sync_frequency": "weekly"},
            headers=USER,
        )
        assert response.status_code == 422

    def test_missing(self, client):
        response = client.put("/api/sync/connections/missing", json={"name": "x"}, headers=USER)
        assert response.status_code == 404


class TestSync:
    def test_trigger_and_poll(self, client, service):
        conn = _connect(client)

        response = client.post(f"/api/sync/connections/{conn['id']}/sync", headers=USER)

        assert response.status_code == 202
        assert response.json() == {
            "connection_id": conn["id"],
            "status": "pending",
            "message": "Sync started",
        }
        _wait_for_job(service, conn["id"])

        status = client.get(f"/api/sync/connections/{conn['id']}/status", headers=USER).json()
        assert status["status"] == "connected"
        assert status["last_sync_at"] is not None
        assert status["last_sync_error"] is None
        assert status["active_job"] is None
        assert status["last_job"]["result"] == "succeeded"
        assert status["last_job"]["accounts_created"] == 2
        assert status["last_job"]["accounts_updated"] == 0
        listed = client.get("/api/sync/connections", headers=USER).json()["connections"]
        assert listed[0]["account_count"] == 2

    def test_already_in_progress(self, client, service, mock_provider):
        gate = threading.Event()
        mock_provider.fetch_gate = gate
        conn = _connect(client)
        try:
            first = client.post(f"/api/sync/connections/{conn['id']}/sync", headers=USER)
            second = client.post(f"/api/sync/connections/{conn['id']}/sync", headers=USER)

            assert first.status_code == 202
            assert second.status_code == 409

            status = client.get(
                f"/api/sync/connections/{conn['id']}/status", headers=USER
            ).json()
            assert status["status"] == "syncing"
            assert status["active_job"]["result"] == "pending"
        finally:
            gate.set()
        _wait_for_job(service, conn["id"])

    def test_failure_recorded_on_connection(self, client, service, mock_provider):
        mock_provider.fetch_error = ProviderAuthError("expired", provider_name="acme")
        conn = _connect(client)

        client.post(f"/api/sync/connections/{conn['id']}/sync", headers=USER)
        _wait_for_job(service, conn["id"])

        data = client.get(f"/api/sync/connections/{conn['id']}", headers=USER).json()
        assert data["status"] == "error"
        assert data["last_sync_error"] == "Authentication failed - please reconnect"

    def test_missing(self, client):
        response = client.post("/api/sync/connections/missing/sync", headers=USER)
        assert response.status_code == 404


class TestDelete:
    def test_delete(self, client):
        conn = _connect(client)

        response = client.delete(f"/api/sync/connections/{conn['id']}", headers=USER)

        assert response.status_code == 200
        assert response.json() == {"success": True}
        assert client.get(f"/api/sync/connections/{conn['id']}", headers=USER).status_code == 404

    def test_missing(self, client):
        response = client.delete("/api/sync/connections/missing", headers=USER)
        assert response.status_code == 404


class TestCredentials:
    def test_check_before_and_after_connect(self, client):
        before = client.get("/api/sync/acme/check-credentials", headers=USER).json()
        assert before == {"has_credentials": False, "email": None}

        _connect(client)

        after = client.get("/api/sync/acme/check-credentials", headers=USER).json()
        assert after == {"has_credentials": True, "email": "user@example.com"}

    def test_check_unknown_provider(self, client):
        response = client.get("/api/sync/nope/check-credentials", headers=USER)
        assert response.status_code == 404

    def test_reconnect_without_credentials(self, client):
        response = client.post("/api/sync/acme/reconnect", headers=USER)
        assert response.status_code == 404

    def test_reconnect_after_disconnect(self, client):
        conn = _connect(client)
        client.delete(f"/api/sync/connections/{conn['id']}", headers=USER)

        response = client.post("/api/sync/acme/reconnect", headers=USER)

        assert response.status_code == 200
        new_id = response.json()["connection_id"]
        assert new_id != conn["id"]
        assert client.get(f"/api/sync/connections/{new_id}", headers=USER).status_code == 200

    def test_reconnect_rejected(self, client, mock_provider):
        _connect(client)
        mock_provider.refresh_error = ProviderAuthError("expired", provider_name="acme")
        mock_provider.authenticate_error = ProviderAuthError("expired", provider_name="acme")

        response = client.post("/api/sync/acme/reconnect", headers=USER)

        assert response.status_code == 401

    def test_forget(self, client):
        _connect(client)

        response = client.delete("/api/sync/acme/credentials", headers=USER)

        assert response.json() == {"success": True}
        check = client.get("/api/sync/acme/check-credentials", headers=USER).json()
        assert check["has_credentials"] is False


class TestErrorMapping:
    @pytest.fixture
    def broken_client(self, client):
        service = MagicMock()
        app.dependency_overrides[get_service] = lambda: service
        return client, service

    def test_store_failure_is_500(self, broken_client):
        client, service = broken_client
        service.list_for_user.side_effect = InternalStoreError("disk full")

        response = client.get("/api/sync/connections", headers=USER)

        assert response.status_code == 500
        assert "disk full" not in response.text

    def test_unexpected_error_hidden(self, broken_client):
        client, service = broken_client
        service.sync_now.side_effect = RuntimeError("secret internals")

        response = client.post("/api/sync/connections/abc/sync", headers=USER)

        assert response.status_code == 500
        assert "secret internals" not in response.text
