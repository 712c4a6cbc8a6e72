"""Tests for the consent HTTP endpoints."""

from __future__ import annotations

import json
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, UTC
from typing import Dict

import pytest
from fastapi.testclient import TestClient

from farmwork_consent.audit.logger import file_lock
from farmwork_consent.crypto.jwt import create_access_token
from farmwork_consent.main import create_app
from farmwork_consent.runtime import ConsentRuntime


ADMIN_HEADERS = {"Authorization": "Bearer admin-secret"}


@pytest.fixture
def runtime(settings):
    configured = settings.model_copy(update={"trust_proxy": True})
    rt = ConsentRuntime(configured)
    yield rt
    rt.close()


@pytest.fixture
def client(runtime):
    with TestClient(create_app(runtime=runtime)) as test_client:
        yield test_client


def user_headers(settings, user_id: str = "user-42") -> Dict[str, str]:
    token = create_access_token(user_id, settings.jwt_secret, settings.jwt_algorithm)
    return {"Authorization": f"Bearer {token}"}


class TestRecordEndpoints:

    def test_record_consent_end_to_end(self, client, runtime) -> None:
        response = client.post(
            "/api/consent",
            json={"consent": "accepted", "metadata": {"page": "/signup"}},
            headers={"X-Forwarded-For": "203.0.113.5, 10.0.0.1", "User-Agent": "FarmBrowser/2.0",
                     "DNT": "1"},
        )

        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        data = body["data"]
        assert data["consent"] == "accepted"
        assert data["sessionId"]

        stored = runtime.repository.get_consent(data["id"])
        assert stored.ip == "203.0.113.5"
        assert stored.user_agent == "FarmBrowser/2.0"
        assert stored.user_id is None
        assert stored.metadata["page"] == "/signup"
        assert stored.metadata["headers"] == {"accept-language": "unknown", "dnt": "1",
                                              "referer": "unknown"}

        lines = runtime.audit_logger.consent_log_path.read_text().splitlines()
        assert json.loads(lines[-1])["id"] == data["id"]

    def test_record_consent_attaches_authenticated_user(self, client, runtime, settings) -> None:
        response = client.post("/api/consent", json={"consent": "declined"},
                               headers=user_headers(settings))

        assert response.status_code == 201
        assert runtime.repository.get_consent(response.json()["data"]["id"]).user_id == "user-42"

    def test_invalid_token_records_anonymously(self, client, runtime) -> None:
        response = client.post("/api/consent", json={"consent": "accepted"},
                               headers={"Authorization": "Bearer not-a-jwt"})

        assert response.status_code == 201
        assert runtime.repository.get_consent(response.json()["data"]["id"]).user_id is None

    def test_invalid_consent_value(self, client) -> None:
        response = client.post("/api/consent", json={"consent": "maybe"})

        assert response.status_code == 400
        assert response.json() == {
            "success": False,
            "error": 'Invalid consent value. Must be "accepted" or "declined"',
            "code": "INVALID_CONSENT_VALUE",
        }

    def test_missing_consent_value(self, client) -> None:
        response = client.post("/api/consent", json={})

        assert response.status_code == 400
        assert response.json()["code"] == "CONSENT_REQUIRED"

    def test_legacy_endpoint_logs_only(self, client, runtime) -> None:
        response = client.post("/consent", json={"consent": "accepted", "userAgent": "Banner/1.0"})

        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "Consent logged successfully"
        assert body["sessionId"]

        entry = json.loads(runtime.audit_logger.consent_log_path.read_text().splitlines()[-1])
        assert entry["id"] == body["sessionId"]
        assert entry["userAgent"] == "Banner/1.0"
        assert runtime.repository.get_consent(body["sessionId"]) is None

    def test_legacy_endpoint_rejects_invalid_value(self, client) -> None:
        response = client.post("/consent", json={"consent": "nope"})

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_CONSENT_VALUE"


class TestAdminEndpoints:

    def test_stats_requires_admin_key(self, client) -> None:
        assert client.get("/api/consent/stats").status_code == 401
        response = client.get("/api/consent/stats", headers={"Authorization": "Bearer wrong"})
        assert response.status_code == 401
        assert response.json()["code"] == "UNAUTHORIZED"

    def test_stats(self, client) -> None:
        client.post("/api/consent", json={"consent": "accepted"})
        client.post("/api/consent", json={"consent": "declined"})

        response = client.get("/api/consent/stats", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["total"] == 2
        assert data["accepted"] == 1
        assert data["declined"] == 1
        assert data["acceptanceRate"] == 50.0
        assert len(data["byDate"]) == 1

    def test_stats_invalid_filter(self, client) -> None:
        response = client.get("/api/consent/stats", params={"consent": "bogus"},
                              headers=ADMIN_HEADERS)

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_CONSENT_VALUE"

    def test_unconfigured_admin_key_rejects_everything(self, settings) -> None:
        configured = settings.model_copy(update={"admin_api_key": None})
        rt = ConsentRuntime(configured)
        try:
            with TestClient(create_app(runtime=rt)) as test_client:
                for headers in ({}, {"Authorization": "Bearer"}, {"Authorization": "Bearer None"}):
                    assert test_client.get("/api/consent/stats", headers=headers).status_code == 401
        finally:
            rt.close()

    def test_cleanup(self, client) -> None:
        response = client.post("/api/consent/cleanup", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["data"]["deletedCount"] == 0
        assert body["message"] == "Old consent records cleaned up successfully"

    def test_retention_overview(self, client) -> None:
        client.post("/api/consent", json={"consent": "accepted"})

        response = client.get("/api/consent/retention", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["stats"]["total"] == 1
        assert data["stats"]["cleanupRecommended"] is False
        assert data["configuration"]["retentionPolicy"] == "delete"
        assert data["configuration"]["retentionPeriodDays"] == 30

    def test_maintenance(self, client) -> None:
        response = client.post("/api/consent/maintenance", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["success"] is True
        assert data["policy"] == "delete"
        assert data["configuration"]["valid"] is True

    def test_logs_pagination(self, client) -> None:
        for _ in range(3):
            client.post("/api/consent", json={"consent": "accepted"})

        response = client.get("/api/consent/logs", params={"page": 1, "limit": 2},
                              headers=ADMIN_HEADERS)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["total"] == 3
        assert len(data["entries"]) == 2

    def test_log_integrity(self, client) -> None:
        client.post("/api/consent", json={"consent": "accepted"})

        response = client.get("/api/consent/logs/integrity", params={"file": "consent"},
                              headers=ADMIN_HEADERS)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["validLines"] == 1
        assert data["invalidLines"] == 0

    def test_log_integrity_rejects_unknown_file(self, client) -> None:
        response = client.get("/api/consent/logs/integrity", params={"file": "../../etc/passwd"},
                              headers=ADMIN_HEADERS)

        assert response.status_code == 400
        assert response.json()["success"] is False


class TestUserEndpoints:

    @pytest.mark.parametrize("path", [
        "/api/consent/history",
        "/api/consent/latest",
        "/api/consent/valid",
        "/api/consent/export",
    ])
    def test_requires_user_token(self, client, path) -> None:
        response = client.get(path)

        assert response.status_code == 401
        assert response.json()["code"] == "AUTH_REQUIRED"

    def test_token_signed_with_other_secret(self, client) -> None:
        token = create_access_token("user-42", "another-secret-that-is-32-bytes-long")

        response = client.get("/api/consent/history", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 401

    def test_user_flow(self, client, settings) -> None:
        headers = user_headers(settings)
        client.post("/api/consent", json={"consent": "accepted"}, headers=headers)

        valid = client.get("/api/consent/valid", headers=headers).json()["data"]
        assert valid == {"userId": "user-42", "hasValidConsent": True, "timestamp": valid["timestamp"]}

        withdraw = client.post("/api/consent/withdraw", headers=headers)
        assert withdraw.status_code == 200
        assert withdraw.json()["message"] == "Consent withdrawn successfully"

        latest = client.get("/api/consent/latest", headers=headers).json()["data"]
        assert latest["latestConsent"]["consent"] == "declined"
        assert latest["latestConsent"]["metadata"]["previousConsent"] == "accepted"

        history = client.get("/api/consent/history", headers=headers).json()["data"]
        assert len(history["history"]) == 2

        assert client.get("/api/consent/valid", headers=headers).json()["data"]["hasValidConsent"] is False

        export = client.get("/api/consent/export", headers=headers).json()["data"]
        assert export["userId"] == "user-42"
        assert len(export["consentRecords"]) == 2

    def test_latest_without_history(self, client, settings) -> None:
        response = client.get("/api/consent/latest", headers=user_headers(settings, "fresh-user"))

        assert response.status_code == 200
        assert response.json()["data"]["latestConsent"] is None


class TestHealth:

    def test_health_records_check_entry(self, client, runtime) -> None:
        response = client.get("/api/consent/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"] == "connected"
        check = runtime.repository.get_consent(body["testRecordId"])
        assert check.user_agent == "health-check"


def test_authenticated_consent_from_forwarded_ip(client, settings) -> None:
    headers = {**user_headers(settings, "farmer-1"), "X-Forwarded-For": "203.0.113.5"}

    response = client.post("/api/consent", json={"consent": "accepted"}, headers=headers)
    assert response.status_code == 201

    latest = client.get("/api/consent/latest", headers=headers).json()["data"]["latestConsent"]
    assert latest["consent"] == "accepted"
    assert latest["ip"] == "203.0.113.5"

    valid = client.get("/api/consent/valid", headers=headers).json()["data"]
    assert valid["hasValidConsent"] is True


def test_legacy_consent_waits_off_the_event_loop(client, runtime) -> None:
    lock = file_lock(runtime.audit_logger.consent_log_path)
    with ThreadPoolExecutor(max_workers=2) as pool:
        lock.acquire()
        try:
            pending = pool.submit(client.post, "/consent", json={"consent": "accepted"})
            time.sleep(0.2)
            # Stats never touch the consent log and must be served while the
            # legacy write is parked on the held lock
            stats = pool.submit(client.get, "/api/consent/stats", headers=ADMIN_HEADERS)
            stats_response = stats.result(timeout=10)
            parked = not pending.done()
        finally:
            lock.release()
        response = pending.result(timeout=10)

    assert stats_response.status_code == 200
    assert parked
    assert response.status_code == 200
    assert response.json()["sessionId"]



class TestConsentTokenGate:

    def test_token_from_legacy_endpoint(self, client, runtime) -> None:
        token = client.post("/consent", json={"consent": "accepted"}).json()["sessionId"]

        response = client.get("/api/consent/token", headers={"X-Consent-Token": token,
                                                             "User-Agent": "FarmBrowser/2.0"})

        assert response.status_code == 200
        assert response.json()["data"]["consentToken"] == token
        access = [json.loads(line) for line in
                  runtime.audit_logger.access_log_path.read_text().splitlines()]
        assert access[-1]["consentToken"] == token
        assert access[-1]["endpoint"] == "/api/consent/token"
        assert access[-1]["userAgent"] == "FarmBrowser/2.0"

    def test_token_from_query_parameter(self, client) -> None:
        token = client.post("/consent", json={"consent": "accepted"}).json()["sessionId"]

        response = client.get("/api/consent/token", params={"consentToken": token})

        assert response.status_code == 200

    def test_missing_token(self, client) -> None:
        response = client.get("/api/consent/token")

        assert response.status_code == 403
        assert response.json() == {
            "success": False,
            "error": "Consent required to access this resource",
            "code": "CONSENT_REQUIRED",
        }

    def test_declined_token(self, client) -> None:
        token = client.post("/consent", json={"consent": "declined"}).json()["sessionId"]

        response = client.get("/api/consent/token", headers={"X-Consent-Token": token})

        assert response.status_code == 403
        assert response.json()["code"] == "INVALID_CONSENT"

    def test_expired_token(self, client, runtime) -> None:
        issued = datetime.now(UTC) - timedelta(days=400)
        runtime.audit_logger.log_consent({"id": "stale-token", "consent": "accepted",
                                          "timestamp": issued.isoformat()})

        response = client.get("/api/consent/token", headers={"X-Consent-Token": "stale-token"})

        assert response.status_code == 403
        assert response.json()["code"] == "INVALID_CONSENT"

    def test_unknown_token(self, client, runtime) -> None:
        response = client.get("/api/consent/token", headers={"X-Consent-Token": "no-such-token"})

        assert response.status_code == 403
        assert response.json()["code"] == "INVALID_CONSENT"
        assert not runtime.audit_logger.access_log_path.exists()
