"""
Unit tests for sonar/api.py

Tests the HTTP status mapping of scan requests and the status endpoint.
"""

from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from sonar.api import create_app
from sonar.models import ScanTrigger
from sonar.rate_limit import RateLimiter
from sonar.scheduler import ScanScheduler
from tests.fixtures import FakeFetcher, make_sample_post

PRO = {"X-User-Id": "pro-user"}


@pytest.fixture
def service(store, cache, rate_limiter, plans, clock):
    fetchers = {"reddit": FakeFetcher("reddit", posts=[make_sample_post()])}
    scheduler = ScanScheduler(store, cache, fetchers, rate_limiter, plans, clock=clock)
    return SimpleNamespace(store=store, cache=cache, rate_limiter=rate_limiter, scheduler=scheduler)


@pytest.fixture
def client(service):
    with TestClient(create_app(service)) as test_client:
        yield test_client


@pytest.fixture
def monitor(store):
    return store.create_monitor("pro-user", "Acme watch", ["acme"], ["reddit"])


class TestStartScan:
    """Tests for POST /scan."""

    def test_started(self, client, store, monitor):
        response = client.post("/scan", json={"monitorId": monitor.id}, headers=PRO)

        assert response.status_code == 200
        body = response.json()
        assert body["started"] is True
        assert store.get_job(body["jobId"]).monitor_id == monitor.id
        assert store.get_monitor(monitor.id).is_scanning is True

    def test_already_scanning(self, client, monitor):
        client.post("/scan", json={"monitorId": monitor.id}, headers=PRO)
        response = client.post("/scan", json={"monitorId": monitor.id}, headers=PRO)

        assert response.status_code == 409
        assert response.json()["scanInProgress"] is True

    def test_cooldown(self, client, service, monitor):
        """Test a scan inside the cooldown is a 400 with countdown details."""
        service.store.try_claim_scan(monitor.id)
        service.store.finish_scan(monitor.id, ScanTrigger.MANUAL, 0, service.scheduler._clock())

        response = client.post("/scan", json={"monitorId": monitor.id}, headers=PRO)

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "cooldown_active"
        assert body["cooldownRemaining"] == 4 * 3600 * 1000
        assert body["cooldownHours"] == 4

    def test_inactive(self, client, store, monitor):
        store.set_monitor_active(monitor.id, False)
        response = client.post("/scan", json={"monitorId": monitor.id}, headers=PRO)
        assert response.status_code == 400
        assert response.json()["error"] == "inactive_monitor"

    def test_unknown_monitor(self, client):
        response = client.post("/scan", json={"monitorId": 404}, headers=PRO)
        assert response.status_code == 404

    def test_other_users_monitor(self, client, monitor):
        response = client.post("/scan", json={"monitorId": monitor.id}, headers={"X-User-Id": "team-user"})
        assert response.status_code == 404

    def test_rate_limited(self, store, cache, plans, counters, clock):
        """Test the write limit maps to 429 with a Retry-After header."""
        limiter = RateLimiter(counters, limits={"read": 60, "write": 1, "export": 5}, clock=lambda: clock().timestamp())
        scheduler = ScanScheduler(store, cache, {"reddit": FakeFetcher()}, limiter, plans, clock=clock)
        service = SimpleNamespace(store=store, cache=cache, rate_limiter=limiter, scheduler=scheduler)
        first = store.create_monitor("pro-user", "One", ["acme"], ["reddit"])
        second = store.create_monitor("pro-user", "Two", ["acme"], ["reddit"])

        with TestClient(create_app(service)) as client:
            assert client.post("/scan", json={"monitorId": first.id}, headers=PRO).status_code == 200
            response = client.post("/scan", json={"monitorId": second.id}, headers=PRO)

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "60"
        assert response.json()["retryAfter"] == 60

    def test_missing_user_header(self, client, monitor):
        response = client.post("/scan", json={"monitorId": monitor.id})
        assert response.status_code == 401

    def test_invalid_body(self, client):
        response = client.post("/scan", json={"monitor": "x"}, headers=PRO)
        assert response.status_code == 422


class TestScanStatus:
    """Tests for GET /scan/status."""

    def test_status(self, client, monitor):
        response = client.get("/scan/status", params={"monitorId": monitor.id}, headers=PRO)

        assert response.status_code == 200
        body = response.json()
        assert body["monitorId"] == monitor.id
        assert body["canScan"] is True
        assert body["isScanning"] is False

    def test_status_after_scan_request(self, client, monitor):
        client.post("/scan", json={"monitorId": monitor.id}, headers=PRO)
        body = client.get("/scan/status", params={"monitorId": monitor.id}, headers=PRO).json()
        assert body["isScanning"] is True
        assert body["canScan"] is False

    def test_unknown_monitor(self, client):
        response = client.get("/scan/status", params={"monitorId": 404}, headers=PRO)
        assert response.status_code == 404
        assert response.json()["error"] == "monitor_not_found"


class TestHealth:
    def test_health(self, client, monitor):
        client.post("/scan", json={"monitorId": monitor.id}, headers=PRO)
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert body["pendingJobs"] == 1
        assert "entries" in body["cache"]
