import pytest
from fastapi.testclient import TestClient
from mitigation.main import create_app
from conftest import make_engine


@pytest.fixture
def client(clock, emitter, metrics):
    return TestClient(create_app(make_engine(clock=clock, emitter=emitter, metrics=metrics)))


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_check_denies_after_limit(client):
    body = {"ip_address": "203.0.113.9", "window_seconds": 60, "max_requests": 2, "burst_allowance": 0}
    for _ in range(2):
        assert client.post("/api/mitigation/check", json=body).json()["allowed"] is True

    denied = client.post("/api/mitigation/check", json=body).json()
    assert denied["allowed"] is False
    assert denied["reason"] == "rate_limited"
    assert denied["retry_after"] == 61


def test_invalid_ip_is_rejected(client):
    response = client.post("/api/mitigation/check", json={"ip_address": "not-an-ip"})
    assert response.status_code == 422


def test_record_and_stats(client):
    for _ in range(3):
        response = client.post("/api/mitigation/record", json={"ip_address": "203.0.113.9", "endpoint": "/search"})
        assert response.json() == {"recorded": True}

    stats = client.get("/api/mitigation/stats/203.0.113.9", params={"endpoint": "/search"}).json()
    assert stats["counts"]["ip_per_minute"] == 3
    assert stats["counts"]["endpoint_per_minute"] == 3


def test_reset_clears_counts(client):
    body = {"ip_address": "203.0.113.9", "window_seconds": 60, "max_requests": 1, "burst_allowance": 0}
    client.post("/api/mitigation/check", json=body)
    assert client.post("/api/mitigation/check", json=body).json()["allowed"] is False

    assert client.post("/api/mitigation/reset", json={"ip_address": "203.0.113.9"}).status_code == 204
    assert client.post("/api/mitigation/check", json=body).json()["allowed"] is True


def test_ip_list_lifecycle(client):
    created = client.post(
        "/api/mitigation/ip-lists",
        json={"ip_address": "198.51.100.4", "list_type": "temporary", "reason": "scraping", "ttl_seconds": 600}
    )
    assert created.status_code == 201
    assert created.json()["list_type"] == "temporary"

    status = client.get("/api/mitigation/ip-lists/status/198.51.100.4").json()
    assert status["status"] == "temporarily_blocked"
    assert status["remaining_ttl"] == 600

    listed = client.get("/api/mitigation/ip-lists/temporary").json()
    assert [entry["ip_address"] for entry in listed] == ["198.51.100.4"]

    assert client.delete("/api/mitigation/ip-lists/temporary/198.51.100.4").status_code == 204
    assert client.delete("/api/mitigation/ip-lists/temporary/198.51.100.4").status_code == 404
    assert client.get("/api/mitigation/ip-lists/status/198.51.100.4").json()["status"] == "none"


def test_temporary_entry_needs_ttl(client):
    response = client.post("/api/mitigation/ip-lists", json={"ip_address": "198.51.100.4", "list_type": "temporary"})
    assert response.status_code == 422


def test_cleanup_reports_removed_entries(client, clock):
    client.post(
        "/api/mitigation/ip-lists",
        json={"ip_address": "198.51.100.4", "list_type": "temporary", "ttl_seconds": 30}
    )
    clock.advance(31)
    assert client.post("/api/mitigation/ip-lists/cleanup").json() == {"removed": 1}


def test_scan_endpoints_return_results(client):
    ddos = client.post("/api/mitigation/scan/ddos").json()
    assert {result["scope"] for result in ddos} >= {"global"}
    assert all(result["phase"] == "normal" for result in ddos)

    assert client.post("/api/mitigation/scan/abuse").json() == []


def test_metrics_endpoint_serves_prometheus_text(clock):
    client = TestClient(create_app(make_engine(clock=clock)))
    response = client.get("/metrics")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
