def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_prometheus_metrics_are_public(client):
    response = client.get("/metrics/prometheus")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert response.headers["cache-control"] == "no-cache, no-store, must-revalidate"
    assert "kitchenhub_service_operations_total" in response.text


def test_unknown_route_uses_problem_envelope(client):
    response = client.get("/api/v1/nope")

    assert response.status_code == 404
    assert response.json()["status"] == 404
    assert response.json()["instance"] == "/api/v1/nope"


def test_ready_reports_database_and_lock_state(client):
    response = client.get("/ready")

    assert response.status_code == 200
    assert response.json() == {
        "status": "ok",
        "checks": {"booking_lock": "disabled", "database": "ok"},
    }
