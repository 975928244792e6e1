"""
Health, metrics and the shared error payload shape.
"""


def test_healthz(client):
    resp = client.get("/healthz")

    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
    assert resp.headers["x-request-id"]


def test_request_id_is_echoed(client):
    resp = client.get("/healthz", headers={"x-request-id": "req-123"})

    assert resp.headers["x-request-id"] == "req-123"


def test_readyz(client):
    resp = client.get("/readyz")

    assert resp.status_code == 200
    assert resp.json()["db"] is True


def test_readyz_reports_database_down(client, monkeypatch):
    import tilespace.api.health as health

    monkeypatch.setattr(health, "check_connection", lambda: False)

    resp = client.get("/readyz")

    assert resp.status_code == 503
    assert resp.json() == {"status": "unavailable", "db": False}


def test_metrics_endpoint_exports_request_counts(client):
    client.get("/healthz")

    resp = client.get("/metrics")

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/plain")
    assert "# TYPE http_requests_total counter" in resp.text
    assert 'path="/healthz"' in resp.text


def test_unknown_route_uses_error_payload(client):
    resp = client.get("/api/nope", headers={"x-request-id": "req-404"})

    body = resp.json()
    assert resp.status_code == 404
    assert body["error"]["code"] == "not_found"
    assert body["error"]["request_id"] == "req-404"
    assert body["detail"] == body["error"]["message"]


def test_validation_error_lists_fields(client):
    resp = client.post("/api/workspace", json={})

    body = resp.json()
    assert resp.status_code == 400
    assert body["error"]["code"] == "validation_error"
    assert any("name" in detail["loc"] for detail in body["error"]["details"])
