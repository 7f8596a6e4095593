from __future__ import annotations


def test_metrics_endpoint_exposes_counters(client, webhook_headers) -> None:
    health = client.get("/health")
    assert health.status_code == 200
    client.post("/webhook", headers=webhook_headers, json={"sessionId": "s1", "dataType": "qr"})

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text
    assert "wa_gateway_requests_total" in body
    assert "wa_gateway_requests_5xx_total" in body
    assert 'wa_gateway_events_total{event="webhook_received"} 1' in body


def test_connectivity_errors_count_as_5xx(client, auth_headers, provider) -> None:
    provider.unreachable = True
    client.get("/session/status/s1", headers=auth_headers)
    snapshot = client.app.state.metrics.snapshot()
    assert snapshot.requests_5xx == 1


def test_readiness_endpoint(client) -> None:
    response = client.get("/health/ready")
    assert response.status_code == 200
    assert response.json()["status"] == "ready"
