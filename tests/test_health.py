# tests/test_health.py
from fastapi import status


def test_root_responds(client) -> None:
    response = client.get("/")
    assert response.status_code == status.HTTP_200_OK
    assert response.json()["docs"] == "/docs"


def test_health_reports_relay_metrics(client) -> None:
    response = client.get("/health")
    assert response.status_code == status.HTTP_200_OK
    body = response.json()
    assert body["status"] == "ok"
    assert body["relays"]["publish_count"] >= 0
