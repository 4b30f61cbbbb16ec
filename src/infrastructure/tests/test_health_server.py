import pytest

fastapi = pytest.importorskip("fastapi")
from fastapi.testclient import TestClient

from src.infrastructure.health.health_server import build_health_app


def test_health_reports_worker_status():
    status = {
        "node_id": "n1",
        "project_id": "p1",
        "last_poll_at": "2024-01-01T00:00:00+00:00",
        "last_poll_ok": True,
        "processed_total": 4,
    }
    client = TestClient(build_health_app(lambda: status))

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == dict(status, ok=True)


def test_health_before_first_poll():
    client = TestClient(
        build_health_app(
            lambda: {
                "node_id": "n1",
                "project_id": "p1",
                "last_poll_at": None,
                "last_poll_ok": None,
                "processed_total": 0,
            }
        )
    )

    body = client.get("/health").json()

    assert body["ok"] is True
    assert body["last_poll_at"] is None


def test_unknown_route_is_404():
    client = TestClient(build_health_app(lambda: {}))

    assert client.get("/commands").status_code == 404
