from __future__ import annotations

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from helpdesk.db.session import get_session
from helpdesk.main import create_app


def test_healthz_ok() -> None:
    client = TestClient(create_app())
    res = client.get("/healthz")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}
    assert res.headers["x-request-id"]


def test_readyz_checks_database() -> None:
    client = TestClient(create_app())
    res = client.get("/readyz")
    assert res.status_code == 200
    assert res.json() == {"status": "ready"}


def test_readyz_fails_without_job_queue_table() -> None:
    engine = create_engine("sqlite://")

    def _unmigrated_session():
        with Session(engine) as session:
            yield session

    app = create_app()
    app.dependency_overrides[get_session] = _unmigrated_session
    res = TestClient(app).get("/readyz")
    assert res.status_code == 503
    assert res.json() == {"detail": "job queue not ready"}


def test_request_id_is_echoed() -> None:
    client = TestClient(create_app())
    res = client.get("/healthz", headers={"x-request-id": "req-123"})
    assert res.headers["x-request-id"] == "req-123"


def test_metrics_endpoint_exposes_counters() -> None:
    client = TestClient(create_app())
    client.get("/healthz")
    res = client.get("/metrics")
    assert res.status_code == 200
    assert "helpdesk_http_requests_total" in res.text
