import pytest
from fastapi.testclient import TestClient

from app.billing.ledger import CreditLedger
from app.core.config import get_settings
from app.core.database import get_db
from app.jobs.service import JobsService
from app.jobs.views import get_jobs_service
from app.main import app

MEDIA = b"api-media-bytes"


@pytest.fixture
def client(db, queue, blobs, settings):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_jobs_service] = lambda: JobsService(
        db, queue=queue, content_reader=lambda ref: [blobs[ref]], settings=settings
    )
    yield TestClient(app)
    app.dependency_overrides.clear()


def _headers(user="u1"):
    return {"X-User-Id": user}


def test_health(client):
    assert client.get("/").json()["status"] == "healthy"
    assert client.get("/health").status_code == 200


def test_requires_user_header(client):
    r = client.get("/api/v1/jobs/anything")
    assert r.status_code == 401


def test_submit_and_poll_analysis(client, blobs, queue):
    blobs["uploads/u1/room.jpg"] = MEDIA
    r = client.post(
        "/api/v1/jobs/analysis",
        json={"kind": "image_analysis", "input_ref": "uploads/u1/room.jpg"},
        headers=_headers(),
    )
    assert r.status_code == 200
    body = r.json()
    assert body["state"] == "pending"
    assert body["cached"] is False
    assert len(queue.published) == 1

    g = client.get(f"/api/v1/jobs/{body['job_id']}", headers=_headers())
    assert g.status_code == 200
    job = g.json()
    assert job["kind"] == "image_analysis"
    assert job["state"] == "pending"
    assert job["result"] is None

    other = client.get(f"/api/v1/jobs/{body['job_id']}", headers=_headers("u2"))
    assert other.status_code == 404


def test_invalid_kind_is_rejected(client):
    r = client.post(
        "/api/v1/jobs/analysis",
        json={"kind": "image_fix", "input_ref": "uploads/u1/room.jpg"},
        headers=_headers(),
    )
    assert r.status_code == 422


def test_fix_on_missing_source_is_404(client):
    r = client.post(
        "/api/v1/jobs/fix",
        json={"kind": "image_fix", "source_job_id": "nope", "fix_ids": ["p1"]},
        headers=_headers(),
    )
    assert r.status_code == 404


def test_pending_jobs_are_not_charged(client, blobs):
    for i in range(3):
        blobs[f"uploads/u1/{i}.jpg"] = MEDIA + bytes([i])
        r = client.post(
            "/api/v1/jobs/analysis",
            json={"kind": "image_analysis", "input_ref": f"uploads/u1/{i}.jpg"},
            headers=_headers(),
        )
        assert r.status_code == 200
    sub = client.get("/api/v1/subscription", headers=_headers()).json()
    assert sub["credits_used"] == 0


def test_out_of_credits_is_402(client, blobs, db, settings):
    CreditLedger(db, settings).debit("u1", 5)
    blobs["uploads/u1/room.jpg"] = MEDIA
    r = client.post(
        "/api/v1/jobs/analysis",
        json={"kind": "image_analysis", "input_ref": "uploads/u1/room.jpg"},
        headers=_headers(),
    )
    assert r.status_code == 402
    assert "Not enough credits" in r.json()["detail"]


def test_subscription_defaults_to_free(client):
    r = client.get("/api/v1/subscription", headers=_headers())
    assert r.status_code == 200
    body = r.json()
    assert body["plan"] == "free"
    assert body["credits_limit"] == 5
    assert body["credits_remaining"] == 5


def _webhook(event_id, type="INITIAL_PURCHASE", ts=1767225600000):
    return {
        "event": {
            "id": event_id,
            "type": type,
            "app_user_id": "u1",
            "event_timestamp_ms": ts,
            "entitlement_ids": ["pro"],
            "store": "APP_STORE",
        }
    }


def test_webhook_applies_and_deduplicates(client):
    r = client.post("/api/v1/webhooks/revenuecat", json=_webhook("evt-1"))
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "applied": True}

    again = client.post("/api/v1/webhooks/revenuecat", json=_webhook("evt-1"))
    assert again.json() == {"status": "ok", "applied": False}

    sub = client.get("/api/v1/subscription", headers=_headers()).json()
    assert sub["plan"] == "pro"
    assert sub["credits_limit"] == 50


def test_webhook_rejects_malformed_payload(client):
    r = client.post("/api/v1/webhooks/revenuecat", json={"event": {"id": "x"}})
    assert r.status_code == 400


def test_webhook_checks_shared_secret(client, monkeypatch):
    monkeypatch.setenv("REVENUECAT_WEBHOOK_SECRET", "s3cret")
    get_settings.cache_clear()
    try:
        denied = client.post("/api/v1/webhooks/revenuecat", json=_webhook("evt-2"))
        assert denied.status_code == 401
        allowed = client.post(
            "/api/v1/webhooks/revenuecat",
            json=_webhook("evt-2"),
            headers={"Authorization": "Bearer s3cret"},
        )
        assert allowed.status_code == 200
    finally:
        get_settings.cache_clear()
