import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.config import settings
from app.db.helpers import DatabaseError
from app.features.drip_campaign import admin_router, drip_router, webhook_router
from app.features.drip_campaign.domain import STATUS_SENT


@pytest.fixture
def client(runtime):
    app = FastAPI()
    app.include_router(drip_router)
    app.include_router(admin_router)
    app.include_router(webhook_router)
    app.state.drip = runtime
    return TestClient(app)


def _signup(client, **overrides):
    body = {"email": "jane@example.com", "timezone": "America/New_York", "goals": ["Delegate"]}
    body.update(overrides)
    return client.post("/api/signup", json=body)


def test_signup_creates_user_and_queues_welcome(client, users):
    response = _signup(
        client,
        context={"current_role": "Team Lead", "team_size": "4-6", "leadership_challenges": ["Focus"]},
    )

    assert response.status_code == 201
    data = response.json()
    assert data["success"] is True
    assert data["welcome_email_queued"] is True

    user = users.users[data["user_id"]]
    assert user.program_week == 0
    assert user.timezone == "America/New_York"
    assert user.context.current_role == "Team Lead"

    status = client.get("/api/admin/email-queue-status").json()
    assert status["status"]["pending"] == 1


def test_duplicate_signup_returns_400(client):
    assert _signup(client).status_code == 201

    response = _signup(client, email="JANE@example.com")

    assert response.status_code == 400
    assert "already exists" in response.json()["detail"]


@pytest.mark.parametrize(
    "overrides",
    [
        {"goals": []},
        {"goals": ["   "]},
        {"goals": ["a", "b", "c", "d"]},
        {"timezone": "Atlantis/Capital"},
        {"email": "not-an-email"},
    ],
)
def test_signup_validation_errors(client, overrides):
    assert _signup(client, **overrides).status_code == 422


def test_admin_token_required_when_configured(client, monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_API_TOKEN", "admin-secret")

    assert client.get("/api/admin/stats").status_code == 401
    assert client.get("/api/admin/stats", headers={"X-Admin-Token": "wrong"}).status_code == 401
    assert (
        client.get("/api/admin/stats", headers={"X-Admin-Token": "admin-secret"}).status_code == 200
    )


def test_trigger_weekly_emails_returns_batch_counts(client):
    response = client.post("/api/admin/trigger-weekly-emails")

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["result"] == {"processed": 0, "errors": 0, "queued": 0}


def test_resend_endpoint(client, users):
    active = users.add(program_week=4)
    inactive = users.add(program_week=4, is_active=False)

    ok = client.post(f"/api/admin/users/{active.id}/resend")
    assert ok.status_code == 200
    assert ok.json()["job_id"]

    assert client.post("/api/admin/users/9999/resend").status_code == 404
    assert client.post(f"/api/admin/users/{inactive.id}/resend").status_code == 409


def test_deactivate_endpoint(client, users):
    user = users.add()

    response = client.post(f"/api/admin/users/{user.id}/deactivate")

    assert response.status_code == 200
    assert response.json()["is_active"] is False
    assert users.users[user.id].is_active is False
    assert client.post("/api/admin/users/9999/deactivate").status_code == 404


def test_health_and_stats(client, users, emails):
    user = users.add(program_week=12)
    emails.add(user_id=user.id, week_number=12, delivery_status=STATUS_SENT)

    health = client.get("/api/admin/health")
    assert health.status_code == 200
    assert health.json()["status"] == "healthy"

    stats = client.get("/api/admin/stats").json()
    assert stats["total_users"] == 1
    assert stats["completion_rate"] == 100
    assert stats["emails_by_status"]["sent"] == 1


def test_health_returns_503_when_store_down(client, users):
    users.fail_with = DatabaseError("down", operation="ping")

    response = client.get("/api/admin/health")

    assert response.status_code == 503
    assert response.json()["status"] == "unhealthy"


def test_tracking_pixel_records_open(client, users, emails):
    record = emails.add(user_id=users.add().id, week_number=1, delivery_status=STATUS_SENT)

    response = client.get(f"/api/email/track/{record.id}")

    assert response.status_code == 200
    assert response.headers["content-type"] == "image/png"
    assert response.content.startswith(b"\x89PNG")
    assert emails.records[record.id].opened_at is not None


def test_click_redirect_only_to_own_pages(client, users, emails):
    record = emails.add(user_id=users.add().id, week_number=1, delivery_status=STATUS_SENT)

    relative = client.get(
        f"/api/email/click/{record.id}", params={"url": "/dashboard"}, follow_redirects=False
    )
    assert relative.status_code == 302
    assert relative.headers["location"] == "/dashboard"
    assert emails.records[record.id].click_count == 1

    own = client.get(
        f"/api/email/click/{record.id}",
        params={"url": f"{settings.PUBLIC_BASE_URL}/program"},
        follow_redirects=False,
    )
    assert own.status_code == 302

    external = client.get(
        f"/api/email/click/{record.id}",
        params={"url": "https://evil.example.com/phish"},
        follow_redirects=False,
    )
    assert external.status_code == 400
    assert emails.records[record.id].click_count == 2
