from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from config import SchedulingConfig
from main import app, get_database, get_schedule_service
from schedule_service import ScheduleService


USER = {"X-User-Id": "u1"}


@pytest.fixture
def client(fake_db, clean_env):
    # No lifespan: the fake stands in for the pool
    app.dependency_overrides[get_database] = lambda: fake_db
    app.dependency_overrides[get_schedule_service] = lambda: ScheduleService(
        fake_db, config=SchedulingConfig(timezone="UTC")
    )
    yield TestClient(app)
    app.dependency_overrides.clear()


def add_upcoming_task(fake_db, task_id="t1"):
    fake_db.add_task(
        id=task_id, title="Problem set", subject="Math", estimated_duration=60,
        due_date=datetime.now(timezone.utc) + timedelta(days=3),
    )


# ============================================
# HEALTH
# ============================================

def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "healthy", "version": "1.0.0", "database": "connected"}


def test_health_degraded_without_pool(client, fake_db):
    fake_db.connected = False
    data = client.get("/health").json()
    assert data["status"] == "degraded"
    assert data["database"] == "disconnected"


# ============================================
# SCHEDULE
# ============================================

def test_requires_identity(client):
    assert client.post("/api/ai/schedule", json={}).status_code == 401
    assert client.get("/api/ai/schedule").status_code == 401
    assert client.get("/api/ai/schedule/analytics").status_code == 401


def test_generate_schedule(client, fake_db):
    add_upcoming_task(fake_db)

    resp = client.post("/api/ai/schedule", json={"schedule_horizon": 5}, headers=USER)

    assert resp.status_code == 200
    data = resp.json()
    assert data["success"] is True
    assert [p["task_id"] for p in data["schedule"]] == ["t1"]
    assert data["metadata"]["schedule_horizon"] == 5
    assert data["metadata"]["total_tasks"] == 1
    assert "data_quality" in data["metadata"]


def test_generate_rejects_out_of_range_horizon(client):
    resp = client.post("/api/ai/schedule", json={"schedule_horizon": 31}, headers=USER)
    assert resp.status_code == 422


def test_generate_primary_failure(client, fake_db):
    fake_db.fail_on = {"completed = false"}

    resp = client.post("/api/ai/schedule", json={}, headers=USER)

    assert resp.status_code == 500
    assert resp.json() == {"detail": "Failed to generate schedule"}


def test_get_schedule(client, fake_db):
    add_upcoming_task(fake_db)
    client.post("/api/ai/schedule", json={}, headers=USER)

    data = client.get("/api/ai/schedule", params={"include_history": "true"}, headers=USER).json()

    assert data["success"] is True
    assert len(data["current_schedule"]["schedule"]) == 1
    assert len(data["schedule_history"]) == 1
    assert data["user_patterns"]["time_pattern"]["most_productive_hours"] == [14, 15, 16]
    assert data["last_updated"] is not None


def test_get_schedule_without_history(client):
    data = client.get("/api/ai/schedule", headers=USER).json()
    assert data["current_schedule"] is None
    assert data["schedule_history"] is None


# ============================================
# ANALYTICS & PROGRESS
# ============================================

def test_analytics(client, fake_db):
    add_upcoming_task(fake_db)
    client.post("/api/ai/schedule", json={}, headers=USER)

    resp = client.get("/api/ai/schedule/analytics", params={"days": 7}, headers=USER)

    assert resp.status_code == 200
    data = resp.json()
    assert data["total_scheduled"] == 1
    assert "recommendations" in data
    assert "Math" in data["patterns"]["subject_performance"]


def test_analytics_days_validated(client):
    resp = client.get("/api/ai/schedule/analytics", params={"days": 0}, headers=USER)
    assert resp.status_code == 422


def test_task_progress(client, fake_db):
    add_upcoming_task(fake_db)
    client.post("/api/ai/schedule", json={}, headers=USER)
    finished = datetime.now(timezone.utc).isoformat()

    resp = client.patch("/api/ai/schedule/tasks/t1/progress", json={"actual_end": finished}, headers=USER)

    assert resp.status_code == 200
    assert resp.json() == {"success": True, "updated": 1}
    assert fake_db.tables["scheduled_tasks"][0]["actual_end"] is not None


def test_task_progress_unknown_task(client):
    resp = client.patch("/api/ai/schedule/tasks/missing/progress", json={"was_rescheduled": True}, headers=USER)
    assert resp.status_code == 404


# ============================================
# PATTERNS
# ============================================

def test_refine_without_patterns(client):
    resp = client.post("/api/ai/patterns/refine", headers=USER)

    assert resp.status_code == 200
    assert resp.json()["refined"] is False
