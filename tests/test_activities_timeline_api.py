from __future__ import annotations

import uuid
from collections.abc import Callable, Generator
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crm_rocket import audit, events
from crm_rocket.core.config import get_settings
from crm_rocket.core.database import Base, get_db
from crm_rocket.core.rbac import permissions_for_roles
from crm_rocket.crm.api import get_current_user as crm_get_current_user
from crm_rocket.crm.models import CRMUserProfile
from crm_rocket.crm.service import ActorUser
from crm_rocket.main import app
from crm_rocket.middleware.rate_limit import reset_rate_limiter

USER_IDS = {"rep1": str(uuid.uuid4()), "rep2": str(uuid.uuid4()), "manager": str(uuid.uuid4())}
ROLES = {"rep1": "sales_rep", "rep2": "sales_rep", "manager": "manager"}


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    session.add(
        CRMUserProfile(
            id=uuid.UUID(USER_IDS["rep1"]),
            email="rep1@example.com",
            first_name="Rita",
            last_name="Rep",
            role="sales_rep",
        )
    )
    session.commit()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    state = {"current": "rep1"}

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        name = state["current"]
        return ActorUser(
            user_id=USER_IDS[name],
            roles=[ROLES[name]],
            permissions=permissions_for_roles([ROLES[name]]),
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def _seed_deal(test_client: TestClient) -> tuple[dict, dict]:
    contact = test_client.post(
        "/api/crm/contacts",
        json={"first_name": "Ada", "last_name": "Lovelace", "company_name": "Analytical Engines"},
    )
    assert contact.status_code == 201
    deal = test_client.post(
        "/api/crm/deals",
        json={
            "name": "Engine order",
            "value": 5000,
            "contact_id": contact.json()["id"],
            "company_id": contact.json()["company_id"],
        },
    )
    assert deal.status_code == 201
    return contact.json(), deal.json()


def test_log_helpers_apply_defaults(client) -> None:
    test_client, _ = client

    call = test_client.post("/api/crm/activities/log/call", json={"duration_minutes": 12})
    meeting = test_client.post("/api/crm/activities/log/meeting", json={})
    note = test_client.post("/api/crm/activities/log/note", json={"description": "Likes brass"})
    email = test_client.post("/api/crm/activities/log/email", json={"subject": "Hello"})

    assert call.status_code == 201
    assert call.json()["subject"] == "Phone Call"
    assert call.json()["completed_at"] is not None
    assert meeting.json()["subject"] == "Meeting"
    assert meeting.json()["completed_at"] is None
    assert note.json()["subject"] == "Note"
    assert email.json()["type"] == "email"
    assert email.json()["completed_at"] is not None
    assert email.json()["user_id"] == USER_IDS["rep1"]


def test_unknown_log_kind_is_rejected(client) -> None:
    test_client, _ = client

    response = test_client.post("/api/crm/activities/log/fax", json={})

    assert response.status_code == 422


def test_recent_activity_is_enriched(client) -> None:
    test_client, _ = client
    contact, deal = _seed_deal(test_client)
    test_client.post(
        "/api/crm/activities/log/call",
        json={"contact_id": contact["id"], "deal_id": deal["id"], "subject": "Intro call"},
    )

    recent = test_client.get("/api/crm/activities/recent", params={"limit": 5}).json()

    assert len(recent) == 1
    item = recent[0]
    assert item["title"] == "Intro call"
    assert item["user"] == "Rita Rep"
    assert item["contact"] == "Ada Lovelace"
    assert item["company"] == "Analytical Engines"
    assert item["deal"] == "Engine order"
    assert item["icon"] == "Phone"


def test_activity_stats_average_only_timed_calls(client) -> None:
    test_client, _ = client
    for minutes in (10, 20, None):
        test_client.post("/api/crm/activities/log/call", json={"duration_minutes": minutes})
    test_client.post("/api/crm/activities/log/email", json={})
    test_client.post("/api/crm/activities/log/meeting", json={})

    stats = test_client.get("/api/crm/activities/stats").json()

    assert stats == {
        "total": 5,
        "emails": 1,
        "calls": 3,
        "meetings": 1,
        "notes": 0,
        "total_call_time": 30,
        "avg_call_duration": 15,
    }

    future = (datetime.now(timezone.utc) + timedelta(days=1)).isoformat()
    empty = test_client.get("/api/crm/activities/stats", params={"start": future}).json()
    assert empty["total"] == 0


def test_filter_update_and_delete_activity(client) -> None:
    test_client, _ = client
    _, deal = _seed_deal(test_client)
    call = test_client.post("/api/crm/activities/log/call", json={"deal_id": deal["id"]}).json()
    test_client.post("/api/crm/activities/log/note", json={})

    filtered = test_client.post("/api/crm/activities/filter", json={"deal_ids": [deal["id"]]}).json()
    assert [activity["id"] for activity in filtered] == [call["id"]]

    updated = test_client.patch(f"/api/crm/activities/{call['id']}", json={"duration_minutes": 45})
    assert updated.status_code == 200
    assert updated.json()["duration_minutes"] == 45

    deleted = test_client.delete(f"/api/crm/activities/{call['id']}")
    assert deleted.status_code == 200
    assert len(test_client.get("/api/crm/activities").json()) == 1


def test_activities_hidden_from_other_reps(client) -> None:
    test_client, set_actor = client
    test_client.post("/api/crm/activities/log/note", json={})

    set_actor("rep2")
    assert test_client.get("/api/crm/activities").json() == []

    set_actor("manager")
    assert len(test_client.get("/api/crm/activities").json()) == 1


def test_timeline_requires_deal_id(client) -> None:
    test_client, _ = client

    response = test_client.get("/api/crm/timeline")

    assert response.status_code == 422
    assert response.json()["code"] == "crm_timeline_get_failed"
    assert response.json()["message"] == "Deal ID is required"


def test_timeline_entries_for_deal(client) -> None:
    test_client, _ = client
    contact, deal = _seed_deal(test_client)

    added = test_client.post(
        f"/api/crm/deals/{deal['id']}/timeline",
        json={"type": "meeting", "subject": "Demo", "duration_minutes": 30, "contact_id": contact["id"]},
    )
    assert added.status_code == 201
    entry = added.json()
    assert entry["title"] == "Demo"
    assert entry["user"] == "Rita Rep"
    assert entry["contact"] == "Ada Lovelace"
    assert entry["company"] == "Analytical Engines"
    assert entry["duration"] == 30

    test_client.post(f"/api/crm/deals/{deal['id']}/timeline", json={"type": "note"})
    timeline = test_client.get("/api/crm/timeline", params={"deal_id": deal["id"]}).json()
    assert len(timeline) == 2
    assert {item["title"] for item in timeline} == {"Demo", "note"}


def test_timeline_on_missing_deal_returns_not_found(client) -> None:
    test_client, _ = client

    response = test_client.post(f"/api/crm/deals/{uuid.uuid4()}/timeline", json={"type": "note"})

    assert response.status_code == 404
    assert response.json()["message"] == "Deal not found"


def test_timeline_delete_scoping(client) -> None:
    test_client, set_actor = client
    _, deal = _seed_deal(test_client)
    entry = test_client.post(f"/api/crm/deals/{deal['id']}/timeline", json={"type": "note"}).json()

    set_actor("rep2")
    hidden = test_client.delete(f"/api/crm/timeline/{entry['id']}")
    assert hidden.status_code == 404

    set_actor("manager")
    removed = test_client.delete(f"/api/crm/timeline/{entry['id']}")
    assert removed.status_code == 200
    assert removed.json() == {"status": "deleted"}


def test_timeline_entry_without_profile_uses_unknown_user(client) -> None:
    test_client, set_actor = client
    set_actor("manager")
    deal = test_client.post("/api/crm/deals", json={"name": "Manager deal"}).json()

    entry = test_client.post(f"/api/crm/deals/{deal['id']}/timeline", json={"type": "call"}).json()

    assert entry["user"] == "Unknown User"
    assert entry["company"] is None
