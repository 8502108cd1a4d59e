from __future__ import annotations

import uuid
from collections.abc import Callable, Generator
from datetime import date, timedelta

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crm_rocket import audit, events
from crm_rocket.core.config import get_settings
from crm_rocket.core.database import Base, get_db
from crm_rocket.core.rbac import permissions_for_roles
from crm_rocket.crm.api import get_current_user as crm_get_current_user
from crm_rocket.crm.models import CRMActivity, CRMTask
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


def _create_deal(test_client: TestClient, **fields) -> dict:
    payload = {"name": "Engine order", "value": 1000, **fields}
    response = test_client.post("/api/crm/deals", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def test_create_deal_defaults_probability_from_stage(client) -> None:
    test_client, _ = client

    lead = _create_deal(test_client)
    proposal = _create_deal(test_client, stage="proposal")
    custom = _create_deal(test_client, stage="proposal", probability=60)

    assert lead["stage"] == "lead"
    assert lead["probability"] == 10
    assert lead["owner_id"] == USER_IDS["rep1"]
    assert proposal["probability"] == 50
    assert custom["probability"] == 60


def test_create_deal_validation(client) -> None:
    test_client, _ = client
    response = test_client.post(
        "/api/crm/deals",
        json={
            "name": " ",
            "value": -5,
            "stage": "won",
            "expected_close_date": (date.today() - timedelta(days=3)).isoformat(),
        },
    )

    assert response.status_code == 422
    assert response.json()["message"] == (
        "Deal name is required; Deal value must be positive; "
        "Expected close date cannot be in the past; Invalid deal stage"
    )


def test_deals_are_scoped_to_owner(client) -> None:
    test_client, set_actor = client
    deal = _create_deal(test_client)

    set_actor("rep2")
    assert test_client.get("/api/crm/deals").json() == []
    assert test_client.get(f"/api/crm/deals/{deal['id']}").status_code == 404

    set_actor("manager")
    assert [row["id"] for row in test_client.get("/api/crm/deals").json()] == [deal["id"]]


def test_stage_change_updates_probability_and_close_date(client) -> None:
    test_client, _ = client
    deal = _create_deal(test_client, stage="negotiation")

    response = test_client.post(f"/api/crm/deals/{deal['id']}/stage", json={"stage": "closed_won"})

    assert response.status_code == 200
    body = response.json()
    assert body["stage"] == "closed_won"
    assert body["probability"] == 100
    assert body["actual_close_date"] is not None

    updates = [entry for entry in events.published_events if entry["event_type"] == "crm.deal.updated"]
    assert updates[-1]["payload"]["old_record"]["stage"] == "negotiation"
    assert updates[-1]["payload"]["record"]["stage"] == "closed_won"


def test_stage_change_rejects_unknown_stage(client) -> None:
    test_client, _ = client
    deal = _create_deal(test_client)

    response = test_client.post(f"/api/crm/deals/{deal['id']}/stage", json={"stage": "won"})

    assert response.status_code == 422
    assert response.json()["code"] == "crm_deal_stage_failed"
    assert response.json()["message"] == "Invalid deal stage"


def test_stage_change_creates_transition_task(client) -> None:
    test_client, _ = client
    deal = _create_deal(test_client, stage="qualified")

    response = test_client.post(
        f"/api/crm/deals/{deal['id']}/stage",
        json={"stage": "proposal", "create_transition_task": True},
    )
    assert response.status_code == 200

    tasks = test_client.get(f"/api/crm/deals/{deal['id']}/tasks").json()
    assert len(tasks) == 1
    assert tasks[0]["title"] == "PROPOSAL stage actions"
    assert tasks[0]["description"] == "Prepare and send detailed proposal"
    assert tasks[0]["priority"] == "high"
    assert tasks[0]["status"] == "pending"


def test_pipeline_groups_deals_by_stage(client) -> None:
    test_client, _ = client
    _create_deal(test_client, name="A", value=1000, stage="lead")
    _create_deal(test_client, name="B", value=3000, stage="lead")
    _create_deal(test_client, name="C", value=2000, stage="negotiation")
    _create_deal(test_client, name="D", value=500, stage="closed_lost")

    response = test_client.get("/api/crm/deals/pipeline")

    assert response.status_code == 200
    columns = response.json()
    assert [column["id"] for column in columns] == [
        "lead",
        "qualified",
        "proposal",
        "negotiation",
        "closed_won",
        "closed_lost",
    ]
    lead = columns[0]
    assert lead["title"] == "Lead"
    assert lead["count"] == 2
    assert lead["total_value"] == 4000
    assert lead["weighted_value"] == 400
    assert columns[3]["weighted_value"] == 1500
    assert columns[5]["count"] == 1
    assert columns[5]["weighted_value"] == 0
    assert {card["title"] for card in lead["deals"]} == {"A", "B"}
    assert all(card["days_in_stage"] == 0 for card in lead["deals"])


def test_update_deal(client) -> None:
    test_client, _ = client
    deal = _create_deal(test_client)

    response = test_client.patch(f"/api/crm/deals/{deal['id']}", json={"value": 2500, "description": "Bigger"})

    assert response.status_code == 200
    assert response.json()["value"] == 2500
    assert response.json()["description"] == "Bigger"

    invalid = test_client.patch(f"/api/crm/deals/{deal['id']}", json={"value": -1})
    assert invalid.status_code == 422


def test_delete_deal_removes_dependents(client, db_session: Session) -> None:
    test_client, _ = client
    deal = _create_deal(test_client)
    note = test_client.post("/api/crm/activities/log/note", json={"deal_id": deal["id"], "description": "Kickoff"})
    assert note.status_code == 201
    follow_up = test_client.post("/api/crm/tasks/follow-up", json={"deal_id": deal["id"]})
    assert follow_up.status_code == 201

    response = test_client.delete(f"/api/crm/deals/{deal['id']}")

    assert response.status_code == 200
    assert test_client.get(f"/api/crm/deals/{deal['id']}").status_code == 404
    deal_id = uuid.UUID(deal["id"])
    assert db_session.scalars(select(CRMActivity).where(CRMActivity.deal_id == deal_id)).all() == []
    assert db_session.scalars(select(CRMTask).where(CRMTask.deal_id == deal_id)).all() == []


def test_deal_activities_listing(client) -> None:
    test_client, _ = client
    deal = _create_deal(test_client)
    test_client.post("/api/crm/activities/log/call", json={"deal_id": deal["id"], "duration_minutes": 15})
    test_client.post("/api/crm/activities/log/email", json={"deal_id": deal["id"], "subject": "Proposal"})

    activities = test_client.get(f"/api/crm/deals/{deal['id']}/activities").json()

    assert {activity["type"] for activity in activities} == {"call", "email"}
