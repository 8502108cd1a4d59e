from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import date, datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crm_rocket.core.config import get_settings
from crm_rocket.core.database import Base, get_db
from crm_rocket.core.rbac import permissions_for_roles
from crm_rocket.crm import analytics, pipeline
from crm_rocket.crm.api import get_current_user as crm_get_current_user
from crm_rocket.crm.service import ActorUser
from crm_rocket.main import app
from crm_rocket.middleware.rate_limit import reset_rate_limiter

NOW = datetime(2026, 6, 15, 12, 0, tzinfo=timezone.utc)


def _deal(
    stage: str | None,
    value: float = 1000,
    *,
    probability: int | None = None,
    created_at: datetime = NOW,
    updated_at: datetime | None = None,
    expected_close_date: date | None = None,
    actual_close_date: date | None = None,
    name: str = "Deal",
) -> SimpleNamespace:
    return SimpleNamespace(
        id=uuid.uuid4(),
        name=name,
        value=value,
        stage=stage,
        probability=probability,
        created_at=created_at,
        updated_at=updated_at or created_at,
        expected_close_date=expected_close_date,
        actual_close_date=actual_close_date,
        company=None,
        contact=None,
        owner=None,
    )


def test_round_half_up_rounds_halves_away_from_zero() -> None:
    assert analytics.round_half_up(2.5) == 3
    assert analytics.round_half_up(0.125, 2) == 0.13
    assert analytics.round_percent(1, 3, 1) == 33.3
    assert analytics.round_percent(1, 8) == 13
    assert analytics.round_percent(5, 0) == 0


def test_revenue_by_month_only_counts_requested_year() -> None:
    deals = [
        _deal("closed_won", 3000, expected_close_date=date(2026, 3, 10), actual_close_date=date(2026, 3, 8)),
        _deal("proposal", 2000, expected_close_date=date(2026, 3, 20)),
        _deal("closed_won", 9000, expected_close_date=date(2025, 3, 1), actual_close_date=date(2025, 3, 1)),
        _deal("lead", 500),
    ]

    buckets = analytics.revenue_by_month(deals, year=2026, target=1000)

    assert len(buckets) == 12
    march = buckets[2]
    assert march == {"month": "Mar", "forecast": 5000.0, "actual": 3000.0, "target": 1000}
    assert sum(bucket["forecast"] for bucket in buckets) == 5000


def test_performance_metrics() -> None:
    deals = [
        _deal("closed_won", 3000),
        _deal("closed_won", 2000),
        _deal("closed_lost", 1000),
        _deal("proposal", 4000),
    ]

    metrics = analytics.performance_metrics(deals, quota=10000)

    assert metrics == {
        "quota": 10000,
        "achieved": 5000,
        "percentage": 50,
        "deals_won": 2,
        "deals_lost": 1,
        "avg_deal_size": 2500,
        "conversion_rate": 50.0,
    }


def test_performance_metrics_without_deals() -> None:
    metrics = analytics.performance_metrics([], quota=10000)

    assert metrics["avg_deal_size"] == 0
    assert metrics["conversion_rate"] == 0


def test_win_rate_by_month_uses_creation_month() -> None:
    deals = [
        _deal("closed_won", created_at=datetime(2026, 2, 1, tzinfo=timezone.utc)),
        _deal("closed_lost", created_at=datetime(2026, 2, 5, tzinfo=timezone.utc)),
        _deal("lead", created_at=datetime(2026, 2, 7)),
        _deal("closed_won", created_at=datetime(2025, 2, 1, tzinfo=timezone.utc)),
    ]

    buckets = analytics.win_rate_by_month(deals, year=2026)

    assert buckets[1] == {"period": "Feb", "won": 1, "total": 3, "win_rate": 33}
    assert buckets[0]["win_rate"] == 0


def test_pipeline_summary_weights_open_deals_only() -> None:
    deals = [
        _deal("lead", 1000),
        _deal("negotiation", 2000),
        _deal("closed_won", 5000),
        _deal("closed_lost", 700),
    ]

    summary = analytics.pipeline_summary(deals)

    assert summary == {
        "total_value": 8700,
        "weighted_value": 1600.0,
        "open_deals": 2,
        "won_value": 5000,
        "win_rate": 50,
    }


def test_stage_velocity_and_bottlenecks() -> None:
    deals = [
        _deal("lead", updated_at=NOW - timedelta(days=1)),
        _deal("qualified", updated_at=NOW - timedelta(days=1)),
        _deal("proposal", updated_at=NOW - timedelta(days=1)),
        _deal("negotiation", updated_at=NOW - timedelta(days=20)),
        _deal("negotiation", updated_at=NOW - timedelta(days=10)),
        _deal("closed_won", updated_at=NOW - timedelta(days=90)),
    ]

    stages = analytics.stage_velocity(deals, NOW)

    assert [item["stage"] for item in stages] == ["lead", "qualified", "proposal", "negotiation"]
    assert stages[3] == {"stage": "negotiation", "deal_count": 2, "average_days": 15.0}
    bottlenecks = analytics.bottleneck_stages(stages)
    assert [item["stage"] for item in bottlenecks] == ["negotiation"]
    assert analytics.bottleneck_stages([]) == []


def test_average_days_in_pipeline_uses_closed_deals() -> None:
    deals = [
        _deal("closed_won", created_at=datetime(2026, 1, 1, tzinfo=timezone.utc), actual_close_date=date(2026, 1, 11)),
        _deal("closed_lost", created_at=datetime(2026, 1, 1), actual_close_date=date(2026, 1, 16)),
        _deal("lead"),
    ]

    assert analytics.average_days_in_pipeline(deals) == 13
    assert analytics.average_days_in_pipeline([_deal("lead")]) == 0


def test_next_follow_up_date_by_priority() -> None:
    last_contact = datetime(2026, 6, 1)

    assert analytics.next_follow_up_date(last_contact, "high") == datetime(2026, 6, 3, tzinfo=timezone.utc)
    assert analytics.next_follow_up_date(last_contact, "low") == datetime(2026, 6, 15, tzinfo=timezone.utc)
    assert analytics.next_follow_up_date(last_contact, None) == datetime(2026, 6, 8, tzinfo=timezone.utc)


def test_group_pipeline_treats_missing_stage_as_lead_and_drops_unknown() -> None:
    deals = [
        _deal(None, 1000, name=""),
        _deal("mystery", 5000),
        _deal("proposal", 2000, probability=80, updated_at=NOW - timedelta(days=3)),
    ]

    columns = pipeline.group_pipeline(deals, NOW)

    lead = columns[0]
    assert lead["count"] == 1
    assert lead["deals"][0]["title"] == "Untitled Deal"
    assert lead["deals"][0]["probability"] == 10
    proposal = columns[2]
    assert proposal["weighted_value"] == 1600.0
    assert proposal["deals"][0]["days_in_stage"] == 3
    assert sum(column["count"] for column in columns) == 2


def test_stage_transition_task_templates() -> None:
    task = pipeline.stage_transition_task("negotiation", "closed_won", NOW)

    assert task["title"] == "CLOSED WON stage actions"
    assert task["description"] == "Finalize contract terms and get signatures"
    assert task["due_date"] == NOW + timedelta(days=2)
    assert pipeline.stage_transition_action("lead", "closed_lost") == "Complete actions for closed_lost stage"
    assert pipeline.follow_up_task(None, NOW)["due_date"] == NOW + timedelta(days=1)


def test_probability_table() -> None:
    assert pipeline.probability_for_stage("closed_lost") == 0
    assert pipeline.probability_for_stage("closed_won") == 100
    assert pipeline.probability_for_stage(None) == 10
    assert pipeline.is_known_stage("qualified")
    assert not pipeline.is_known_stage("won")


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


@pytest.fixture()
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    monkeypatch.setenv("SALES_QUOTA", "100000")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session, setup_env: None) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id=str(uuid.UUID(int=42)),
            roles=["sales_rep"],
            permissions=permissions_for_roles(["sales_rep"]),
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _seed_deals(client: TestClient) -> date:
    close_date = date.today() + timedelta(days=1)
    for stage, value in (("closed_won", 20000), ("closed_lost", 5000), ("proposal", 10000)):
        response = client.post(
            "/api/crm/deals",
            json={"name": f"{stage} deal", "value": value, "stage": stage, "expected_close_date": close_date.isoformat()},
        )
        assert response.status_code == 201, response.text
    return close_date


def test_performance_endpoint_uses_configured_quota(client: TestClient) -> None:
    _seed_deals(client)

    response = client.get("/api/crm/analytics/performance")

    assert response.status_code == 200
    body = response.json()
    assert body["quota"] == 100000
    assert body["achieved"] == 20000
    assert body["percentage"] == 20
    assert body["deals_won"] == 1
    assert body["deals_lost"] == 1


def test_revenue_endpoint_returns_twelve_months(client: TestClient) -> None:
    close_date = _seed_deals(client)

    response = client.get("/api/crm/analytics/revenue", params={"year": close_date.year})

    assert response.status_code == 200
    months = response.json()
    assert len(months) == 12
    bucket = months[close_date.month - 1]
    assert bucket["forecast"] == 35000
    # deals created directly in a closed stage carry no close date
    assert bucket["actual"] == 0


def test_pipeline_summary_velocity_and_business_rules(client: TestClient) -> None:
    _seed_deals(client)

    summary = client.get("/api/crm/analytics/pipeline-summary").json()
    assert summary["open_deals"] == 1
    assert summary["weighted_value"] == 5000
    assert summary["win_rate"] == 50

    velocity = client.get("/api/crm/analytics/pipeline-velocity").json()
    assert [stage["stage"] for stage in velocity["stages"]] == ["lead", "qualified", "proposal", "negotiation"]
    assert velocity["average_days_in_pipeline"] == 0

    rules = client.get("/api/crm/analytics/business-rules").json()
    assert rules["conversion_rate"] == 33
    assert rules["average_deal_size"] == 20000


def test_win_rate_endpoint(client: TestClient) -> None:
    _seed_deals(client)
    this_year = datetime.now(timezone.utc).year

    periods = client.get("/api/crm/analytics/win-rate", params={"year": this_year}).json()

    assert len(periods) == 12
    assert sum(period["total"] for period in periods) == 3
    assert sum(period["won"] for period in periods) == 1
