from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crm_rocket.core.auth import ANONYMOUS_SUBJECT, create_access_token, decode_access_token
from crm_rocket.core.config import get_settings
from crm_rocket.core.database import Base, get_db
from crm_rocket.core.rbac import has_permission, permissions_for_roles
from crm_rocket.main import app
from crm_rocket.middleware.rate_limit import reset_rate_limiter
from crm_rocket.platform.security.context import coerce_user_uuid


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
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _bearer(sub: str, roles: list[str], **kwargs) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(sub, roles, **kwargs)}"}


def test_role_permissions() -> None:
    rep = permissions_for_roles(["sales_rep"])
    viewer = permissions_for_roles(["user"])

    assert has_permission(rep, "crm.contacts.write")
    assert has_permission(rep, "email.send")
    assert not has_permission(rep, "users.read")
    assert has_permission(viewer, "crm.contacts.read")
    assert has_permission(viewer, "crm.tasks.write")
    assert not has_permission(viewer, "crm.contacts.write")
    assert has_permission(permissions_for_roles(["admin"]), "anything.at.all")
    assert permissions_for_roles(["crm.contacts.read"]) == {"crm.contacts.read"}


def test_decode_access_token() -> None:
    user = decode_access_token(create_access_token("rep-1", ["sales_rep"], email="rep@example.com"))

    assert user.sub == "rep-1"
    assert user.roles == ["sales_rep"]
    assert user.email == "rep@example.com"
    assert decode_access_token("").sub == ANONYMOUS_SUBJECT
    assert decode_access_token("garbage").is_anonymous


def test_coerce_user_uuid_is_stable_for_opaque_subjects() -> None:
    assert coerce_user_uuid("auth0|abc") == coerce_user_uuid("auth0|abc")
    assert coerce_user_uuid("auth0|abc") != coerce_user_uuid("auth0|xyz")
    subject = "3f1d7f0e-7b8c-4f7a-9d7e-0c8c3b1a2f10"
    assert str(coerce_user_uuid(subject)) == subject


def test_crm_routes_require_login(client: TestClient) -> None:
    response = client.get("/api/crm/contacts")

    assert response.status_code == 401
    assert response.json() == {"detail": "User must be logged in"}


def test_bearer_token_reaches_crm_routes(client: TestClient) -> None:
    headers = _bearer("auth0|rep", ["sales_rep"])

    created = client.post("/api/crm/contacts", json={"first_name": "Ada", "last_name": "Lovelace"}, headers=headers)
    assert created.status_code == 201
    assert created.json()["owner_id"] == str(coerce_user_uuid("auth0|rep"))

    listed = client.get("/api/crm/contacts", headers=headers)
    assert [row["id"] for row in listed.json()] == [created.json()["id"]]

    stranger = client.get("/api/crm/contacts", headers=_bearer("auth0|other", ["sales_rep"]))
    assert stranger.json() == []


def test_missing_permission_is_forbidden(client: TestClient) -> None:
    response = client.post(
        "/api/crm/contacts",
        json={"first_name": "Ada", "last_name": "Lovelace"},
        headers=_bearer("viewer", ["user"]),
    )

    assert response.status_code == 403
    assert response.json()["message"] == "Missing permission: crm.contacts.write"


def test_super_admin_sees_all_rows(client: TestClient) -> None:
    created = client.post(
        "/api/crm/deals",
        json={"name": "Owned deal"},
        headers=_bearer("auth0|rep", ["sales_rep"]),
    )
    assert created.status_code == 201

    listed = client.get("/api/crm/deals", headers=_bearer("root", ["system.admin"]))

    assert [row["id"] for row in listed.json()] == [created.json()["id"]]


def test_me_endpoint(client: TestClient) -> None:
    response = client.get("/me", headers=_bearer("rep-1", ["sales_rep"], email="rep@example.com"))

    assert response.status_code == 200
    assert response.json() == {"sub": "rep-1", "roles": ["sales_rep"], "email": "rep@example.com"}

    anonymous = client.get("/me")
    assert anonymous.json()["sub"] == ANONYMOUS_SUBJECT
