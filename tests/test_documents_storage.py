from __future__ import annotations

import uuid
from collections.abc import Callable, Generator
from pathlib import Path

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
from crm_rocket.crm.service import ActorUser, format_file_size, get_file_extension, get_file_icon
from crm_rocket.main import app
from crm_rocket.middleware.rate_limit import reset_rate_limiter
from crm_rocket.storage import (
    DocumentStorage,
    InvalidSignatureError,
    ObjectExistsError,
    ObjectNotFoundError,
    StorageError,
    safe_object_name,
)

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
def setup_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path))
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


def _create_deal(test_client: TestClient) -> dict:
    response = test_client.post("/api/crm/deals", json={"name": "Engine order", "value": 1000})
    assert response.status_code == 201
    return response.json()


def _upload(test_client: TestClient, deal_id: str, name: str = "proposal.pdf", content: bytes = b"%PDF-1.4 demo") -> dict:
    response = test_client.post(
        f"/api/crm/deals/{deal_id}/documents",
        files={"file": (name, content, "application/pdf")},
        data={"document_type": "proposal"},
    )
    assert response.status_code == 201, response.text
    return response.json()


def test_file_helpers() -> None:
    assert format_file_size(0) == "0 B"
    assert format_file_size(13) == "13 B"
    assert format_file_size(2048) == "2 KB"
    assert format_file_size(1536) == "1.5 KB"
    assert format_file_size(5 * 1024 * 1024) == "5 MB"
    assert get_file_extension("Quote.PDF") == "pdf"
    assert get_file_extension("README") == "unknown"
    assert get_file_icon("forecast.xlsx") == "FileSpreadsheet"
    assert get_file_icon("mystery.bin") == "File"
    assert safe_object_name("../../etc/passwd") == "passwd"
    assert safe_object_name("q3 plan$v2.pdf") == "q3 plan_v2.pdf"
    assert safe_object_name(None) == "file.bin"


def test_storage_rejects_traversal_and_duplicates(tmp_path: Path) -> None:
    storage = DocumentStorage("deal-documents", root=tmp_path)
    storage.upload("a/b.txt", b"hello")

    with pytest.raises(ObjectExistsError):
        storage.upload("a/b.txt", b"again")
    with pytest.raises(StorageError):
        storage.upload("../escape.txt", b"nope")
    with pytest.raises(ObjectNotFoundError):
        storage.remove(["a/missing.txt"])

    assert storage.read("a/b.txt") == b"hello"
    assert storage.remove(["a/b.txt"]) == ["a/b.txt"]
    assert not storage.exists("a/b.txt")


def test_signed_token_is_bound_to_bucket(tmp_path: Path) -> None:
    documents = DocumentStorage("deal-documents", root=tmp_path)
    avatars = DocumentStorage("avatars", root=tmp_path)
    token = documents.create_signed_url("x/y.pdf", 60).split("token=", 1)[1]

    assert documents.resolve_signed_token(token) == "x/y.pdf"
    with pytest.raises(InvalidSignatureError):
        avatars.resolve_signed_token(token)
    with pytest.raises(InvalidSignatureError):
        documents.resolve_signed_token(token + "tampered")


def test_upload_list_and_download(client, tmp_path: Path) -> None:
    test_client, _ = client
    deal = _create_deal(test_client)

    document = _upload(test_client, deal["id"])

    assert document["name"] == "proposal.pdf"
    assert document["document_type"] == "proposal"
    assert document["file_size"] == 13
    assert document["size_label"] == "13 B"
    assert document["extension"] == "pdf"
    assert document["icon"] == "FileText"
    assert document["uploaded_by"] == USER_IDS["rep1"]
    assert document["file_path"].startswith(f"{USER_IDS['rep1']}/{deal['id']}/")
    assert document["file_path"].endswith("-proposal.pdf")
    assert (tmp_path / "deal-documents" / document["file_path"]).read_bytes() == b"%PDF-1.4 demo"

    listed = test_client.get(f"/api/crm/deals/{deal['id']}/documents").json()
    assert [row["id"] for row in listed] == [document["id"]]

    signed = test_client.get("/api/crm/documents/download-url", params={"file_path": document["file_path"]})
    assert signed.status_code == 200
    assert signed.json()["expires_in"] == 3600
    download = test_client.get(signed.json()["signed_url"])
    assert download.status_code == 200
    assert download.content == b"%PDF-1.4 demo"
    assert "proposal.pdf" in download.headers["content-disposition"]


def test_invalid_signed_url_is_forbidden(client) -> None:
    test_client, _ = client

    response = test_client.get("/api/storage/deal-documents", params={"token": "not-a-token"})

    assert response.status_code == 403
    assert response.json()["code"] == "storage_signature_invalid"


def test_delete_document_removes_object(client, tmp_path: Path) -> None:
    test_client, _ = client
    deal = _create_deal(test_client)
    document = _upload(test_client, deal["id"])
    signed_url = test_client.get(
        "/api/crm/documents/download-url",
        params={"file_path": document["file_path"]},
    ).json()["signed_url"]

    deleted = test_client.delete(f"/api/crm/documents/{document['id']}")

    assert deleted.status_code == 200
    assert not (tmp_path / "deal-documents" / document["file_path"]).exists()
    assert test_client.get(f"/api/crm/deals/{deal['id']}/documents").json() == []
    gone = test_client.get(signed_url)
    assert gone.status_code == 404
    assert gone.json()["code"] == "storage_object_not_found"


def test_deleting_deal_removes_its_stored_documents(client, tmp_path: Path) -> None:
    test_client, _ = client
    deal = _create_deal(test_client)
    first = _upload(test_client, deal["id"])
    second = _upload(test_client, deal["id"], name="contract.pdf")
    (tmp_path / "deal-documents" / first["file_path"]).unlink()

    deleted = test_client.delete(f"/api/crm/deals/{deal['id']}")

    assert deleted.status_code == 200
    assert not (tmp_path / "deal-documents" / second["file_path"]).exists()


def test_documents_are_scoped_to_uploader(client) -> None:
    test_client, set_actor = client
    deal = _create_deal(test_client)
    document = _upload(test_client, deal["id"])

    set_actor("rep2")
    assert test_client.get(f"/api/crm/deals/{deal['id']}/documents").json() == []
    url = test_client.get("/api/crm/documents/download-url", params={"file_path": document["file_path"]})
    assert url.status_code == 404
    assert url.json()["message"] == "Document not found"
    upload = test_client.post(
        f"/api/crm/deals/{deal['id']}/documents",
        files={"file": ("other.pdf", b"x", "application/pdf")},
    )
    assert upload.status_code == 404
    assert upload.json()["message"] == "Deal not found"

    set_actor("manager")
    assert len(test_client.get(f"/api/crm/deals/{deal['id']}/documents").json()) == 1
    assert test_client.delete(f"/api/crm/documents/{document['id']}").status_code == 200
