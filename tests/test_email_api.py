from __future__ import annotations

import json
import uuid
from collections.abc import Callable, Generator
from typing import Any

import httpx
import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crm_rocket import audit, events
from crm_rocket.core.config import Settings, get_settings
from crm_rocket.core.database import Base, get_db
from crm_rocket.core.rbac import permissions_for_roles
from crm_rocket.crm.api import get_current_user as crm_get_current_user
from crm_rocket.crm.service import ActorUser
from crm_rocket.email.api import get_email_service
from crm_rocket.email.errors import EmailProviderError
from crm_rocket.email.gemini import DEFAULT_BODY, DEFAULT_SUBJECT, GeminiClient, normalize_html, parse_email_content
from crm_rocket.email.resend import ResendClient
from crm_rocket.email.service import EmailService, validate_email_address
from crm_rocket.main import app
from crm_rocket.middleware.rate_limit import reset_rate_limiter
from crm_rocket.otel import setup_inmemory_otel

USER_ID = str(uuid.uuid4())


class FakeProviders:
    """Answers Gemini and Resend calls and remembers what was sent."""

    def __init__(self, gemini_text: str = "{}", gemini_status: int = 200, resend_status: int = 200) -> None:
        self.gemini_text = gemini_text
        self.gemini_status = gemini_status
        self.resend_status = resend_status
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if "generateContent" in request.url.path:
            if self.gemini_status != 200:
                return httpx.Response(self.gemini_status, text="upstream said no")
            return httpx.Response(
                200,
                json={"candidates": [{"content": {"parts": [{"text": self.gemini_text}]}}]},
            )
        if request.url.path.endswith("/emails"):
            if self.resend_status != 200:
                return httpx.Response(self.resend_status, text="domain not verified")
            return httpx.Response(200, json={"id": "email_123"})
        return httpx.Response(404)

    def sent(self) -> list[dict[str, Any]]:
        return [json.loads(request.content) for request in self.requests if request.url.path.endswith("/emails")]


def build_service(providers: FakeProviders, **overrides: Any) -> EmailService:
    values: dict[str, Any] = {
        "gemini_api_key": "gemini-key",
        "resend_api_key": "resend-key",
        "gemini_api_url": "https://gemini.test/v1beta",
        "resend_api_url": "https://resend.test",
        **overrides,
    }
    settings = Settings(**values)
    transport = httpx.MockTransport(providers)
    return EmailService(
        settings,
        GeminiClient(settings, transport=transport),
        ResendClient(settings, transport=transport),
    )


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
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[EmailService], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id=USER_ID,
            roles=["sales_rep"],
            permissions=permissions_for_roles(["sales_rep"]),
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    def use_service(service: EmailService) -> None:
        app.dependency_overrides[get_email_service] = lambda: service

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, use_service
    app.dependency_overrides.clear()


def test_parse_email_content_variants() -> None:
    reply = 'Sure! {"subject": "Quick check-in", "body": "Hi Ada, shall we talk?"} Hope this helps.'
    assert parse_email_content(reply) == {"subject": "Quick check-in", "body": "Hi Ada, shall we talk?"}

    assert parse_email_content("{not json}") == {"subject": DEFAULT_SUBJECT, "body": DEFAULT_BODY}

    loose = "subject: 'Catch up' and then body: 'See you Tuesday'"
    assert parse_email_content(loose) == {"subject": "Catch up", "body": "See you Tuesday"}

    assert parse_email_content("") == {"subject": DEFAULT_SUBJECT, "body": DEFAULT_BODY}


def test_normalize_html() -> None:
    fenced = normalize_html('```html\n<div style="color: red">Hi</div>\n```')
    assert fenced == '<div style="color: red">Hi</div>'

    plain = normalize_html("Thanks for the call")
    assert "<p>Thanks for the call</p>" in plain
    assert "Sent via CRM-Rocket" in plain

    unstyled = normalize_html("<p>Hello</p>")
    assert unstyled.startswith('<div style="font-family')
    assert "<p>Hello</p>" in unstyled


def test_validate_email_address() -> None:
    assert validate_email_address("ada@example.com")
    assert not validate_email_address("ada@example")
    assert not validate_email_address("")
    assert not validate_email_address(None)


def test_gemini_errors_are_mapped() -> None:
    rate_limited = build_service(FakeProviders(gemini_status=429))
    with pytest.raises(EmailProviderError) as exc_info:
        rate_limited.gemini.generate_text("hi")
    assert exc_info.value.status_code == 429
    assert exc_info.value.message == "Too many requests to Gemini API. Please try again later."

    broken = build_service(FakeProviders(gemini_status=500))
    with pytest.raises(EmailProviderError) as exc_info:
        broken.gemini.generate_text("hi")
    assert exc_info.value.status_code == 502
    assert exc_info.value.message == "Failed to generate email content: Gemini API error 500"

    unconfigured = build_service(FakeProviders(), gemini_api_key=None)
    with pytest.raises(EmailProviderError) as exc_info:
        unconfigured.gemini.generate_text("hi")
    assert exc_info.value.status_code == 503


def test_gemini_call_is_traced() -> None:
    exporter = setup_inmemory_otel()
    service = build_service(FakeProviders(gemini_text="hello"))

    assert service.gemini.generate_text("hi") == "hello"

    spans = [span for span in exporter.get_finished_spans() if span.name == "gemini.generate_content"]
    assert spans
    assert spans[-1].attributes["http.status_code"] == 200


def test_send_direct_email(client) -> None:
    test_client, use_service = client
    providers = FakeProviders()
    use_service(build_service(providers))

    response = test_client.post(
        "/api/email/send",
        json={"to": "ada@example.com", "subject": "Hello", "body": "Great meeting you", "cc": "boss@example.com"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["method"] == "direct"
    assert body["data"] == {"id": "email_123"}
    assert body["activity_id"] is None

    sent = providers.sent()
    assert len(sent) == 1
    assert sent[0]["to"] == "ada@example.com"
    assert sent[0]["from"] == "onboarding@resend.dev"
    assert sent[0]["cc"] == "boss@example.com"
    assert "<p>Hello ada,</p>" in sent[0]["html"]
    auth = [request.headers["authorization"] for request in providers.requests]
    assert auth == ["Bearer resend-key"]


def test_send_rejects_invalid_recipient(client) -> None:
    test_client, use_service = client
    use_service(build_service(FakeProviders()))

    response = test_client.post("/api/email/send", json={"to": "not-an-email", "subject": "x", "body": "y"})

    assert response.status_code == 422
    assert response.json()["code"] == "email_send_failed"
    assert response.json()["message"] == "Invalid email format"


def test_send_without_resend_key_is_unavailable(client) -> None:
    test_client, use_service = client
    use_service(build_service(FakeProviders(), resend_api_key=None))

    direct = test_client.post("/api/email/send", json={"to": "ada@example.com", "subject": "x", "body": "y"})
    assert direct.status_code == 503
    assert direct.json()["message"] == "Email service not configured"
    assert direct.json()["details"] == {"provider": "resend"}

    enhanced = test_client.post(
        "/api/email/send-enhanced",
        json={"to": "ada@example.com", "subject": "x", "body": "y"},
    )
    assert enhanced.status_code == 503


def test_resend_failure_is_bad_gateway(client) -> None:
    test_client, use_service = client
    use_service(build_service(FakeProviders(resend_status=403)))

    response = test_client.post("/api/email/send", json={"to": "ada@example.com", "subject": "x", "body": "y"})

    assert response.status_code == 502
    assert response.json()["message"] == "Failed to send email: domain not verified"


def test_redirected_delivery(client) -> None:
    test_client, use_service = client
    providers = FakeProviders()
    use_service(build_service(providers, email_redirect_to="qa@example.com"))

    response = test_client.post(
        "/api/email/send",
        json={"to": "ada@example.com", "subject": "Proposal", "body": "Attached"},
    )

    assert response.status_code == 200
    sent = providers.sent()[0]
    assert sent["to"] == "qa@example.com"
    assert sent["subject"] == "[CRM Test] Proposal (Originally to: ada@example.com)"
    assert "Original Recipient:</strong> ada@example.com" in sent["html"]


def test_send_enhanced_uses_generated_html(client) -> None:
    test_client, use_service = client
    html = '<div style="font-family: Arial">' + "<p>Dear Ada, thank you for a wonderful meeting.</p>" * 3 + "</div>"
    providers = FakeProviders(gemini_text=f"```html\n{html}\n```")
    use_service(build_service(providers))

    response = test_client.post(
        "/api/email/send-enhanced",
        json={"to": "ada@example.com", "subject": "Thanks", "body": "thanks for meeting"},
    )

    assert response.status_code == 200
    assert response.json()["enhanced"] is True
    assert providers.sent()[0]["html"] == html


def test_send_enhanced_falls_back_when_gemini_is_down(client) -> None:
    test_client, use_service = client
    providers = FakeProviders(gemini_status=500)
    use_service(build_service(providers))

    response = test_client.post(
        "/api/email/send-enhanced",
        json={"to": "ada@example.com", "subject": "Thanks", "body": "thanks for meeting"},
    )

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert "AI enhancement unavailable" in providers.sent()[0]["html"]


def test_send_enhanced_requires_all_fields(client) -> None:
    test_client, use_service = client
    use_service(build_service(FakeProviders()))

    response = test_client.post("/api/email/send-enhanced", json={"to": "ada@example.com", "subject": "x"})

    assert response.status_code == 422
    assert response.json()["message"] == "Missing required fields: to, subject, body"


def test_sent_email_is_logged_as_activity(client) -> None:
    test_client, use_service = client
    use_service(build_service(FakeProviders()))
    contact = test_client.post(
        "/api/crm/contacts",
        json={"first_name": "Ada", "last_name": "Lovelace", "email": "ada@example.com"},
    ).json()

    response = test_client.post(
        "/api/email/send",
        json={"to": "ada@example.com", "subject": "Follow-up", "body": "As promised", "contact_id": contact["id"]},
    )

    assert response.status_code == 200
    activity_id = response.json()["activity_id"]
    assert activity_id is not None
    activities = test_client.get("/api/crm/activities").json()
    assert [(row["id"], row["type"], row["subject"]) for row in activities] == [(activity_id, "email", "Follow-up")]


def test_unknown_contact_is_rejected_before_sending(client) -> None:
    test_client, use_service = client
    providers = FakeProviders()
    use_service(build_service(providers))

    response = test_client.post(
        "/api/email/send",
        json={"to": "ada@example.com", "subject": "Follow-up", "body": "Hi", "contact_id": str(uuid.uuid4())},
    )

    assert response.status_code == 404
    assert response.json()["code"] == "email_send_failed"
    assert response.json()["message"] == "Contact not found"
    assert providers.sent() == []

    enhanced = test_client.post(
        "/api/email/send-enhanced",
        json={"to": "ada@example.com", "subject": "Deal", "body": "Hi", "deal_id": str(uuid.uuid4())},
    )
    assert enhanced.status_code == 404
    assert enhanced.json()["message"] == "Deal not found"
    assert providers.requests == []


def test_generate_email_for_contact(client) -> None:
    test_client, use_service = client
    providers = FakeProviders(gemini_text='{"subject": "Hello Ada", "body": "Let us meet."}')
    use_service(build_service(providers))
    contact = test_client.post(
        "/api/crm/contacts",
        json={"first_name": "Ada", "last_name": "Lovelace", "company_name": "Analytical Engines"},
    ).json()

    response = test_client.post("/api/email/generate", json={"contact_id": contact["id"]})

    assert response.status_code == 200
    assert response.json() == {"subject": "Hello Ada", "body": "Let us meet."}
    prompt = json.loads(providers.requests[0].content)["contents"][0]["parts"][0]["text"]
    assert "Name: Ada Lovelace" in prompt
    assert "Company: Analytical Engines" in prompt
    assert providers.requests[0].url.params["key"] == "gemini-key"


def test_generate_email_provider_error(client) -> None:
    test_client, use_service = client
    use_service(build_service(FakeProviders(gemini_status=429)))

    response = test_client.post("/api/email/generate", json={"subject": "Hi", "body": "Draft"})

    assert response.status_code == 429
    assert response.json()["code"] == "email_generate_failed"


def test_health_and_connection(client) -> None:
    test_client, use_service = client
    use_service(build_service(FakeProviders(), gemini_api_key=None))

    health = test_client.get("/api/email/health").json()
    assert health == {
        "status": "ok",
        "resend_configured": True,
        "gemini_configured": False,
        "redirect_to": None,
    }
    assert test_client.post("/api/email/test-connection").json() == {
        "success": True,
        "message": "Resend API key is configured",
    }

    use_service(build_service(FakeProviders(), resend_api_key=None))
    assert test_client.get("/api/email/health").json()["status"] == "not_configured"
    missing = test_client.post("/api/email/test-connection")
    assert missing.status_code == 503
    assert missing.json()["message"] == "RESEND_API_KEY is not configured"


def test_email_service_follows_current_settings(client, monkeypatch: pytest.MonkeyPatch) -> None:
    test_client, _ = client
    monkeypatch.delenv("RESEND_API_KEY", raising=False)
    get_settings.cache_clear()
    assert test_client.get("/api/email/health").json()["resend_configured"] is False

    monkeypatch.setenv("RESEND_API_KEY", "rotated-key")
    get_settings.cache_clear()
    assert test_client.get("/api/email/health").json()["resend_configured"] is True
