from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from crm_rocket.core.config import Settings, get_settings
from crm_rocket.email.errors import EmailProviderError
from crm_rocket.metrics import observe_email_provider_call
from crm_rocket.otel import get_tracer

logger = logging.getLogger("app.email.resend")
tracer = get_tracer("app.email.resend")


class ResendClient:
    provider = "resend"

    def __init__(self, settings: Settings | None = None, transport: httpx.BaseTransport | None = None) -> None:
        self.settings = settings or get_settings()
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.settings.resend_api_key)

    def send(
        self,
        to: str,
        subject: str,
        html: str,
        cc: str | None = None,
        bcc: str | None = None,
    ) -> dict[str, Any]:
        if not self.configured:
            raise EmailProviderError("Email service not configured", status_code=503, provider=self.provider)

        payload: dict[str, Any] = {
            "from": self.settings.sender_email,
            "to": to,
            "subject": subject,
            "html": html,
        }
        if cc:
            payload["cc"] = cc
        if bcc:
            payload["bcc"] = bcc

        started = time.perf_counter()
        outcome = "error"
        with tracer.start_as_current_span("resend.send_email") as span:
            try:
                with httpx.Client(timeout=self.settings.http_timeout_seconds, transport=self.transport) as client:
                    resp = client.post(
                        f"{self.settings.resend_api_url.rstrip('/')}/emails",
                        json=payload,
                        headers={"Authorization": f"Bearer {self.settings.resend_api_key}"},
                    )
            except httpx.RequestError as exc:
                observe_email_provider_call(self.provider, outcome, time.perf_counter() - started)
                logger.error("resend.request_error", extra={"error": str(exc)})
                raise EmailProviderError(f"Failed to send email: {exc}", provider=self.provider) from exc

            span.set_attribute("http.status_code", resp.status_code)
            if resp.status_code >= 300:
                observe_email_provider_call(self.provider, outcome, time.perf_counter() - started)
                logger.error("resend.send_failed", extra={"status_code": resp.status_code, "error": resp.text})
                raise EmailProviderError(f"Failed to send email: {resp.text}", provider=self.provider)

            outcome = "success"
            observe_email_provider_call(self.provider, outcome, time.perf_counter() - started)
            result = resp.json()
        logger.info("resend.sent", extra={"entity_id": result.get("id"), "status": "sent"})
        return result

    def test_connection(self) -> dict[str, Any]:
        if not self.configured:
            raise EmailProviderError("RESEND_API_KEY is not configured", status_code=503, provider=self.provider)
        return {"success": True, "message": "Resend API key is configured"}
