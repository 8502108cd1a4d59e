from __future__ import annotations

import logging
import re
from typing import Any

from fastapi import HTTPException, status

from crm_rocket.core.config import Settings, get_settings
from crm_rocket.email.gemini import GeminiClient
from crm_rocket.email.resend import ResendClient
from crm_rocket.email.schemas import EmailHealth, EmailSendRequest

logger = logging.getLogger("app.email.service")

EMAIL_ADDRESS_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
ENHANCEMENT_RATIO = 1.2


def validate_email_address(email: str | None) -> bool:
    return bool(email) and EMAIL_ADDRESS_RE.match(email) is not None


def format_html_email(content: str, recipient: str) -> str:
    recipient_name = recipient.split("@")[0] if recipient else ""
    return (
        '<div style="font-family: Arial, sans-serif; line-height: 1.6; max-width: 600px; margin: 0 auto; color: #333;">'
        f"<p>Hello {recipient_name},</p>"
        f"<div>{content}</div>"
        '<p style="margin-top: 20px;">Best regards,<br>CRM-Rocket Team</p>'
        '<div style="margin-top: 20px; padding-top: 10px; border-top: 1px solid #eee; font-size: 12px; color: #666;">'
        "Sent via CRM-Rocket"
        "</div>"
        "</div>"
    )


def redirect_notice_html(email: EmailSendRequest, html: str) -> str:
    copies = ""
    if email.cc:
        copies += f"<p><strong>CC:</strong> {email.cc}</p>"
    if email.bcc:
        copies += f"<p><strong>BCC:</strong> {email.bcc}</p>"
    return (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        '<h2 style="color: #333;">CRM Email Test</h2>'
        '<div style="background: #f5f5f5; padding: 15px; border-radius: 5px; margin: 15px 0;">'
        f"<p><strong>Original Recipient:</strong> {email.to}</p>"
        f"<p><strong>Original Subject:</strong> {email.subject}</p>"
        f"{copies}"
        "</div>"
        f"{html}"
        "</div>"
    )


class EmailService:
    def __init__(
        self,
        settings: Settings | None = None,
        gemini: GeminiClient | None = None,
        resend: ResendClient | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.gemini = gemini or GeminiClient(self.settings)
        self.resend = resend or ResendClient(self.settings)

    def generate_content(self, contact: dict[str, Any] | None, subject: str = "", body: str = "") -> dict[str, str]:
        return self.gemini.generate_email_content(contact, subject, body)

    def send_direct(self, email: EmailSendRequest) -> dict[str, Any]:
        self._require_recipient(email.to)
        html = format_html_email(email.body, email.to)
        data = self._deliver(email, html)
        return {"success": True, "data": data, "method": "direct"}

    def send_enhanced(self, email: EmailSendRequest) -> dict[str, Any]:
        if not email.to or not email.subject or not email.body:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="Missing required fields: to, subject, body",
            )
        self._require_recipient(email.to)
        if not self.resend.configured:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Email service not configured")

        html = self.gemini.enhance_html(email.subject, email.body, email.to)
        enhanced = len(html) > len(email.body) * ENHANCEMENT_RATIO
        if not enhanced:
            logger.info("email.enhancement_skipped", extra={"status": "not_enhanced"})
        data = self._deliver(email, html)
        return {"success": True, "data": data, "enhanced": enhanced}

    def test_connection(self) -> dict[str, Any]:
        return self.resend.test_connection()

    def get_health(self) -> EmailHealth:
        return EmailHealth(
            status="ok" if self.resend.configured else "not_configured",
            resend_configured=self.resend.configured,
            gemini_configured=self.gemini.configured,
            redirect_to=self.settings.email_redirect_to,
        )

    def _require_recipient(self, to: str) -> None:
        if not validate_email_address(to):
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Invalid email format")

    def _deliver(self, email: EmailSendRequest, html: str) -> dict[str, Any]:
        redirect_to = self.settings.email_redirect_to
        if redirect_to:
            logger.info("email.redirected", extra={"status": "redirected"})
            return self.resend.send(
                redirect_to,
                f"[CRM Test] {email.subject} (Originally to: {email.to})",
                redirect_notice_html(email, html),
            )
        return self.resend.send(email.to, email.subject, html, cc=email.cc, bcc=email.bcc)
