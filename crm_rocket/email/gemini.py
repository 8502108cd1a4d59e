"""Gemini text generation used to draft and polish outbound email."""

from __future__ import annotations

import json
import logging
import re
import time
from typing import Any

import httpx

from crm_rocket.core.config import Settings, get_settings
from crm_rocket.email.errors import EmailProviderError
from crm_rocket.metrics import observe_email_provider_call
from crm_rocket.otel import get_tracer

logger = logging.getLogger("app.email.gemini")
tracer = get_tracer("app.email.gemini")

DEFAULT_SUBJECT = "Professional Follow-up"
DEFAULT_BODY = "Thank you for your time. I look forward to hearing from you soon."

_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")
_SUBJECT_RE = re.compile(r"[\"']?subject[\"']?\s*:\s*[\"']([^\"']+)[\"']", re.IGNORECASE)
_BODY_RE = re.compile(r"[\"']?body[\"']?\s*:\s*[\"']([^\"']+)[\"']", re.IGNORECASE)
_HTML_FENCE_RE = re.compile(r"```html([\s\S]*?)```")

_STATUS_MESSAGES = {
    400: "Invalid request to Gemini API. Please check your content.",
    403: "Gemini API key is invalid or has no quota remaining.",
    429: "Too many requests to Gemini API. Please try again later.",
}

FOOTER_HTML = (
    '<div style="margin-top: 20px; padding-top: 10px; border-top: 1px solid #eee; font-size: 12px; color: #666;">'
    "Sent via CRM-Rocket"
    "</div>"
)
CONTAINER_STYLE = "font-family: Arial, sans-serif; line-height: 1.6; color: #333; max-width: 600px;"


def _contact_value(contact: dict[str, Any] | None, key: str) -> str:
    if not contact:
        return ""
    value = contact.get(key)
    return str(value) if value else ""


def enhancement_prompt(contact: dict[str, Any] | None, subject: str, body: str) -> str:
    return f"""You are a professional email assistant. Please enhance and improve the following email content while maintaining the original intent and message.

Contact Information:
- Name: {_contact_value(contact, "first_name")} {_contact_value(contact, "last_name")}
- Company: {_contact_value(contact, "company_name") or "their company"}
- Email: {_contact_value(contact, "email")}

Current Email Content:
Subject: "{subject}"
Body: "{body}"

Please enhance this email by:
1. Making the subject line more compelling and professional
2. Improving the body content for clarity, professionalism, and engagement
3. Adding appropriate greetings and closing if missing
4. Ensuring proper business email etiquette
5. Maintaining the original intent and key messages

Respond in this exact JSON format:
{{
  "subject": "Enhanced subject line here",
  "body": "Enhanced email body here with proper formatting and professional tone"
}}"""


def template_prompt(contact: dict[str, Any] | None) -> str:
    return f"""You are a professional email assistant. Create a professional business email template for a CRM system.

Contact Information:
- Name: {_contact_value(contact, "first_name") or "the contact"} {_contact_value(contact, "last_name")}
- Company: {_contact_value(contact, "company_name") or "their company"}
- Email: {_contact_value(contact, "email")}

Please create a professional business email that:
1. Has a compelling and relevant subject line
2. Includes a proper greeting using the contact's name
3. Has a professional introduction or opening
4. Includes a clear purpose/call to action
5. Has an appropriate professional closing
6. Is suitable for business relationship building or follow-up

The tone should be:
- Professional but friendly
- Clear and concise
- Appropriate for business communication
- Personalized using the contact information

Respond in this exact JSON format:
{{
  "subject": "Professional subject line here",
  "body": "Complete professional email body here with proper greeting, content, and closing"
}}"""


def html_prompt(subject: str, body: str, to: str) -> str:
    return f"""You are a professional email assistant. Your task is to enhance the following email while maintaining its core message and intent.
Make it friendly but professional, with proper HTML formatting optimized for business communication.

ORIGINAL SUBJECT: {subject}
RECIPIENT: {to}
ORIGINAL CONTENT:
{body}

Create a well-structured HTML email that includes:
1. A professional greeting using the recipient's email or name if it can be extracted from the email (or just "Hello" if unclear)
2. The enhanced content with proper paragraphs and formatting
3. A professional sign-off
4. A simple footer line: "Sent via CRM-Rocket"

IMPORTANT: Return ONLY the HTML content without any explanations or markdown. Include proper HTML formatting with inline CSS styles for professional appearance.
Use font-family: Arial, sans-serif; line-height: 1.5; color: #333; and other professional styling.
"""


def parse_email_content(text: str) -> dict[str, str]:
    """Pull `{subject, body}` out of a model reply, falling back to defaults."""
    match = _JSON_OBJECT_RE.search(text or "")
    if match:
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError:
            logger.warning("gemini.parse_failed", extra={"error": "reply is not valid JSON"})
            return {"subject": DEFAULT_SUBJECT, "body": DEFAULT_BODY}
        if not isinstance(parsed, dict):
            return {"subject": DEFAULT_SUBJECT, "body": DEFAULT_BODY}
        return {
            "subject": parsed.get("subject") or DEFAULT_SUBJECT,
            "body": parsed.get("body") or DEFAULT_BODY,
        }

    subject_match = _SUBJECT_RE.search(text or "")
    body_match = _BODY_RE.search(text or "")
    return {
        "subject": subject_match.group(1) if subject_match else DEFAULT_SUBJECT,
        "body": body_match.group(1) if body_match else DEFAULT_BODY,
    }


def normalize_html(text: str) -> str:
    content = text
    if "```html" in text:
        fenced = _HTML_FENCE_RE.search(text)
        if fenced and fenced.group(1):
            content = fenced.group(1).strip()

    if "<div" not in content and "<p>" not in content:
        return (
            f'<div style="{CONTAINER_STYLE}">'
            "<p>Hello,</p>"
            f"<p>{content}</p>"
            "<p>Best regards,<br>CRM-Rocket Team</p>"
            f"{FOOTER_HTML}"
            "</div>"
        )
    if "font-family" not in content and "style=" not in content:
        return f'<div style="{CONTAINER_STYLE}">{content}{FOOTER_HTML}</div>'
    return content


def fallback_html(body: str, to: str) -> str:
    name = to.split("@")[0] if to else ""
    return (
        f'<div style="{CONTAINER_STYLE}">'
        '<div style="background-color: #fff3cd; border-left: 4px solid #ffc107; padding: 10px; margin-bottom: 15px;">'
        "<p><strong>Note:</strong> AI enhancement unavailable. Showing original content.</p>"
        "</div>"
        f"<p>Hello {name},</p>"
        f"<p>{body}</p>"
        "<p>Best regards,<br>CRM-Rocket Team</p>"
        f"{FOOTER_HTML}"
        "</div>"
    )


class GeminiClient:
    provider = "gemini"

    def __init__(self, settings: Settings | None = None, transport: httpx.BaseTransport | None = None) -> None:
        self.settings = settings or get_settings()
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.settings.gemini_api_key)

    def generate_text(self, prompt: str) -> str:
        if not self.configured:
            raise EmailProviderError("Gemini API key is not configured", status_code=503, provider=self.provider)

        url = f"{self.settings.gemini_api_url.rstrip('/')}/models/{self.settings.gemini_model}:generateContent"
        payload = {"contents": [{"parts": [{"text": prompt}]}]}
        started = time.perf_counter()
        outcome = "error"
        with tracer.start_as_current_span("gemini.generate_content") as span:
            span.set_attribute("gemini.model", self.settings.gemini_model)
            try:
                with httpx.Client(timeout=self.settings.http_timeout_seconds, transport=self.transport) as client:
                    resp = client.post(url, params={"key": self.settings.gemini_api_key}, json=payload)
                span.set_attribute("http.status_code", resp.status_code)
                if resp.status_code >= 300:
                    logger.error(
                        "gemini.request_failed",
                        extra={"status_code": resp.status_code, "error": resp.text},
                    )
                    message = _STATUS_MESSAGES.get(
                        resp.status_code,
                        f"Failed to generate email content: Gemini API error {resp.status_code}",
                    )
                    status_code = 429 if resp.status_code == 429 else 502
                    raise EmailProviderError(message, status_code=status_code, provider=self.provider)
                text = self._extract_text(resp.json())
                outcome = "success"
                return text
            except httpx.RequestError as exc:
                logger.error("gemini.request_error", extra={"error": str(exc)})
                raise EmailProviderError(
                    f"Failed to generate email content: {exc}",
                    provider=self.provider,
                ) from exc
            except ValueError as exc:
                raise EmailProviderError(
                    "Failed to generate email content: Invalid response from Gemini API",
                    provider=self.provider,
                ) from exc
            finally:
                observe_email_provider_call(self.provider, outcome, time.perf_counter() - started)

    def generate_email_content(
        self,
        contact: dict[str, Any] | None,
        subject: str = "",
        body: str = "",
    ) -> dict[str, str]:
        enhancing = bool(subject.strip() or body.strip())
        prompt = enhancement_prompt(contact, subject, body) if enhancing else template_prompt(contact)
        logger.info("gemini.generate", extra={"status": "enhancement" if enhancing else "template"})
        return parse_email_content(self.generate_text(prompt))

    def enhance_html(self, subject: str, body: str, to: str) -> str:
        try:
            text = self.generate_text(html_prompt(subject, body, to))
        except EmailProviderError as exc:
            logger.warning("gemini.enhance_unavailable", extra={"error": exc.message})
            return fallback_html(body, to)
        return normalize_html(text)

    def _extract_text(self, data: Any) -> str:
        candidates = data.get("candidates") if isinstance(data, dict) else None
        if not candidates:
            raise EmailProviderError(
                "Failed to generate email content: Invalid response from Gemini API",
                provider=self.provider,
            )
        content = candidates[0].get("content") or {}
        parts = content.get("parts") or []
        if not parts or "text" not in parts[0]:
            raise EmailProviderError(
                "Failed to generate email content: Invalid content structure from Gemini API",
                provider=self.provider,
            )
        return str(parts[0]["text"])
