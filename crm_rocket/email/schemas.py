from typing import Any
from uuid import UUID

from pydantic import BaseModel


class EmailSendRequest(BaseModel):
    to: str = ""
    subject: str = ""
    body: str = ""
    cc: str | None = None
    bcc: str | None = None
    contact_id: UUID | None = None
    deal_id: UUID | None = None


class EmailSendResult(BaseModel):
    success: bool
    data: dict[str, Any]
    method: str | None = None
    enhanced: bool | None = None
    activity_id: UUID | None = None


class EmailGenerateRequest(BaseModel):
    contact_id: UUID | None = None
    first_name: str | None = None
    last_name: str | None = None
    company_name: str | None = None
    email: str | None = None
    subject: str = ""
    body: str = ""


class GeneratedEmail(BaseModel):
    subject: str
    body: str


class EmailHealth(BaseModel):
    status: str
    resend_configured: bool
    gemini_configured: bool
    redirect_to: str | None
