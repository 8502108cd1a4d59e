from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crm_rocket.core.database import get_db
from crm_rocket.crm.api import (
    activity_service,
    contact_service,
    deal_service,
    error_response,
    get_current_user,
    require_permission,
)
from crm_rocket.crm.schemas import ActivityLogRequest
from crm_rocket.crm.service import ActorUser
from crm_rocket.email.errors import EmailProviderError
from crm_rocket.email.schemas import (
    EmailGenerateRequest,
    EmailHealth,
    EmailSendRequest,
    EmailSendResult,
    GeneratedEmail,
)
from crm_rocket.email.service import EmailService

logger = logging.getLogger("app.email.api")
router = APIRouter(prefix="/api/email", tags=["email"])


def get_email_service() -> EmailService:
    return EmailService()


def _provider_error(request: Request, exc: EmailProviderError, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=exc.message,
        details={"provider": exc.provider},
    )


def _resolve_log_targets(db: Session, user: ActorUser, email: EmailSendRequest) -> None:
    # raises 404 before anything is sent
    if email.contact_id is not None:
        contact_service.get_contact(db, user, email.contact_id)
    if email.deal_id is not None:
        deal_service.get_deal(db, user, email.deal_id)


def _log_sent_email(db: Session, user: ActorUser, email: EmailSendRequest) -> Any:
    if email.contact_id is None and email.deal_id is None:
        return None
    try:
        activity = activity_service.log_email(
            db,
            user,
            ActivityLogRequest(
                subject=email.subject,
                description=email.body,
                contact_id=email.contact_id,
                deal_id=email.deal_id,
            ),
        )
    except SQLAlchemyError as exc:
        db.rollback()
        logger.warning("email.activity_log_failed", extra={"provider": "resend", "error": str(exc)})
        return None
    return activity.id


@router.post("/send", response_model=EmailSendResult)
def send_email(
    request: Request,
    dto: EmailSendRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    email_service: EmailService = Depends(get_email_service),
) -> EmailSendResult | JSONResponse:
    try:
        require_permission(user, "email.send")
        _resolve_log_targets(db, user, dto)
        result = email_service.send_direct(dto)
        return EmailSendResult(**result, activity_id=_log_sent_email(db, user, dto))
    except EmailProviderError as exc:
        return _provider_error(request, exc, "email_send_failed")
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="email_send_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.post("/send-enhanced", response_model=EmailSendResult)
def send_enhanced_email(
    request: Request,
    dto: EmailSendRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    email_service: EmailService = Depends(get_email_service),
) -> EmailSendResult | JSONResponse:
    try:
        require_permission(user, "email.send")
        _resolve_log_targets(db, user, dto)
        result = email_service.send_enhanced(dto)
        return EmailSendResult(**result, activity_id=_log_sent_email(db, user, dto))
    except EmailProviderError as exc:
        return _provider_error(request, exc, "email_send_enhanced_failed")
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="email_send_enhanced_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.post("/generate", response_model=GeneratedEmail)
def generate_email(
    request: Request,
    dto: EmailGenerateRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    email_service: EmailService = Depends(get_email_service),
) -> GeneratedEmail | JSONResponse:
    try:
        require_permission(user, "email.generate")
        contact: dict[str, Any] = dto.model_dump(include={"first_name", "last_name", "company_name", "email"})
        if dto.contact_id is not None:
            stored = contact_service.get_contact(db, user, dto.contact_id)
            contact = {
                "first_name": stored.first_name,
                "last_name": stored.last_name,
                "company_name": stored.company.name if stored.company else None,
                "email": stored.email,
            }
        return GeneratedEmail(**email_service.generate_content(contact, dto.subject, dto.body))
    except EmailProviderError as exc:
        return _provider_error(request, exc, "email_generate_failed")
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="email_generate_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.get("/health", response_model=EmailHealth)
def email_health(
    user: ActorUser = Depends(get_current_user),
    email_service: EmailService = Depends(get_email_service),
) -> EmailHealth:
    return email_service.get_health()


@router.post("/test-connection", response_model=None)
def test_connection(
    request: Request,
    user: ActorUser = Depends(get_current_user),
    email_service: EmailService = Depends(get_email_service),
) -> Any:
    try:
        require_permission(user, "email.send")
        return email_service.test_connection()
    except EmailProviderError as exc:
        return _provider_error(request, exc, "email_test_connection_failed")
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="email_test_connection_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
