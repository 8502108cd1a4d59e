from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

from fastapi import (
    APIRouter,
    Depends,
    File,
    Form,
    HTTPException,
    Query,
    Request,
    UploadFile,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session
from starlette.requests import HTTPConnection

from crm_rocket import audit
from crm_rocket.context import get_correlation_id, set_actor_user_id
from crm_rocket.core.auth import AuthUser, get_current_user as get_auth_user
from crm_rocket.core.database import get_db
from crm_rocket.core.rbac import has_permission, permissions_for_roles
from crm_rocket.crm import realtime
from crm_rocket.crm.schemas import (
    ActivityCreate,
    ActivityFilter,
    ActivityLogRequest,
    ActivityRead,
    ActivityStats,
    ActivityUpdate,
    AuditRead,
    BulkIdsRequest,
    BusinessRules,
    CompanyCreate,
    CompanyFilter,
    CompanyInsights,
    CompanyRead,
    CompanyStats,
    CompanyUpdate,
    ContactCreate,
    ContactFilter,
    ContactImportRequest,
    ContactMergeRequest,
    ContactRead,
    ContactStats,
    ContactUpdate,
    DateRange,
    DealActivityCreate,
    DealCreate,
    DealRead,
    DealStageUpdate,
    DealUpdate,
    DocumentRead,
    DocumentType,
    FollowUpTaskRequest,
    InviteUserRequest,
    PerformanceMetrics,
    PipelineColumn,
    PipelineSummary,
    PipelineVelocity,
    RecentActivityItem,
    RelationshipHealth,
    RevenueMonth,
    ScheduleFollowUpRequest,
    SignedUrlRead,
    StageTransitionTaskRequest,
    TaskBulkUpdate,
    TaskCreate,
    TaskFilter,
    TaskRead,
    TaskStats,
    TaskUpdate,
    TimelineEntry,
    UpcomingTaskRead,
    UserActivitySummary,
    UserBulkUpdate,
    UserFilter,
    UserProfileCreate,
    UserProfileRead,
    UserProfileUpdate,
    UserRoleRead,
    UserStats,
    WinRatePeriod,
)
from crm_rocket.crm.service import (
    ActivityService,
    ActorUser,
    AnalyticsService,
    CompanyService,
    ContactService,
    DealService,
    DealTimelineService,
    DocumentService,
    TaskService,
    UserService,
    _to_auth_context,
)
from crm_rocket.storage import InvalidSignatureError, ObjectNotFoundError, StorageError, get_bucket

contacts_router = APIRouter(prefix="/api/crm", tags=["crm.contacts"])
companies_router = APIRouter(prefix="/api/crm", tags=["crm.companies"])
deals_router = APIRouter(prefix="/api/crm", tags=["crm.deals"])
analytics_router = APIRouter(prefix="/api/crm/analytics", tags=["crm.analytics"])
activities_router = APIRouter(prefix="/api/crm", tags=["crm.activities"])
timeline_router = APIRouter(prefix="/api/crm", tags=["crm.timeline"])
documents_router = APIRouter(prefix="/api/crm", tags=["crm.documents"])
tasks_router = APIRouter(prefix="/api/crm", tags=["crm.tasks"])
users_router = APIRouter(prefix="/api/crm/users", tags=["crm.users"])
audit_router = APIRouter(prefix="/api/crm", tags=["crm.audit"])
realtime_router = APIRouter(prefix="/api/crm", tags=["crm.realtime"])
storage_router = APIRouter(prefix="/api/storage", tags=["storage"])

task_service = TaskService()
company_service = CompanyService()
contact_service = ContactService(company_service=company_service, task_service=task_service)
deal_service = DealService(task_service=task_service)
analytics_service = AnalyticsService(deal_service=deal_service)
activity_service = ActivityService(deal_service=deal_service)
timeline_service = DealTimelineService(activity_service=activity_service)
document_service = DocumentService(deal_service=deal_service)
user_service = UserService()


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _actor_from(auth_user: AuthUser, correlation_id: str | None) -> ActorUser:
    normalized_roles = [str(role).lower() for role in auth_user.roles]
    return ActorUser(
        user_id=auth_user.sub,
        roles=normalized_roles,
        permissions=permissions_for_roles(normalized_roles),
        is_super_admin="system.admin" in normalized_roles,
        correlation_id=correlation_id,
        email=auth_user.email,
    )


async def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    if auth_user.is_anonymous:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User must be logged in")
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    set_actor_user_id(auth_user.sub)
    return _actor_from(auth_user, correlation_id)


async def get_realtime_user(
    connection: HTTPConnection,
    auth_user: AuthUser = Depends(get_auth_user),
) -> ActorUser | None:
    if auth_user.is_anonymous:
        return None
    return _actor_from(auth_user, connection.headers.get("x-correlation-id"))


def require_permission(user: ActorUser, permission: str) -> None:
    if user.is_super_admin:
        return
    if not has_permission(user.permissions, permission):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


def _date_range(start: datetime | None, end: datetime | None) -> DateRange | None:
    if start is None and end is None:
        return None
    return DateRange(start=start, end=end)


# contacts


@contacts_router.get("/contacts", response_model=list[ContactRead])
def list_contacts(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ContactRead] | JSONResponse:
    try:
        require_permission(user, "crm.contacts.read")
        return contact_service.list_contacts(db, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_contact_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@contacts_router.get("/contacts/search", response_model=list[ContactRead])
def search_contacts(
    request: Request,
    q: str = Query(min_length=1),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ContactRead] | JSONResponse:
    try:
        require_permission(user, "crm.contacts.read")
        return contact_service.search_contacts(db, user, q)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_contact_search_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@contacts_router.get("/contacts/stats", response_model=ContactStats)
def get_contact_stats(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactStats | JSONResponse:
    try:
        require_permission(user, "crm.contacts.read")
        return contact_service.get_contact_stats(db, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_contact_stats_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@contacts_router.post("/contacts/filter", response_model=list[ContactRead])
def filter_contacts(
    request: Request,
    filters: ContactFilter,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ContactRead] | JSONResponse:
    try:
        require_permission(user, "crm.contacts.read")
        return contact_service.filter_contacts(db, user, filters)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_contact_filter_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@contacts_router.post("/contacts/import", response_model=list[ContactRead], status_code=status.HTTP_201_CREATED)
def import_contacts(
    request: Request,
    dto: ContactImportRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ContactRead] | JSONResponse:
    try:
        require_permission(user, "crm.contacts.write")
        return contact_service.import_contacts(db, user, dto.rows)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_contact_import_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@contacts_router.post("/contacts/merge", response_model=ContactRead)
def merge_contacts(
    request: Request,
    dto: ContactMergeRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "crm.contacts.write")
        return contact_service.merge_contacts(db, user, dto.primary_id, dto.duplicate_id, dto.merged_data)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_contact_merge_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@contacts_router.post("/contacts/bulk-delete", response_model=None)
def bulk_delete_contacts(
    request: Request,
    dto: BulkIdsRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "crm.contacts.write")
        return {"deleted": contact_service.bulk_delete_contacts(db, user, dto.ids)}
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_contact_bulk_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@contacts_router.post("/contacts", response_model=ContactRead, status_code=status.HTTP_201_CREATED)
def create_contact(
    request: Request,
    dto: ContactCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "crm.contacts.write")
        return contact_service.create_contact(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_contact_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@contacts_router.get("/contacts/{contact_id}", response_model=ContactRead)
def get_contact(
    request: Request,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "crm.contacts.read")
        return contact_service.get_contact(db, user, contact_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_contact_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@contacts_router.patch("/contacts/{contact_id}", response_model=ContactRead)
def patch_contact(
    request: Request,
    contact_id: uuid.UUID,
    dto: ContactUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "crm.contacts.write")
        return contact_service.update_contact(db, user, contact_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_contact_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@contacts_router.delete("/contacts/{contact_id}", response_model=None)
def delete_contact(
    request: Request,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "crm.contacts.write")
        contact_service.delete_contact(db, user, contact_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_contact_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@contacts_router.get("/contacts/{contact_id}/activities", response_model=list[ActivityRead])
def list_contact_activities(
    request: Request,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ActivityRead] | JSONResponse:
    try:
        require_permission(user, "crm.activities.read")
        return activity_service.list_contact_activities(db, user, contact_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_contact_activities_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@contacts_router.post("/contacts/{contact_id}/follow-up", response_model=TaskRead, status_code=status.HTTP_201_CREATED)
def schedule_contact_follow_up(
    request: Request,
    contact_id: uuid.UUID,
    dto: ScheduleFollowUpRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        require_permission(user, "crm.tasks.write")
        return contact_service.schedule_follow_up(db, user, contact_id, dto.priority)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_contact_follow_up_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


# companies


@companies_router.get("/companies", response_model=list[CompanyRead])
def list_companies(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[CompanyRead] | JSONResponse:
    try:
        require_permission(user, "crm.companies.read")
        return company_service.list_companies(db, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_company_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@companies_router.get("/companies/search", response_model=list[CompanyRead])
def search_companies(
    request: Request,
    q: str = Query(min_length=1),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[CompanyRead] | JSONResponse:
    try:
        require_permission(user, "crm.companies.read")
        return company_service.search_companies(db, user, q)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_company_search_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@companies_router.get("/companies/stats", response_model=CompanyStats)
def get_company_stats(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CompanyStats | JSONResponse:
    try:
        require_permission(user, "crm.companies.read")
        return company_service.get_company_stats(db, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_company_stats_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@companies_router.get("/companies/potential", response_model=list[CompanyRead])
def get_companies_with_potential(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[CompanyRead] | JSONResponse:
    try:
        require_permission(user, "crm.companies.read")
        return company_service.get_companies_with_potential(db, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_company_potential_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@companies_router.get("/companies/by-industry/{industry}", response_model=list[CompanyRead])
def get_companies_by_industry(
    request: Request,
    industry: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[CompanyRead] | JSONResponse:
    try:
        require_permission(user, "crm.companies.read")
        return company_service.get_companies_by_industry(db, user, industry)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_company_by_industry_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@companies_router.post("/companies/filter", response_model=list[CompanyRead])
def filter_companies(
    request: Request,
    filters: CompanyFilter,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[CompanyRead] | JSONResponse:
    try:
        require_permission(user, "crm.companies.read")
        return company_service.filter_companies(db, user, filters)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_company_filter_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@companies_router.post("/companies", response_model=CompanyRead, status_code=status.HTTP_201_CREATED)
def create_company(
    request: Request,
    dto: CompanyCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CompanyRead | JSONResponse:
    try:
        require_permission(user, "crm.companies.write")
        return company_service.create_company(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_company_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@companies_router.get("/companies/{company_id}", response_model=CompanyRead)
def get_company(
    request: Request,
    company_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CompanyRead | JSONResponse:
    try:
        require_permission(user, "crm.companies.read")
        return company_service.get_company(db, user, company_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_company_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@companies_router.patch("/companies/{company_id}", response_model=CompanyRead)
def patch_company(
    request: Request,
    company_id: uuid.UUID,
    dto: CompanyUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CompanyRead | JSONResponse:
    try:
        require_permission(user, "crm.companies.write")
        return company_service.update_company(db, user, company_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_company_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@companies_router.delete("/companies/{company_id}", response_model=None)
def delete_company(
    request: Request,
    company_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "crm.companies.write")
        company_service.delete_company(db, user, company_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_company_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@companies_router.get("/companies/{company_id}/insights", response_model=CompanyInsights)
def get_company_insights(
    request: Request,
    company_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CompanyInsights | JSONResponse:
    try:
        require_permission(user, "crm.companies.read")
        return company_service.get_company_insights(db, user, company_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_company_insights_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@companies_router.get("/companies/{company_id}/health", response_model=RelationshipHealth)
def get_relationship_health(
    request: Request,
    company_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> RelationshipHealth | JSONResponse:
    try:
        require_permission(user, "crm.companies.read")
        return company_service.get_relationship_health(db, user, company_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_company_health_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


# deals


@deals_router.get("/deals", response_model=list[DealRead])
def list_deals(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[DealRead] | JSONResponse:
    try:
        require_permission(user, "crm.deals.read")
        return deal_service.list_deals(db, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.get("/deals/pipeline", response_model=list[PipelineColumn])
def get_pipeline_deals(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PipelineColumn] | JSONResponse:
    try:
        require_permission(user, "crm.deals.read")
        return deal_service.get_pipeline_deals(db, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_pipeline_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.post("/deals", response_model=DealRead, status_code=status.HTTP_201_CREATED)
def create_deal(
    request: Request,
    dto: DealCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.write")
        return deal_service.create_deal(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.get("/deals/{deal_id}", response_model=DealRead)
def get_deal(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.read")
        return deal_service.get_deal(db, user, deal_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.patch("/deals/{deal_id}", response_model=DealRead)
def patch_deal(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.write")
        return deal_service.update_deal(db, user, deal_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.delete("/deals/{deal_id}", response_model=None)
def delete_deal(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "crm.deals.write")
        deal_service.delete_deal(db, user, deal_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.post("/deals/{deal_id}/stage", response_model=DealRead)
def update_deal_stage(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealStageUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.write")
        return deal_service.update_deal_stage(
            db,
            user,
            deal_id,
            dto.stage,
            create_transition_task=dto.create_transition_task,
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_stage_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.get("/deals/{deal_id}/activities", response_model=list[ActivityRead])
def list_deal_activities(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ActivityRead] | JSONResponse:
    try:
        require_permission(user, "crm.activities.read")
        return activity_service.list_deal_activities(db, user, deal_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_activities_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.get("/deals/{deal_id}/tasks", response_model=list[TaskRead])
def list_deal_tasks(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[TaskRead] | JSONResponse:
    try:
        require_permission(user, "crm.tasks.read")
        return task_service.list_deal_tasks(db, user, deal_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_tasks_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


# analytics


@analytics_router.get("/revenue", response_model=list[RevenueMonth])
def get_revenue_data(
    request: Request,
    year: int | None = Query(default=None, ge=1970, le=9999),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[RevenueMonth] | JSONResponse:
    try:
        require_permission(user, "crm.analytics.read")
        return analytics_service.get_revenue_data(db, user, year)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_analytics_revenue_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@analytics_router.get("/performance", response_model=PerformanceMetrics)
def get_performance_metrics(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PerformanceMetrics | JSONResponse:
    try:
        require_permission(user, "crm.analytics.read")
        return analytics_service.get_performance_metrics(db, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_analytics_performance_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@analytics_router.get("/win-rate", response_model=list[WinRatePeriod])
def get_win_rate_data(
    request: Request,
    year: int | None = Query(default=None, ge=1970, le=9999),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[WinRatePeriod] | JSONResponse:
    try:
        require_permission(user, "crm.analytics.read")
        return analytics_service.get_win_rate_data(db, user, year)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_analytics_win_rate_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@analytics_router.get("/pipeline-summary", response_model=PipelineSummary)
def get_pipeline_summary(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineSummary | JSONResponse:
    try:
        require_permission(user, "crm.analytics.read")
        return analytics_service.get_pipeline_summary(db, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_analytics_pipeline_summary_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@analytics_router.get("/pipeline-velocity", response_model=PipelineVelocity)
def get_pipeline_velocity(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineVelocity | JSONResponse:
    try:
        require_permission(user, "crm.analytics.read")
        return analytics_service.get_pipeline_velocity(db, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_analytics_pipeline_velocity_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@analytics_router.get("/business-rules", response_model=BusinessRules)
def get_business_rules(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> BusinessRules | JSONResponse:
    try:
        require_permission(user, "crm.analytics.read")
        return analytics_service.get_business_rules(db, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_analytics_business_rules_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


# activities


@activities_router.get("/activities", response_model=list[ActivityRead])
def list_activities(
    request: Request,
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ActivityRead] | JSONResponse:
    try:
        require_permission(user, "crm.activities.read")
        return activity_service.list_activities(db, user, limit=limit)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_activity_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@activities_router.get("/activities/recent", response_model=list[RecentActivityItem])
def get_recent_activity(
    request: Request,
    limit: int = Query(default=10, ge=1, le=100),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[RecentActivityItem] | JSONResponse:
    try:
        require_permission(user, "crm.activities.read")
        return activity_service.get_recent_activity(db, user, limit=limit)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_activity_recent_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@activities_router.get("/activities/stats", response_model=ActivityStats)
def get_activity_stats(
    request: Request,
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ActivityStats | JSONResponse:
    try:
        require_permission(user, "crm.activities.read")
        return activity_service.get_activity_stats(db, user, _date_range(start, end))
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_activity_stats_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@activities_router.post("/activities/filter", response_model=list[ActivityRead])
def filter_activities(
    request: Request,
    filters: ActivityFilter,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ActivityRead] | JSONResponse:
    try:
        require_permission(user, "crm.activities.read")
        return activity_service.filter_activities(db, user, filters)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_activity_filter_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@activities_router.post("/activities/log/{kind}", response_model=ActivityRead, status_code=status.HTTP_201_CREATED)
def log_activity(
    request: Request,
    kind: Literal["email", "call", "meeting", "note"],
    dto: ActivityLogRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ActivityRead | JSONResponse:
    loggers = {
        "email": activity_service.log_email,
        "call": activity_service.log_call,
        "meeting": activity_service.log_meeting,
        "note": activity_service.log_note,
    }
    try:
        require_permission(user, "crm.activities.write")
        return loggers[kind](db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_activity_log_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@activities_router.post("/activities", response_model=ActivityRead, status_code=status.HTTP_201_CREATED)
def create_activity(
    request: Request,
    dto: ActivityCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ActivityRead | JSONResponse:
    try:
        require_permission(user, "crm.activities.write")
        return activity_service.create_activity(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_activity_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@activities_router.patch("/activities/{activity_id}", response_model=ActivityRead)
def patch_activity(
    request: Request,
    activity_id: uuid.UUID,
    dto: ActivityUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ActivityRead | JSONResponse:
    try:
        require_permission(user, "crm.activities.write")
        return activity_service.update_activity(db, user, activity_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_activity_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@activities_router.delete("/activities/{activity_id}", response_model=None)
def delete_activity(
    request: Request,
    activity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "crm.activities.write")
        activity_service.delete_activity(db, user, activity_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_activity_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


# deal timeline


@timeline_router.get("/timeline", response_model=list[TimelineEntry])
def get_deal_timeline(
    request: Request,
    deal_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[TimelineEntry] | JSONResponse:
    try:
        require_permission(user, "crm.activities.read")
        return timeline_service.get_deal_timeline(db, user, deal_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_timeline_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@timeline_router.post("/deals/{deal_id}/timeline", response_model=TimelineEntry, status_code=status.HTTP_201_CREATED)
def add_deal_activity(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealActivityCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TimelineEntry | JSONResponse:
    try:
        require_permission(user, "crm.activities.write")
        return timeline_service.add_deal_activity(db, user, deal_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_timeline_add_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@timeline_router.delete("/timeline/{activity_id}", response_model=None)
def delete_deal_activity(
    request: Request,
    activity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "crm.activities.write")
        timeline_service.delete_deal_activity(db, user, activity_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_timeline_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


# documents


@documents_router.post("/deals/{deal_id}/documents", response_model=DocumentRead, status_code=status.HTTP_201_CREATED)
async def upload_document(
    request: Request,
    deal_id: uuid.UUID,
    file: UploadFile = File(...),
    document_type: DocumentType = Form(default="other"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DocumentRead | JSONResponse:
    content = await file.read()
    try:
        require_permission(user, "crm.documents.write")
        return document_service.upload_document(
            db,
            user,
            deal_id,
            filename=file.filename,
            content=content,
            content_type=file.content_type,
            document_type=document_type,
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_document_upload_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@documents_router.get("/deals/{deal_id}/documents", response_model=list[DocumentRead])
def list_deal_documents(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[DocumentRead] | JSONResponse:
    try:
        require_permission(user, "crm.documents.read")
        return document_service.list_deal_documents(db, user, deal_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_document_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@documents_router.get("/documents/download-url", response_model=SignedUrlRead)
def get_download_url(
    request: Request,
    file_path: str = Query(min_length=1),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> SignedUrlRead | JSONResponse:
    try:
        require_permission(user, "crm.documents.read")
        return document_service.get_download_url(db, user, file_path)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_document_url_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@documents_router.delete("/documents/{document_id}", response_model=None)
def delete_document(
    request: Request,
    document_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "crm.documents.write")
        document_service.delete_document(db, user, document_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_document_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@storage_router.get("/{bucket}", response_model=None)
def download_object(request: Request, bucket: str, token: str = Query(min_length=1)) -> Response:
    storage = get_bucket(bucket)
    try:
        path = storage.resolve_signed_token(token)
        content = storage.read(path)
    except InvalidSignatureError as exc:
        return error_response(
            request,
            status_code=status.HTTP_403_FORBIDDEN,
            code="storage_signature_invalid",
            message="Invalid or expired signed URL",
            details=str(exc),
        )
    except ObjectNotFoundError as exc:
        return error_response(
            request,
            status_code=status.HTTP_404_NOT_FOUND,
            code="storage_object_not_found",
            message="Object not found",
            details=str(exc),
        )
    except StorageError as exc:
        return error_response(
            request,
            status_code=status.HTTP_400_BAD_REQUEST,
            code="storage_read_failed",
            message=str(exc),
        )
    filename = path.rsplit("/", 1)[-1]
    return Response(
        content=content,
        media_type="application/octet-stream",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# tasks


@tasks_router.get("/tasks", response_model=list[TaskRead])
def list_user_tasks(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[TaskRead] | JSONResponse:
    try:
        require_permission(user, "crm.tasks.read")
        return task_service.list_user_tasks(db, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_task_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@tasks_router.get("/tasks/upcoming", response_model=list[UpcomingTaskRead])
def get_upcoming_tasks(
    request: Request,
    days: int = Query(default=7, ge=0, le=365),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[UpcomingTaskRead] | JSONResponse:
    try:
        require_permission(user, "crm.tasks.read")
        return task_service.get_upcoming_tasks(db, user, days=days)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_task_upcoming_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@tasks_router.get("/tasks/stats", response_model=TaskStats)
def get_task_stats(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskStats | JSONResponse:
    try:
        require_permission(user, "crm.tasks.read")
        return task_service.get_task_stats(db, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_task_stats_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@tasks_router.post("/tasks/filter", response_model=list[TaskRead])
def filter_tasks(
    request: Request,
    filters: TaskFilter,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[TaskRead] | JSONResponse:
    try:
        require_permission(user, "crm.tasks.read")
        return task_service.filter_tasks(db, user, filters)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_task_filter_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@tasks_router.post("/tasks/bulk-update", response_model=list[TaskRead])
def bulk_update_tasks(
    request: Request,
    dto: TaskBulkUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[TaskRead] | JSONResponse:
    try:
        require_permission(user, "crm.tasks.write")
        return task_service.bulk_update_tasks(db, user, dto.ids, dto.updates)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_task_bulk_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@tasks_router.post("/tasks/follow-up", response_model=TaskRead, status_code=status.HTTP_201_CREATED)
def create_follow_up_task(
    request: Request,
    dto: FollowUpTaskRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        require_permission(user, "crm.tasks.write")
        return task_service.create_follow_up_task(db, user, dto.deal_id, dto.contact_id, dto.description)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_task_follow_up_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@tasks_router.post("/tasks/stage-transition", response_model=TaskRead, status_code=status.HTTP_201_CREATED)
def create_stage_transition_task(
    request: Request,
    dto: StageTransitionTaskRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        require_permission(user, "crm.tasks.write")
        return task_service.create_stage_transition_task(db, user, dto.deal_id, dto.from_stage, dto.to_stage)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_task_stage_transition_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@tasks_router.post("/tasks", response_model=TaskRead, status_code=status.HTTP_201_CREATED)
def create_task(
    request: Request,
    dto: TaskCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        require_permission(user, "crm.tasks.write")
        return task_service.create_task(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_task_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@tasks_router.get("/tasks/{task_id}", response_model=TaskRead)
def get_task(
    request: Request,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        require_permission(user, "crm.tasks.read")
        return task_service.get_task(db, user, task_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_task_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@tasks_router.patch("/tasks/{task_id}", response_model=TaskRead)
def patch_task(
    request: Request,
    task_id: uuid.UUID,
    dto: TaskUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        require_permission(user, "crm.tasks.write")
        return task_service.update_task(db, user, task_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_task_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@tasks_router.post("/tasks/{task_id}/complete", response_model=TaskRead)
def complete_task(
    request: Request,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        require_permission(user, "crm.tasks.write")
        return task_service.complete_task(db, user, task_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_task_complete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@tasks_router.delete("/tasks/{task_id}", response_model=None)
def delete_task(
    request: Request,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "crm.tasks.write")
        task_service.delete_task(db, user, task_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_task_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


# user profiles


@users_router.get("", response_model=list[UserProfileRead])
def list_users(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[UserProfileRead] | JSONResponse:
    try:
        return user_service.list_users(db, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_user_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@users_router.post("", response_model=UserProfileRead, status_code=status.HTTP_201_CREATED)
def create_user_profile(
    request: Request,
    dto: UserProfileCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> UserProfileRead | JSONResponse:
    try:
        return user_service.create_user_profile(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_user_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@users_router.get("/me", response_model=UserProfileRead | None)
def get_current_user_profile(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> UserProfileRead | None | JSONResponse:
    try:
        return user_service.get_current_user_profile(db, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_user_me_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@users_router.get("/roles", response_model=list[UserRoleRead])
def get_user_roles(user: ActorUser = Depends(get_current_user)) -> list[UserRoleRead]:
    return user_service.get_user_roles()


@users_router.get("/stats", response_model=UserStats)
def get_user_stats(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> UserStats | JSONResponse:
    try:
        return user_service.get_user_stats(db, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_user_stats_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@users_router.get("/search", response_model=list[UserProfileRead])
def search_users(
    request: Request,
    q: str = Query(min_length=1),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[UserProfileRead] | JSONResponse:
    try:
        return user_service.search_users(db, user, q)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_user_search_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@users_router.post("/filter", response_model=list[UserProfileRead])
def filter_users(
    request: Request,
    filters: UserFilter,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[UserProfileRead] | JSONResponse:
    try:
        return user_service.filter_users(db, user, filters)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_user_filter_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@users_router.post("/invite", response_model=UserProfileRead, status_code=status.HTTP_201_CREATED)
def invite_user(
    request: Request,
    dto: InviteUserRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> UserProfileRead | JSONResponse:
    try:
        return user_service.invite_user(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_user_invite_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@users_router.post("/bulk-update", response_model=list[UserProfileRead])
def bulk_update_users(
    request: Request,
    dto: UserBulkUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[UserProfileRead] | JSONResponse:
    try:
        return user_service.bulk_update_users(db, user, dto.ids, dto.updates)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_user_bulk_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@users_router.patch("/{user_id}", response_model=UserProfileRead)
def update_user_profile(
    request: Request,
    user_id: uuid.UUID,
    dto: UserProfileUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> UserProfileRead | JSONResponse:
    try:
        return user_service.update_user_profile(db, user, user_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_user_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@users_router.post("/{user_id}/deactivate", response_model=UserProfileRead)
def deactivate_user(
    request: Request,
    user_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> UserProfileRead | JSONResponse:
    try:
        return user_service.deactivate_user(db, user, user_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_user_deactivate_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@users_router.post("/{user_id}/activate", response_model=UserProfileRead)
def activate_user(
    request: Request,
    user_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> UserProfileRead | JSONResponse:
    try:
        return user_service.activate_user(db, user, user_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_user_activate_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@users_router.delete("/{user_id}", response_model=UserProfileRead)
def delete_user(
    request: Request,
    user_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> UserProfileRead | JSONResponse:
    try:
        return user_service.delete_user(db, user, user_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_user_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@users_router.get("/{user_id}/activity-summary", response_model=UserActivitySummary)
def get_user_activity_summary(
    request: Request,
    user_id: uuid.UUID,
    days: int = Query(default=30, ge=1, le=365),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> UserActivitySummary | JSONResponse:
    try:
        return user_service.get_user_activity_summary(db, user, user_id, days=days)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_user_activity_summary_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


# audit


@audit_router.get("/audit", response_model=list[AuditRead])
def list_audit(
    request: Request,
    entity_type: str = Query(min_length=1),
    entity_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    user: ActorUser = Depends(get_current_user),
) -> list[AuditRead] | JSONResponse:
    try:
        if not user.is_manager:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only admins and managers can read audit")
        return [AuditRead.model_validate(entry) for entry in audit.entries_for(entity_type, entity_id, limit=limit)]
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_audit_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


# realtime


@realtime_router.websocket("/realtime/{table}")
async def realtime_changes(
    websocket: WebSocket,
    table: str,
    filter: str | None = Query(default=None),
    user: ActorUser | None = Depends(get_realtime_user),
) -> None:
    if user is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
    try:
        channel = realtime.subscribe(
            table,
            lambda payload: loop.call_soon_threadsafe(queue.put_nowait, payload),
            filter=filter,
            ctx=_to_auth_context(user),
        )
    except realtime.RealtimeError:
        await websocket.close(code=status.WS_1003_UNSUPPORTED_DATA)
        return

    await websocket.accept()

    async def forward() -> None:
        while True:
            payload = await queue.get()
            await websocket.send_json(payload)

    sender = asyncio.create_task(forward())
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
    except WebSocketDisconnect:
        pass
    finally:
        sender.cancel()
        realtime.unsubscribe(channel)
