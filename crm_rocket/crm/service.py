from __future__ import annotations

import logging
import re
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import HTTPException, status
from pydantic import BaseModel
from sqlalchemy import Select, delete, event, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from crm_rocket import audit, events
from crm_rocket.core.config import get_settings
from crm_rocket.core.rbac import ROLE_LABELS
from crm_rocket.crm import analytics
from crm_rocket.crm.models import (
    CRMActivity,
    CRMCompany,
    CRMContact,
    CRMDeal,
    CRMDocument,
    CRMTask,
    CRMUserProfile,
)
from crm_rocket.crm.pipeline import (
    CLOSED_STAGES,
    DealStage,
    follow_up_task,
    group_pipeline,
    is_known_stage,
    probability_for_stage,
    stage_transition_task,
    validate_deal_fields,
)
from crm_rocket.crm.repositories import (
    activity_repository,
    company_repository,
    contact_repository,
    deal_repository,
    document_repository,
    task_repository,
)
from crm_rocket.crm.schemas import (
    ActivityCreate,
    ActivityFilter,
    ActivityLogRequest,
    ActivityRead,
    ActivityStats,
    ActivityUpdate,
    BusinessRules,
    CompanyCreate,
    CompanyFilter,
    CompanyInsights,
    CompanyInsightsSummary,
    CompanyRead,
    CompanyStats,
    CompanyUpdate,
    ContactCreate,
    ContactFilter,
    ContactRead,
    ContactStats,
    ContactUpdate,
    DateRange,
    DealActivityCreate,
    DealCreate,
    DealRead,
    DealUpdate,
    DocumentRead,
    InviteUserRequest,
    PerformanceMetrics,
    PipelineColumn,
    PipelineSummary,
    PipelineVelocity,
    RecentActivityItem,
    RelationshipHealth,
    RevenueMonth,
    SignedUrlRead,
    TaskCreate,
    TaskFilter,
    TaskRead,
    TaskStats,
    TaskUpdate,
    TimelineEntry,
    UpcomingTaskRead,
    UserActivitySummary,
    UserFilter,
    UserProfileCreate,
    UserProfileRead,
    UserProfileUpdate,
    UserRoleRead,
    UserStats,
    WinRatePeriod,
)
from crm_rocket.metrics import observe_crm_mutation
from crm_rocket.platform.security.context import BYPASS_ROLES, AuthContext, coerce_user_uuid
from crm_rocket.platform.security.errors import AuthorizationError
from crm_rocket.storage import DocumentStorage, ObjectExistsError, StorageError, get_bucket, safe_object_name


logger = logging.getLogger("app.crm.service")

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

ACTIVITY_ICONS = {
    "email": "Mail",
    "call": "Phone",
    "meeting": "Calendar",
    "note": "FileText",
    "task": "CheckSquare",
    "demo": "Play",
    "proposal_sent": "Send",
    "document_shared": "Share",
}
DEFAULT_ACTIVITY_ICON = "Activity"

FILE_ICONS = {
    "pdf": "FileText",
    "doc": "FileText",
    "docx": "FileText",
    "txt": "FileText",
    "xls": "FileSpreadsheet",
    "xlsx": "FileSpreadsheet",
    "ppt": "Presentation",
    "pptx": "Presentation",
    "jpg": "Image",
    "jpeg": "Image",
    "png": "Image",
    "gif": "Image",
    "zip": "Archive",
    "rar": "Archive",
}
SIZE_UNITS = ("B", "KB", "MB", "GB")

DEFAULT_FOLLOW_UP_DESCRIPTION = "Check in with prospect about deal progress"
UNKNOWN_USER = "Unknown User"
PENDING_CHANGES_KEY = "crm_pending_changes"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ActorUser:
    user_id: str
    roles: list[str] = field(default_factory=list)
    permissions: set[str] = field(default_factory=set)
    is_super_admin: bool = False
    correlation_id: str | None = None
    email: str | None = None

    @property
    def owner_key(self) -> uuid.UUID:
        return coerce_user_uuid(self.user_id)

    @property
    def role(self) -> str:
        for role in self.roles:
            if role.lower() in ROLE_LABELS:
                return role.lower()
        return "user"

    @property
    def is_admin(self) -> bool:
        return self.is_super_admin or self.role == "admin"

    @property
    def is_manager(self) -> bool:
        return self.is_super_admin or any(role.lower() in BYPASS_ROLES for role in self.roles)


def _to_auth_context(actor_user: ActorUser) -> AuthContext:
    return AuthContext(
        user_id=actor_user.user_id,
        correlation_id=actor_user.correlation_id,
        is_super_admin=actor_user.is_super_admin,
        roles=list(actor_user.roles),
        permissions=sorted(actor_user.permissions),
    )


def _dump(model: BaseModel | None) -> dict[str, Any] | None:
    return model.model_dump(mode="json") if model is not None else None


@dataclass
class _RowChange:
    actor_user: ActorUser
    entity: str
    table: str
    action: str
    entity_id: uuid.UUID
    before: dict[str, Any] | None
    after: dict[str, Any] | None


def _record_change(
    session: Session,
    actor_user: ActorUser,
    *,
    entity: str,
    table: str,
    action: str,
    entity_id: uuid.UUID,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
) -> None:
    """Queue a row change; audit, events and metrics go out once the session commits."""
    session.info.setdefault(PENDING_CHANGES_KEY, []).append(
        _RowChange(actor_user, entity, table, action, entity_id, before, after)
    )


def _emit_change(change: _RowChange) -> None:
    actor_user = change.actor_user
    audit.record(
        actor_user_id=actor_user.user_id,
        entity_type=f"crm.{change.entity}",
        entity_id=str(change.entity_id),
        action=change.action,
        before=change.before,
        after=change.after,
        correlation_id=actor_user.correlation_id,
    )
    events.publish_row_change(
        entity=change.entity,
        table=change.table,
        action=change.action,
        actor_user_id=actor_user.user_id,
        record=change.after,
        old_record=change.before,
        correlation_id=actor_user.correlation_id,
    )
    observe_crm_mutation(entity=change.entity, action=change.action)
    logger.info(
        "crm.mutation",
        extra={
            "entity_type": f"crm.{change.entity}",
            "entity_id": str(change.entity_id),
            "status": change.action,
        },
    )


@event.listens_for(Session, "after_commit")
def _emit_committed_changes(session: Session) -> None:
    for change in session.info.pop(PENDING_CHANGES_KEY, []):
        _emit_change(change)


@event.listens_for(Session, "after_transaction_end")
def _discard_uncommitted_changes(session: Session, transaction: Any) -> None:
    # rollbacks and closes without a commit
    if transaction.parent is None:
        session.info.pop(PENDING_CHANGES_KEY, None)


def _forbidden(exc: AuthorizationError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))


def _apply_changes(row: Any, changes: dict[str, Any]) -> None:
    for field_name, value in changes.items():
        setattr(row, field_name, value)


def _within(stmt: Select[Any], column: Any, date_range: DateRange | None) -> Select[Any]:
    if date_range is None:
        return stmt
    if date_range.start is not None:
        stmt = stmt.where(column >= date_range.start)
    if date_range.end is not None:
        stmt = stmt.where(column <= date_range.end)
    return stmt


def _person_name(person: Any) -> str | None:
    if person is None:
        return None
    return f"{person.first_name or ''} {person.last_name or ''}".strip() or None


def validate_contact_fields(first_name: str | None, last_name: str | None, email: str | None) -> list[str]:
    errors: list[str] = []
    if not first_name or not first_name.strip():
        errors.append("First name is required")
    if not last_name or not last_name.strip():
        errors.append("Last name is required")
    if email and not EMAIL_RE.match(email):
        errors.append("Invalid email format")
    return errors


def _unprocessable(errors: list[str]) -> HTTPException:
    return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="; ".join(errors))


def format_file_size(size: int) -> str:
    if not size:
        return "0 B"
    index = 0
    value = float(size)
    while value >= 1024 and index < len(SIZE_UNITS) - 1:
        value /= 1024
        index += 1
    text = f"{round(value, 1):.1f}".removesuffix(".0")
    return f"{text} {SIZE_UNITS[index]}"


def get_file_extension(filename: str | None) -> str:
    if not filename or "." not in filename:
        return "unknown"
    return filename.rsplit(".", 1)[1].lower() or "unknown"


def get_file_icon(filename: str | None) -> str:
    return FILE_ICONS.get(get_file_extension(filename), "File")


class CompanyService:
    entity = "company"
    table = "companies"

    def list_companies(self, session: Session, actor_user: ActorUser) -> list[CompanyRead]:
        stmt = company_repository.apply_scope_query(select(CRMCompany), _to_auth_context(actor_user))
        companies = session.scalars(stmt.order_by(CRMCompany.name.asc())).all()
        return self._to_reads(session, actor_user, list(companies))

    def get_company(self, session: Session, actor_user: ActorUser, company_id: uuid.UUID) -> CompanyRead:
        return self._to_reads(session, actor_user, [self._load(session, company_id)])[0]

    def create_company(self, session: Session, actor_user: ActorUser, dto: CompanyCreate) -> CompanyRead:
        company = self._insert(session, actor_user, dto.model_dump())
        session.commit()
        return self.get_company(session, actor_user, company.id)

    def update_company(
        self,
        session: Session,
        actor_user: ActorUser,
        company_id: uuid.UUID,
        dto: CompanyUpdate,
    ) -> CompanyRead:
        company = self._load(session, company_id)
        before = _dump(self._to_reads(session, actor_user, [company])[0])
        _apply_changes(company, dto.model_dump(exclude_unset=True))
        company.updated_at = utcnow()
        session.flush()
        read_model = self._to_reads(session, actor_user, [company])[0]
        _record_change(
            session,
            actor_user,
            entity=self.entity,
            table=self.table,
            action="update",
            entity_id=company.id,
            before=before,
            after=_dump(read_model),
        )
        session.commit()
        return read_model

    def delete_company(self, session: Session, actor_user: ActorUser, company_id: uuid.UUID) -> None:
        company = self._load(session, company_id)
        before = _dump(self._to_reads(session, actor_user, [company])[0])
        session.execute(update(CRMContact).where(CRMContact.company_id == company.id).values(company_id=None))
        session.execute(update(CRMDeal).where(CRMDeal.company_id == company.id).values(company_id=None))
        session.delete(company)
        _record_change(
            session,
            actor_user,
            entity=self.entity,
            table=self.table,
            action="delete",
            entity_id=company_id,
            before=before,
            after=None,
        )
        session.commit()

    def search_companies(self, session: Session, actor_user: ActorUser, term: str) -> list[CompanyRead]:
        pattern = f"%{term.strip()}%"
        stmt = (
            select(CRMCompany)
            .where(
                or_(
                    CRMCompany.name.ilike(pattern),
                    CRMCompany.domain.ilike(pattern),
                    CRMCompany.industry.ilike(pattern),
                )
            )
            .order_by(CRMCompany.name.asc())
        )
        return self._to_reads(session, actor_user, list(session.scalars(stmt).all()))

    def get_companies_by_industry(self, session: Session, actor_user: ActorUser, industry: str) -> list[CompanyRead]:
        stmt = select(CRMCompany).where(CRMCompany.industry == industry).order_by(CRMCompany.name.asc())
        return self._to_reads(session, actor_user, list(session.scalars(stmt).all()))

    def get_company_stats(self, session: Session, actor_user: ActorUser) -> CompanyStats:
        companies = session.scalars(select(CRMCompany)).all()
        return CompanyStats(**analytics.company_stats(companies, utcnow()))

    def get_companies_with_potential(self, session: Session, actor_user: ActorUser) -> list[CompanyRead]:
        won_company_ids = select(CRMDeal.company_id).where(
            CRMDeal.stage == DealStage.CLOSED_WON.value,
            CRMDeal.company_id.is_not(None),
        )
        companies = session.scalars(select(CRMCompany).where(CRMCompany.id.not_in(won_company_ids))).all()
        reads = [read for read in self._to_reads(session, actor_user, list(companies)) if read.contact_count > 0]
        return sorted(reads, key=lambda read: read.contact_count, reverse=True)

    def filter_companies(self, session: Session, actor_user: ActorUser, filters: CompanyFilter) -> list[CompanyRead]:
        stmt = select(CRMCompany)
        if filters.industries:
            stmt = stmt.where(CRMCompany.industry.in_(filters.industries))
        if filters.sizes:
            stmt = stmt.where(CRMCompany.size.in_(filters.sizes))
        if filters.locations:
            stmt = stmt.where(or_(*[CRMCompany.city.ilike(f"%{location}%") for location in filters.locations]))
        stmt = stmt.order_by(CRMCompany.name.asc())

        reads = self._to_reads(session, actor_user, list(session.scalars(stmt).all()))
        if filters.has_contacts is not None:
            reads = [read for read in reads if (read.contact_count > 0) == filters.has_contacts]
        if filters.has_deals is not None:
            reads = [read for read in reads if (read.deal_count > 0) == filters.has_deals]
        return reads

    def get_company_insights(self, session: Session, actor_user: ActorUser, company_id: uuid.UUID) -> CompanyInsights:
        company = self._load(session, company_id)
        contacts, deals, activities = self._related_rows(session, actor_user, company.id)
        activities = sorted(activities, key=lambda activity: activity.created_at, reverse=True)
        return CompanyInsights(
            company=self._to_reads(session, actor_user, [company])[0],
            summary=CompanyInsightsSummary(**analytics.company_summary(contacts, deals, activities)),
            recent_activity=[ActivityRead.model_validate(activity) for activity in activities[:10]],
            deals_by_stage=dict(Counter(deal.stage or "unknown" for deal in deals)),
            contacts_by_status=dict(Counter(contact.status or "unknown" for contact in contacts)),
            relationship_health=RelationshipHealth(
                **analytics.relationship_health(activities, contacts, deals, utcnow())
            ),
        )

    def get_relationship_health(
        self,
        session: Session,
        actor_user: ActorUser,
        company_id: uuid.UUID,
    ) -> RelationshipHealth:
        company = self._load(session, company_id)
        contacts, deals, activities = self._related_rows(session, actor_user, company.id)
        return RelationshipHealth(**analytics.relationship_health(activities, contacts, deals, utcnow()))

    def _insert(self, session: Session, actor_user: ActorUser, values: dict[str, Any]) -> CRMCompany:
        company = CRMCompany(**values)
        session.add(company)
        session.flush()
        session.refresh(company)
        _record_change(
            session,
            actor_user,
            entity=self.entity,
            table=self.table,
            action="create",
            entity_id=company.id,
            before=None,
            after=_dump(self._to_reads(session, actor_user, [company])[0]),
        )
        return company

    def _load(self, session: Session, company_id: uuid.UUID) -> CRMCompany:
        company = session.get(CRMCompany, company_id)
        if company is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Company not found")
        return company

    def _related_rows(
        self,
        session: Session,
        actor_user: ActorUser,
        company_id: uuid.UUID,
    ) -> tuple[list[CRMContact], list[CRMDeal], list[CRMActivity]]:
        auth_ctx = _to_auth_context(actor_user)
        contacts = session.scalars(
            contact_repository.apply_scope_query(select(CRMContact).where(CRMContact.company_id == company_id), auth_ctx)
        ).all()
        deals = session.scalars(
            deal_repository.apply_scope_query(select(CRMDeal).where(CRMDeal.company_id == company_id), auth_ctx)
        ).all()
        company_contacts = select(CRMContact.id).where(CRMContact.company_id == company_id)
        company_deals = select(CRMDeal.id).where(CRMDeal.company_id == company_id)
        activity_stmt = (
            select(CRMActivity)
            .where(or_(CRMActivity.contact_id.in_(company_contacts), CRMActivity.deal_id.in_(company_deals)))
            .options(selectinload(CRMActivity.contact), selectinload(CRMActivity.deal), selectinload(CRMActivity.user))
        )
        activities = session.scalars(activity_repository.apply_scope_query(activity_stmt, auth_ctx)).all()
        return list(contacts), list(deals), list(activities)

    def _counts(self, session: Session, actor_user: ActorUser, model: Any) -> dict[uuid.UUID, int]:
        repository = contact_repository if model is CRMContact else deal_repository
        stmt = select(model.company_id, func.count(model.id)).where(model.company_id.is_not(None))
        stmt = repository.apply_scope_query(stmt, _to_auth_context(actor_user)).group_by(model.company_id)
        return {company_id: count for company_id, count in session.execute(stmt).all()}

    def _to_reads(self, session: Session, actor_user: ActorUser, companies: list[CRMCompany]) -> list[CompanyRead]:
        if not companies:
            return []
        contact_counts = self._counts(session, actor_user, CRMContact)
        deal_counts = self._counts(session, actor_user, CRMDeal)
        return [
            CompanyRead.model_validate(company).model_copy(
                update={
                    "contact_count": contact_counts.get(company.id, 0),
                    "deal_count": deal_counts.get(company.id, 0),
                }
            )
            for company in companies
        ]


class ContactService:
    entity = "contact"
    table = "contacts"

    def __init__(self, company_service: CompanyService | None = None, task_service: TaskService | None = None) -> None:
        self.company_service = company_service or CompanyService()
        self.task_service = task_service or TaskService()

    def list_contacts(self, session: Session, actor_user: ActorUser) -> list[ContactRead]:
        stmt = self._scoped(actor_user, select(CRMContact)).order_by(CRMContact.updated_at.desc())
        return [ContactRead.model_validate(contact) for contact in session.scalars(stmt).all()]

    def get_contact(self, session: Session, actor_user: ActorUser, contact_id: uuid.UUID) -> ContactRead:
        return ContactRead.model_validate(self._get_visible(session, actor_user, contact_id))

    def create_contact(self, session: Session, actor_user: ActorUser, dto: ContactCreate) -> ContactRead:
        contact = self._insert(session, actor_user, dto)
        session.commit()
        return self.get_contact(session, actor_user, contact.id)

    def update_contact(
        self,
        session: Session,
        actor_user: ActorUser,
        contact_id: uuid.UUID,
        dto: ContactUpdate,
    ) -> ContactRead:
        contact = self._get_visible(session, actor_user, contact_id)
        before = _dump(ContactRead.model_validate(contact))
        changes = dto.model_dump(exclude_unset=True)
        self._validate_changes(contact, changes)
        try:
            contact_repository.validate_write_security(
                changes,
                _to_auth_context(actor_user),
                existing={"owner_id": contact.owner_id},
                action="update",
            )
        except AuthorizationError as exc:
            raise _forbidden(exc)

        _apply_changes(contact, changes)
        contact.updated_at = utcnow()
        session.flush()
        session.refresh(contact)
        read_model = ContactRead.model_validate(contact)
        _record_change(
            session,
            actor_user,
            entity=self.entity,
            table=self.table,
            action="update",
            entity_id=contact.id,
            before=before,
            after=_dump(read_model),
        )
        session.commit()
        return read_model

    def delete_contact(self, session: Session, actor_user: ActorUser, contact_id: uuid.UUID) -> None:
        contact = self._get_visible(session, actor_user, contact_id)
        self._delete_rows(session, actor_user, [contact])
        session.commit()

    def bulk_delete_contacts(self, session: Session, actor_user: ActorUser, contact_ids: list[uuid.UUID]) -> int:
        stmt = self._scoped(actor_user, select(CRMContact).where(CRMContact.id.in_(contact_ids)))
        contacts = list(session.scalars(stmt).all())
        self._delete_rows(session, actor_user, contacts)
        session.commit()
        return len(contacts)

    def search_contacts(self, session: Session, actor_user: ActorUser, term: str) -> list[ContactRead]:
        pattern = f"%{term.strip()}%"
        stmt = select(CRMContact).where(
            or_(
                CRMContact.first_name.ilike(pattern),
                CRMContact.last_name.ilike(pattern),
                CRMContact.email.ilike(pattern),
            )
        )
        stmt = self._scoped(actor_user, stmt).order_by(CRMContact.updated_at.desc())
        return [ContactRead.model_validate(contact) for contact in session.scalars(stmt).all()]

    def filter_contacts(self, session: Session, actor_user: ActorUser, filters: ContactFilter) -> list[ContactRead]:
        stmt = select(CRMContact)
        if filters.statuses:
            stmt = stmt.where(CRMContact.status.in_(filters.statuses))
        if filters.company_ids:
            stmt = stmt.where(CRMContact.company_id.in_(filters.company_ids))
        if filters.lead_sources:
            stmt = stmt.where(CRMContact.lead_source.in_(filters.lead_sources))
        stmt = _within(stmt, CRMContact.last_contact_date, filters.last_contact)
        stmt = self._scoped(actor_user, stmt).order_by(CRMContact.updated_at.desc())

        contacts = session.scalars(stmt).all()
        if filters.tags:
            wanted = set(filters.tags)
            contacts = [contact for contact in contacts if wanted.intersection(contact.tags or [])]
        return [ContactRead.model_validate(contact) for contact in contacts]

    def get_contact_stats(self, session: Session, actor_user: ActorUser) -> ContactStats:
        contacts = session.scalars(self._scoped(actor_user, select(CRMContact))).all()
        return ContactStats(**analytics.contact_stats(contacts))

    def import_contacts(self, session: Session, actor_user: ActorUser, rows: list[ContactCreate]) -> list[ContactRead]:
        try:
            contacts = [self._insert(session, actor_user, row) for row in rows]
        except HTTPException:
            session.rollback()
            raise
        session.commit()
        logger.info("crm.contacts.imported", extra={"entity_type": "crm.contact", "status": str(len(contacts))})
        return [self.get_contact(session, actor_user, contact.id) for contact in contacts]

    def merge_contacts(
        self,
        session: Session,
        actor_user: ActorUser,
        primary_id: uuid.UUID,
        duplicate_id: uuid.UUID,
        merged_data: ContactUpdate,
    ) -> ContactRead:
        if primary_id == duplicate_id:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="Cannot merge a contact into itself",
            )
        primary = self._get_visible(session, actor_user, primary_id)
        duplicate = self._get_visible(session, actor_user, duplicate_id)
        before = _dump(ContactRead.model_validate(primary))
        changes = merged_data.model_dump(exclude_unset=True)
        self._validate_changes(primary, changes)
        try:
            contact_repository.validate_write_security(
                changes,
                _to_auth_context(actor_user),
                existing={"owner_id": primary.owner_id},
                action="update",
            )
        except AuthorizationError as exc:
            raise _forbidden(exc)

        try:
            for model in (CRMActivity, CRMDeal, CRMTask):
                session.execute(
                    update(model).where(model.contact_id == duplicate.id).values(contact_id=primary.id)
                )
            _apply_changes(primary, changes)
            primary.updated_at = utcnow()
            self._delete_rows(session, actor_user, [duplicate])
            session.flush()
            session.refresh(primary)
            read_model = ContactRead.model_validate(primary)
            _record_change(
                session,
                actor_user,
                entity=self.entity,
                table=self.table,
                action="update",
                entity_id=primary.id,
                before=before,
                after=_dump(read_model),
            )
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Contact merge failed")
        return read_model

    def schedule_follow_up(
        self,
        session: Session,
        actor_user: ActorUser,
        contact_id: uuid.UUID,
        priority: str,
    ) -> TaskRead:
        contact = self._get_visible(session, actor_user, contact_id)
        due_date = analytics.next_follow_up_date(contact.last_contact_date or utcnow(), priority)
        return self.task_service.create_task(
            session,
            actor_user,
            TaskCreate(
                title=f"Follow up with {contact.first_name} {contact.last_name}",
                priority=priority,
                due_date=due_date,
                contact_id=contact.id,
            ),
        )

    def _insert(self, session: Session, actor_user: ActorUser, dto: ContactCreate) -> CRMContact:
        errors = validate_contact_fields(dto.first_name, dto.last_name, dto.email)
        if errors:
            raise _unprocessable(errors)

        owner_id = dto.owner_id or actor_user.owner_key
        try:
            contact_repository.validate_write_security({"owner_id": owner_id}, _to_auth_context(actor_user), action="create")
        except AuthorizationError as exc:
            raise _forbidden(exc)

        company_id = dto.company_id
        if company_id is None and dto.company_name:
            company = self.company_service._insert(
                session,
                actor_user,
                {"name": dto.company_name.strip(), "industry": dto.industry},
            )
            company_id = company.id

        contact = CRMContact(
            **dto.model_dump(exclude={"company_id", "company_name", "industry", "owner_id", "first_name", "last_name"}),
            first_name=dto.first_name.strip(),
            last_name=dto.last_name.strip(),
            company_id=company_id,
            owner_id=owner_id,
            last_contact_date=utcnow(),
        )
        session.add(contact)
        session.flush()
        session.refresh(contact)
        _record_change(
            session,
            actor_user,
            entity=self.entity,
            table=self.table,
            action="create",
            entity_id=contact.id,
            before=None,
            after=_dump(ContactRead.model_validate(contact)),
        )
        return contact

    def _delete_rows(self, session: Session, actor_user: ActorUser, contacts: list[CRMContact]) -> None:
        for contact in contacts:
            before = _dump(ContactRead.model_validate(contact))
            for model in (CRMActivity, CRMDeal, CRMTask):
                session.execute(update(model).where(model.contact_id == contact.id).values(contact_id=None))
            session.delete(contact)
            _record_change(
                session,
                actor_user,
                entity=self.entity,
                table=self.table,
                action="delete",
                entity_id=contact.id,
                before=before,
                after=None,
            )

    def _validate_changes(self, contact: CRMContact, changes: dict[str, Any]) -> None:
        errors = validate_contact_fields(
            changes.get("first_name", contact.first_name),
            changes.get("last_name", contact.last_name),
            changes.get("email", contact.email),
        )
        if errors:
            raise _unprocessable(errors)

    def _scoped(self, actor_user: ActorUser, stmt: Select[Any]) -> Select[Any]:
        stmt = stmt.options(selectinload(CRMContact.company), selectinload(CRMContact.owner))
        return contact_repository.apply_scope_query(stmt, _to_auth_context(actor_user))

    def _get_visible(self, session: Session, actor_user: ActorUser, contact_id: uuid.UUID) -> CRMContact:
        contact = session.scalar(self._scoped(actor_user, select(CRMContact).where(CRMContact.id == contact_id)))
        if contact is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Contact not found")
        return contact


class TaskService:
    entity = "task"
    table = "tasks"

    def list_user_tasks(self, session: Session, actor_user: ActorUser) -> list[TaskRead]:
        stmt = self._mine(actor_user, select(CRMTask))
        stmt = stmt.order_by(CRMTask.due_date.is_(None), CRMTask.due_date.asc())
        return [TaskRead.model_validate(task) for task in session.scalars(self._scoped(actor_user, stmt)).all()]

    def get_upcoming_tasks(self, session: Session, actor_user: ActorUser, days: int = 7) -> list[UpcomingTaskRead]:
        now = utcnow()
        stmt = (
            select(CRMTask)
            .where(
                CRMTask.assigned_to == actor_user.owner_key,
                CRMTask.status != "completed",
                CRMTask.due_date.is_not(None),
                CRMTask.due_date <= now + timedelta(days=days),
            )
            .order_by(CRMTask.due_date.asc())
        )
        return [
            UpcomingTaskRead.model_validate(
                {
                    **TaskRead.model_validate(task).model_dump(),
                    "is_overdue": analytics.is_overdue(task, now),
                    "days_until_due": analytics.days_until_due(task, now),
                }
            )
            for task in session.scalars(self._scoped(actor_user, stmt)).all()
        ]

    def list_deal_tasks(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> list[TaskRead]:
        stmt = select(CRMTask).where(CRMTask.deal_id == deal_id)
        stmt = stmt.order_by(CRMTask.due_date.is_(None), CRMTask.due_date.asc())
        return [TaskRead.model_validate(task) for task in session.scalars(self._scoped(actor_user, stmt)).all()]

    def get_task(self, session: Session, actor_user: ActorUser, task_id: uuid.UUID) -> TaskRead:
        return TaskRead.model_validate(self._get_visible(session, actor_user, task_id))

    def create_task(self, session: Session, actor_user: ActorUser, dto: TaskCreate) -> TaskRead:
        values = dto.model_dump()
        values["assigned_to"] = dto.assigned_to or actor_user.owner_key
        values["created_by"] = actor_user.owner_key
        if dto.status == "completed":
            values["completed_at"] = utcnow()
        try:
            task_repository.validate_write_security(values, _to_auth_context(actor_user), action="create")
        except AuthorizationError as exc:
            raise _forbidden(exc)

        task = CRMTask(**values)
        session.add(task)
        session.flush()
        session.refresh(task)
        read_model = TaskRead.model_validate(task)
        _record_change(
            session,
            actor_user,
            entity=self.entity,
            table=self.table,
            action="create",
            entity_id=task.id,
            before=None,
            after=_dump(read_model),
        )
        session.commit()
        return self.get_task(session, actor_user, task.id)

    def update_task(self, session: Session, actor_user: ActorUser, task_id: uuid.UUID, dto: TaskUpdate) -> TaskRead:
        task = self._get_visible(session, actor_user, task_id)
        read_model = self._update_row(session, actor_user, task, dto.model_dump(exclude_unset=True))
        session.commit()
        return read_model

    def complete_task(self, session: Session, actor_user: ActorUser, task_id: uuid.UUID) -> TaskRead:
        return self.update_task(session, actor_user, task_id, TaskUpdate(status="completed"))

    def delete_task(self, session: Session, actor_user: ActorUser, task_id: uuid.UUID) -> None:
        task = self._get_visible(session, actor_user, task_id)
        before = _dump(TaskRead.model_validate(task))
        session.delete(task)
        _record_change(
            session,
            actor_user,
            entity=self.entity,
            table=self.table,
            action="delete",
            entity_id=task_id,
            before=before,
            after=None,
        )
        session.commit()

    def get_task_stats(self, session: Session, actor_user: ActorUser) -> TaskStats:
        tasks = session.scalars(select(CRMTask).where(CRMTask.assigned_to == actor_user.owner_key)).all()
        return TaskStats(**analytics.task_stats(tasks, utcnow()))

    def filter_tasks(self, session: Session, actor_user: ActorUser, filters: TaskFilter) -> list[TaskRead]:
        stmt = self._mine(actor_user, select(CRMTask))
        if filters.statuses:
            stmt = stmt.where(CRMTask.status.in_(filters.statuses))
        if filters.priorities:
            stmt = stmt.where(CRMTask.priority.in_(filters.priorities))
        if filters.deal_ids:
            stmt = stmt.where(CRMTask.deal_id.in_(filters.deal_ids))
        if filters.assignees:
            stmt = stmt.where(CRMTask.assigned_to.in_(filters.assignees))
        stmt = _within(stmt, CRMTask.due_date, filters.due)
        if filters.overdue:
            stmt = stmt.where(CRMTask.due_date < utcnow(), CRMTask.status != "completed")
        stmt = stmt.order_by(CRMTask.due_date.is_(None), CRMTask.due_date.asc())
        return [TaskRead.model_validate(task) for task in session.scalars(self._scoped(actor_user, stmt)).all()]

    def bulk_update_tasks(
        self,
        session: Session,
        actor_user: ActorUser,
        task_ids: list[uuid.UUID],
        updates: TaskUpdate,
    ) -> list[TaskRead]:
        tasks = session.scalars(self._scoped(actor_user, select(CRMTask).where(CRMTask.id.in_(task_ids)))).all()
        changes = updates.model_dump(exclude_unset=True)
        reads = [self._update_row(session, actor_user, task, changes) for task in tasks]
        session.commit()
        return reads

    def create_follow_up_task(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: uuid.UUID,
        contact_id: uuid.UUID | None,
        description: str | None = None,
    ) -> TaskRead:
        template = follow_up_task(description or DEFAULT_FOLLOW_UP_DESCRIPTION, utcnow())
        return self.create_task(session, actor_user, TaskCreate(**template, deal_id=deal_id, contact_id=contact_id))

    def create_stage_transition_task(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: uuid.UUID,
        from_stage: str,
        to_stage: str,
    ) -> TaskRead:
        template = stage_transition_task(from_stage, to_stage, utcnow())
        return self.create_task(session, actor_user, TaskCreate(**template, deal_id=deal_id))

    def _update_row(self, session: Session, actor_user: ActorUser, task: CRMTask, changes: dict[str, Any]) -> TaskRead:
        before = _dump(TaskRead.model_validate(task))
        try:
            task_repository.validate_write_security(
                changes,
                _to_auth_context(actor_user),
                existing={"assigned_to": task.assigned_to, "created_by": task.created_by},
                action="update",
            )
        except AuthorizationError as exc:
            raise _forbidden(exc)

        _apply_changes(task, changes)
        if "status" in changes:
            if changes["status"] == "completed":
                task.completed_at = task.completed_at or utcnow()
            else:
                task.completed_at = None
        task.updated_at = utcnow()
        session.flush()
        session.refresh(task)
        read_model = TaskRead.model_validate(task)
        _record_change(
            session,
            actor_user,
            entity=self.entity,
            table=self.table,
            action="update",
            entity_id=task.id,
            before=before,
            after=_dump(read_model),
        )
        return read_model

    def _mine(self, actor_user: ActorUser, stmt: Select[Any]) -> Select[Any]:
        owner_key = actor_user.owner_key
        return stmt.where(or_(CRMTask.assigned_to == owner_key, CRMTask.created_by == owner_key))

    def _scoped(self, actor_user: ActorUser, stmt: Select[Any]) -> Select[Any]:
        stmt = stmt.options(
            selectinload(CRMTask.deal),
            selectinload(CRMTask.contact),
            selectinload(CRMTask.assignee),
        )
        return task_repository.apply_scope_query(stmt, _to_auth_context(actor_user))

    def _get_visible(self, session: Session, actor_user: ActorUser, task_id: uuid.UUID) -> CRMTask:
        task = session.scalar(self._scoped(actor_user, select(CRMTask).where(CRMTask.id == task_id)))
        if task is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")
        return task


class DealService:
    entity = "deal"
    table = "deals"

    def __init__(self, task_service: TaskService | None = None) -> None:
        self.task_service = task_service or TaskService()

    def list_deals(self, session: Session, actor_user: ActorUser) -> list[DealRead]:
        stmt = self._scoped(actor_user, select(CRMDeal)).order_by(CRMDeal.created_at.desc())
        return [DealRead.model_validate(deal) for deal in session.scalars(stmt).all()]

    def get_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> DealRead:
        return DealRead.model_validate(self.get_visible(session, actor_user, deal_id))

    def create_deal(self, session: Session, actor_user: ActorUser, dto: DealCreate) -> DealRead:
        errors = validate_deal_fields(
            name=dto.name,
            value=dto.value,
            stage=dto.stage,
            expected_close_date=dto.expected_close_date,
            today=utcnow().date(),
        )
        if errors:
            raise _unprocessable(errors)

        values = dto.model_dump()
        values["name"] = dto.name.strip()
        values["owner_id"] = dto.owner_id or actor_user.owner_key
        if dto.probability is None:
            values["probability"] = probability_for_stage(dto.stage)
        try:
            deal_repository.validate_write_security(values, _to_auth_context(actor_user), action="create")
        except AuthorizationError as exc:
            raise _forbidden(exc)

        deal = CRMDeal(**values)
        session.add(deal)
        session.flush()
        session.refresh(deal)
        _record_change(
            session,
            actor_user,
            entity=self.entity,
            table=self.table,
            action="create",
            entity_id=deal.id,
            before=None,
            after=_dump(DealRead.model_validate(deal)),
        )
        session.commit()
        return self.get_deal(session, actor_user, deal.id)

    def update_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID, dto: DealUpdate) -> DealRead:
        deal = self.get_visible(session, actor_user, deal_id)
        changes = dto.model_dump(exclude_unset=True)
        errors = validate_deal_fields(
            name=changes.get("name", deal.name),
            value=changes.get("value", deal.value),
            stage=changes.get("stage", deal.stage),
            expected_close_date=None,
        )
        if errors:
            raise _unprocessable(errors)
        read_model = self._update_row(session, actor_user, deal, changes)
        session.commit()
        return read_model

    def delete_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> None:
        deal = self.get_visible(session, actor_user, deal_id)
        before = _dump(DealRead.model_validate(deal))
        file_paths = list(session.scalars(select(CRMDocument.file_path).where(CRMDocument.deal_id == deal.id)))
        for model in (CRMActivity, CRMTask, CRMDocument):
            session.execute(delete(model).where(model.deal_id == deal.id))
        session.delete(deal)
        _record_change(
            session,
            actor_user,
            entity=self.entity,
            table=self.table,
            action="delete",
            entity_id=deal_id,
            before=before,
            after=None,
        )
        session.commit()
        if file_paths:
            self._remove_stored_documents(file_paths)

    def _remove_stored_documents(self, file_paths: list[str]) -> None:
        bucket = get_bucket(get_settings().documents_bucket)
        for file_path in file_paths:
            try:
                bucket.remove([file_path])
            except StorageError as exc:
                logger.warning(
                    "crm.document.storage_delete_failed",
                    extra={"entity_type": "crm.deal", "file_path": file_path, "error": str(exc)},
                )

    def update_deal_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: uuid.UUID,
        stage: str,
        *,
        create_transition_task: bool = False,
    ) -> DealRead:
        if not is_known_stage(stage):
            raise _unprocessable(["Invalid deal stage"])
        deal = self.get_visible(session, actor_user, deal_id)
        from_stage = deal.stage
        changes: dict[str, Any] = {"stage": stage, "probability": probability_for_stage(stage)}
        if stage in CLOSED_STAGES and deal.actual_close_date is None:
            changes["actual_close_date"] = utcnow().date()
        read_model = self._update_row(session, actor_user, deal, changes)
        session.commit()

        if create_transition_task and from_stage != stage:
            self.task_service.create_stage_transition_task(session, actor_user, deal.id, from_stage, stage)
        return read_model

    def get_pipeline_deals(self, session: Session, actor_user: ActorUser) -> list[PipelineColumn]:
        stmt = self._scoped(actor_user, select(CRMDeal)).order_by(CRMDeal.created_at.desc())
        columns = group_pipeline(session.scalars(stmt).all(), utcnow())
        return [PipelineColumn.model_validate(column) for column in columns]

    def visible_deals(self, session: Session, actor_user: ActorUser) -> list[CRMDeal]:
        return list(session.scalars(self._scoped(actor_user, select(CRMDeal))).all())

    def get_visible(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> CRMDeal:
        deal = session.scalar(self._scoped(actor_user, select(CRMDeal).where(CRMDeal.id == deal_id)))
        if deal is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Deal not found")
        return deal

    def _update_row(self, session: Session, actor_user: ActorUser, deal: CRMDeal, changes: dict[str, Any]) -> DealRead:
        before = _dump(DealRead.model_validate(deal))
        try:
            deal_repository.validate_write_security(
                changes,
                _to_auth_context(actor_user),
                existing={"owner_id": deal.owner_id},
                action="update",
            )
        except AuthorizationError as exc:
            raise _forbidden(exc)

        _apply_changes(deal, changes)
        deal.updated_at = utcnow()
        session.flush()
        session.refresh(deal)
        read_model = DealRead.model_validate(deal)
        _record_change(
            session,
            actor_user,
            entity=self.entity,
            table=self.table,
            action="update",
            entity_id=deal.id,
            before=before,
            after=_dump(read_model),
        )
        return read_model

    def _scoped(self, actor_user: ActorUser, stmt: Select[Any]) -> Select[Any]:
        stmt = stmt.options(
            selectinload(CRMDeal.company),
            selectinload(CRMDeal.contact),
            selectinload(CRMDeal.owner),
        )
        return deal_repository.apply_scope_query(stmt, _to_auth_context(actor_user))


class AnalyticsService:
    def __init__(self, deal_service: DealService | None = None) -> None:
        self.deal_service = deal_service or DealService()

    def get_revenue_data(self, session: Session, actor_user: ActorUser, year: int | None = None) -> list[RevenueMonth]:
        deals = self.deal_service.visible_deals(session, actor_user)
        buckets = analytics.revenue_by_month(
            deals,
            year=year or utcnow().year,
            target=get_settings().monthly_revenue_target,
        )
        return [RevenueMonth(**bucket) for bucket in buckets]

    def get_performance_metrics(self, session: Session, actor_user: ActorUser) -> PerformanceMetrics:
        deals = self.deal_service.visible_deals(session, actor_user)
        return PerformanceMetrics(**analytics.performance_metrics(deals, quota=get_settings().sales_quota))

    def get_win_rate_data(self, session: Session, actor_user: ActorUser, year: int | None = None) -> list[WinRatePeriod]:
        deals = self.deal_service.visible_deals(session, actor_user)
        return [WinRatePeriod(**bucket) for bucket in analytics.win_rate_by_month(deals, year=year or utcnow().year)]

    def get_pipeline_summary(self, session: Session, actor_user: ActorUser) -> PipelineSummary:
        return PipelineSummary(**analytics.pipeline_summary(self.deal_service.visible_deals(session, actor_user)))

    def get_pipeline_velocity(self, session: Session, actor_user: ActorUser) -> PipelineVelocity:
        deals = self.deal_service.visible_deals(session, actor_user)
        stages = analytics.stage_velocity(deals, utcnow())
        return PipelineVelocity.model_validate(
            {
                "stages": stages,
                "bottlenecks": analytics.bottleneck_stages(stages),
                "average_days_in_pipeline": analytics.average_days_in_pipeline(deals),
            }
        )

    def get_business_rules(self, session: Session, actor_user: ActorUser) -> BusinessRules:
        deals = self.deal_service.visible_deals(session, actor_user)
        won = [deal for deal in deals if deal.stage == DealStage.CLOSED_WON]
        stages = analytics.stage_velocity(deals, utcnow())
        return BusinessRules.model_validate(
            {
                "conversion_rate": analytics.conversion_rate(deals),
                "average_deal_size": analytics.average_deal_size(won),
                "average_days_in_pipeline": analytics.average_days_in_pipeline(deals),
                "bottlenecks": analytics.bottleneck_stages(stages),
            }
        )


class ActivityService:
    entity = "activity"
    table = "activities"

    def __init__(self, deal_service: DealService | None = None) -> None:
        self.deal_service = deal_service or DealService()

    def list_activities(self, session: Session, actor_user: ActorUser, limit: int = 50) -> list[ActivityRead]:
        stmt = self._scoped(actor_user, select(CRMActivity)).order_by(CRMActivity.created_at.desc()).limit(limit)
        return [ActivityRead.model_validate(activity) for activity in session.scalars(stmt).all()]

    def list_deal_activities(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> list[ActivityRead]:
        stmt = self._scoped(actor_user, select(CRMActivity).where(CRMActivity.deal_id == deal_id))
        stmt = stmt.order_by(CRMActivity.created_at.desc())
        return [ActivityRead.model_validate(activity) for activity in session.scalars(stmt).all()]

    def list_contact_activities(
        self,
        session: Session,
        actor_user: ActorUser,
        contact_id: uuid.UUID,
    ) -> list[ActivityRead]:
        stmt = self._scoped(actor_user, select(CRMActivity).where(CRMActivity.contact_id == contact_id))
        stmt = stmt.order_by(CRMActivity.created_at.desc())
        return [ActivityRead.model_validate(activity) for activity in session.scalars(stmt).all()]

    def get_activity(self, session: Session, actor_user: ActorUser, activity_id: uuid.UUID) -> ActivityRead:
        return ActivityRead.model_validate(self.get_visible(session, actor_user, activity_id))

    def create_activity(self, session: Session, actor_user: ActorUser, dto: ActivityCreate) -> ActivityRead:
        values = dto.model_dump()
        values["user_id"] = dto.user_id or actor_user.owner_key
        try:
            activity_repository.validate_write_security(values, _to_auth_context(actor_user), action="create")
        except AuthorizationError as exc:
            raise _forbidden(exc)

        activity = CRMActivity(**values)
        session.add(activity)
        session.flush()
        session.refresh(activity)
        _record_change(
            session,
            actor_user,
            entity=self.entity,
            table=self.table,
            action="create",
            entity_id=activity.id,
            before=None,
            after=_dump(ActivityRead.model_validate(activity)),
        )
        session.commit()
        return self.get_activity(session, actor_user, activity.id)

    def update_activity(
        self,
        session: Session,
        actor_user: ActorUser,
        activity_id: uuid.UUID,
        dto: ActivityUpdate,
    ) -> ActivityRead:
        activity = self.get_visible(session, actor_user, activity_id)
        before = _dump(ActivityRead.model_validate(activity))
        _apply_changes(activity, dto.model_dump(exclude_unset=True))
        activity.updated_at = utcnow()
        session.flush()
        session.refresh(activity)
        read_model = ActivityRead.model_validate(activity)
        _record_change(
            session,
            actor_user,
            entity=self.entity,
            table=self.table,
            action="update",
            entity_id=activity.id,
            before=before,
            after=_dump(read_model),
        )
        session.commit()
        return read_model

    def delete_activity(self, session: Session, actor_user: ActorUser, activity_id: uuid.UUID) -> None:
        activity = self.get_visible(session, actor_user, activity_id)
        self._delete_row(session, actor_user, activity)

    def log_email(self, session: Session, actor_user: ActorUser, dto: ActivityLogRequest) -> ActivityRead:
        return self._log(session, actor_user, "email", dto, subject=dto.subject, completed_at=utcnow())

    def log_call(self, session: Session, actor_user: ActorUser, dto: ActivityLogRequest) -> ActivityRead:
        return self._log(session, actor_user, "call", dto, subject=dto.subject or "Phone Call", completed_at=utcnow())

    def log_meeting(self, session: Session, actor_user: ActorUser, dto: ActivityLogRequest) -> ActivityRead:
        return self._log(session, actor_user, "meeting", dto, subject=dto.subject or "Meeting", completed_at=None)

    def log_note(self, session: Session, actor_user: ActorUser, dto: ActivityLogRequest) -> ActivityRead:
        return self._log(session, actor_user, "note", dto, subject=dto.subject or "Note", completed_at=None)

    def get_recent_activity(self, session: Session, actor_user: ActorUser, limit: int = 10) -> list[RecentActivityItem]:
        stmt = self._scoped(actor_user, select(CRMActivity)).order_by(CRMActivity.created_at.desc()).limit(limit)
        items: list[RecentActivityItem] = []
        for activity in session.scalars(stmt).all():
            contact = activity.contact
            items.append(
                RecentActivityItem(
                    id=activity.id,
                    type=activity.type,
                    title=activity.subject,
                    description=activity.description,
                    user=_person_name(activity.user),
                    contact=_person_name(contact),
                    company=contact.company.name if contact is not None and contact.company is not None else None,
                    deal=activity.deal.name if activity.deal is not None else None,
                    time=activity.created_at,
                    icon=ACTIVITY_ICONS.get(activity.type, DEFAULT_ACTIVITY_ICON),
                )
            )
        return items

    def get_activity_stats(
        self,
        session: Session,
        actor_user: ActorUser,
        date_range: DateRange | None = None,
    ) -> ActivityStats:
        stmt = _within(select(CRMActivity), CRMActivity.created_at, date_range)
        activities = session.scalars(activity_repository.apply_scope_query(stmt, _to_auth_context(actor_user))).all()
        return ActivityStats(**analytics.activity_stats(activities))

    def filter_activities(self, session: Session, actor_user: ActorUser, filters: ActivityFilter) -> list[ActivityRead]:
        stmt = select(CRMActivity)
        if filters.types:
            stmt = stmt.where(CRMActivity.type.in_(filters.types))
        if filters.deal_ids:
            stmt = stmt.where(CRMActivity.deal_id.in_(filters.deal_ids))
        if filters.contact_ids:
            stmt = stmt.where(CRMActivity.contact_id.in_(filters.contact_ids))
        if filters.user_ids:
            stmt = stmt.where(CRMActivity.user_id.in_(filters.user_ids))
        stmt = _within(stmt, CRMActivity.created_at, filters.created)
        stmt = self._scoped(actor_user, stmt).order_by(CRMActivity.created_at.desc())
        return [ActivityRead.model_validate(activity) for activity in session.scalars(stmt).all()]

    def get_visible(self, session: Session, actor_user: ActorUser, activity_id: uuid.UUID) -> CRMActivity:
        activity = session.scalar(self._scoped(actor_user, select(CRMActivity).where(CRMActivity.id == activity_id)))
        if activity is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Activity not found")
        return activity

    def _log(
        self,
        session: Session,
        actor_user: ActorUser,
        activity_type: str,
        dto: ActivityLogRequest,
        *,
        subject: str | None,
        completed_at: datetime | None,
    ) -> ActivityRead:
        return self.create_activity(
            session,
            actor_user,
            ActivityCreate(
                type=activity_type,
                subject=subject,
                description=dto.description,
                duration_minutes=dto.duration_minutes,
                deal_id=dto.deal_id,
                contact_id=dto.contact_id,
                scheduled_at=dto.scheduled_at,
                completed_at=completed_at,
            ),
        )

    def _delete_row(self, session: Session, actor_user: ActorUser, activity: CRMActivity) -> None:
        before = _dump(ActivityRead.model_validate(activity))
        activity_id = activity.id
        session.delete(activity)
        _record_change(
            session,
            actor_user,
            entity=self.entity,
            table=self.table,
            action="delete",
            entity_id=activity_id,
            before=before,
            after=None,
        )
        session.commit()

    def _scoped(self, actor_user: ActorUser, stmt: Select[Any]) -> Select[Any]:
        stmt = stmt.options(
            selectinload(CRMActivity.contact).selectinload(CRMContact.company),
            selectinload(CRMActivity.deal).selectinload(CRMDeal.company),
            selectinload(CRMActivity.user),
        )
        return activity_repository.apply_scope_query(stmt, _to_auth_context(actor_user))


class DealTimelineService:
    def __init__(self, activity_service: ActivityService | None = None) -> None:
        self.activity_service = activity_service or ActivityService()

    def get_deal_timeline(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID | None) -> list[TimelineEntry]:
        if deal_id is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Deal ID is required")
        stmt = self.activity_service._scoped(actor_user, select(CRMActivity).where(CRMActivity.deal_id == deal_id))
        stmt = stmt.order_by(CRMActivity.created_at.desc())
        return [self._to_entry(activity) for activity in session.scalars(stmt).all()]

    def add_deal_activity(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: uuid.UUID,
        dto: DealActivityCreate,
    ) -> TimelineEntry:
        deal = self.activity_service.deal_service.get_visible(session, actor_user, deal_id)
        created = self.activity_service.create_activity(
            session,
            actor_user,
            ActivityCreate(**dto.model_dump(), deal_id=deal.id),
        )
        activity = self.activity_service.get_visible(session, actor_user, created.id)
        return self._to_entry(activity)

    def delete_deal_activity(self, session: Session, actor_user: ActorUser, activity_id: uuid.UUID) -> None:
        activity = self.activity_service.get_visible(session, actor_user, activity_id)
        if activity.user_id != actor_user.owner_key and not actor_user.is_manager:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="You can only delete your own activities")
        self.activity_service._delete_row(session, actor_user, activity)

    def _to_entry(self, activity: CRMActivity) -> TimelineEntry:
        contact = activity.contact
        company = activity.deal.company if activity.deal is not None else None
        if company is None and contact is not None:
            company = contact.company
        return TimelineEntry(
            id=activity.id,
            type=activity.type,
            title=activity.subject or activity.type,
            description=activity.description,
            timestamp=activity.created_at,
            user=_person_name(activity.user) or UNKNOWN_USER,
            contact=_person_name(contact),
            company=company.name if company is not None else None,
            duration=activity.duration_minutes,
            scheduled_at=activity.scheduled_at,
            completed_at=activity.completed_at,
        )


class DocumentService:
    entity = "document"
    table = "documents"

    def __init__(self, deal_service: DealService | None = None) -> None:
        self.deal_service = deal_service or DealService()

    @property
    def storage(self) -> DocumentStorage:
        return get_bucket(get_settings().documents_bucket)

    def upload_document(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: uuid.UUID,
        *,
        filename: str | None,
        content: bytes,
        content_type: str | None,
        document_type: str = "other",
    ) -> DocumentRead:
        deal = self.deal_service.get_visible(session, actor_user, deal_id)
        name = safe_object_name(filename)
        file_path = f"{actor_user.owner_key}/{deal.id}/{int(time.time() * 1000)}-{name}"
        try:
            stored = self.storage.upload(file_path, content, content_type)
        except ObjectExistsError:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="The resource already exists")

        try:
            document = CRMDocument(
                name=filename or name,
                file_path=file_path,
                file_size=stored.size,
                file_type=stored.content_type,
                document_type=document_type,
                deal_id=deal.id,
                uploaded_by=actor_user.owner_key,
            )
            session.add(document)
            session.flush()
            session.refresh(document)
            read_model = self._to_read(document)
            _record_change(
                session,
                actor_user,
                entity=self.entity,
                table=self.table,
                action="create",
                entity_id=document.id,
                before=None,
                after=_dump(read_model),
            )
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            self.storage.remove([file_path])
            logger.error(
                "crm.document.insert_failed",
                extra={"entity_type": "crm.document", "file_path": file_path, "error": str(exc)},
            )
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Document record could not be saved")
        return read_model

    def list_deal_documents(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> list[DocumentRead]:
        stmt = self._scoped(actor_user, select(CRMDocument).where(CRMDocument.deal_id == deal_id))
        stmt = stmt.order_by(CRMDocument.created_at.desc())
        return [self._to_read(document) for document in session.scalars(stmt).all()]

    def delete_document(self, session: Session, actor_user: ActorUser, document_id: uuid.UUID) -> None:
        document = session.scalar(self._scoped(actor_user, select(CRMDocument).where(CRMDocument.id == document_id)))
        if document is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found")
        if document.uploaded_by != actor_user.owner_key and not actor_user.is_manager:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="You can only delete your own documents")

        try:
            self.storage.remove([document.file_path])
        except StorageError as exc:
            logger.warning(
                "crm.document.storage_delete_failed",
                extra={"entity_type": "crm.document", "file_path": document.file_path, "error": str(exc)},
            )

        before = _dump(self._to_read(document))
        session.delete(document)
        _record_change(
            session,
            actor_user,
            entity=self.entity,
            table=self.table,
            action="delete",
            entity_id=document_id,
            before=before,
            after=None,
        )
        session.commit()

    def get_download_url(self, session: Session, actor_user: ActorUser, file_path: str) -> SignedUrlRead:
        document = session.scalar(self._scoped(actor_user, select(CRMDocument).where(CRMDocument.file_path == file_path)))
        if document is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found")
        expires_in = get_settings().signed_url_expires_seconds
        return SignedUrlRead(
            file_path=file_path,
            signed_url=self.storage.create_signed_url(file_path, expires_in),
            expires_in=expires_in,
        )

    def _to_read(self, document: CRMDocument) -> DocumentRead:
        return DocumentRead.model_validate(document).model_copy(
            update={
                "size_label": format_file_size(document.file_size),
                "extension": get_file_extension(document.name),
                "icon": get_file_icon(document.name),
            }
        )

    def _scoped(self, actor_user: ActorUser, stmt: Select[Any]) -> Select[Any]:
        stmt = stmt.options(selectinload(CRMDocument.uploader))
        return document_repository.apply_scope_query(stmt, _to_auth_context(actor_user))


class UserService:
    entity = "user"
    table = "user_profiles"

    def list_users(self, session: Session, actor_user: ActorUser) -> list[UserProfileRead]:
        self._require_manager(actor_user)
        stmt = select(CRMUserProfile).order_by(CRMUserProfile.created_at.desc())
        return [UserProfileRead.model_validate(user) for user in session.scalars(stmt).all()]

    def get_current_user_profile(self, session: Session, actor_user: ActorUser) -> UserProfileRead | None:
        profile = session.get(CRMUserProfile, actor_user.owner_key)
        return UserProfileRead.model_validate(profile) if profile is not None else None

    def create_user_profile(self, session: Session, actor_user: ActorUser, dto: UserProfileCreate) -> UserProfileRead:
        profile_id = dto.id or actor_user.owner_key
        if profile_id != actor_user.owner_key and not actor_user.is_admin:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Cannot create another user's profile")
        if dto.role != "sales_rep" and not actor_user.is_admin:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only administrators can assign roles")
        self._ensure_available(session, str(dto.email), profile_id)
        profile = self._insert(session, actor_user, {**dto.model_dump(), "id": profile_id, "email": str(dto.email)})
        session.commit()
        return UserProfileRead.model_validate(profile)

    def update_user_profile(
        self,
        session: Session,
        actor_user: ActorUser,
        user_id: uuid.UUID,
        dto: UserProfileUpdate,
    ) -> UserProfileRead:
        if user_id != actor_user.owner_key and not actor_user.is_admin:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="You can only update your own profile")
        changes = dto.model_dump(exclude_unset=True)
        if ("role" in changes or "is_active" in changes) and not actor_user.is_admin:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only administrators can change roles")
        profile = self._load(session, user_id)
        read_model = self._update_row(session, actor_user, profile, changes)
        session.commit()
        return read_model

    def invite_user(self, session: Session, actor_user: ActorUser, dto: InviteUserRequest) -> UserProfileRead:
        self._require_admin(actor_user)
        email = str(dto.email).lower()
        self._ensure_available(session, email, None)
        profile = self._insert(
            session,
            actor_user,
            {
                "id": uuid.uuid4(),
                "email": email,
                "first_name": dto.first_name,
                "last_name": dto.last_name,
                "role": dto.role,
                "is_active": True,
            },
        )
        session.commit()
        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": "crm.user.invited",
                "occurred_at": utcnow().isoformat(),
                "actor_user_id": actor_user.user_id,
                "correlation_id": actor_user.correlation_id,
                "payload": {"user_id": str(profile.id), "email": email, "role": dto.role},
            }
        )
        return UserProfileRead.model_validate(profile)

    def set_active(self, session: Session, actor_user: ActorUser, user_id: uuid.UUID, is_active: bool) -> UserProfileRead:
        self._require_admin(actor_user)
        profile = self._load(session, user_id)
        read_model = self._update_row(session, actor_user, profile, {"is_active": is_active})
        session.commit()
        return read_model

    def deactivate_user(self, session: Session, actor_user: ActorUser, user_id: uuid.UUID) -> UserProfileRead:
        return self.set_active(session, actor_user, user_id, False)

    def activate_user(self, session: Session, actor_user: ActorUser, user_id: uuid.UUID) -> UserProfileRead:
        return self.set_active(session, actor_user, user_id, True)

    def delete_user(self, session: Session, actor_user: ActorUser, user_id: uuid.UUID) -> UserProfileRead:
        return self.deactivate_user(session, actor_user, user_id)

    def bulk_update_users(
        self,
        session: Session,
        actor_user: ActorUser,
        user_ids: list[uuid.UUID],
        updates: UserProfileUpdate,
    ) -> list[UserProfileRead]:
        self._require_admin(actor_user)
        profiles = session.scalars(select(CRMUserProfile).where(CRMUserProfile.id.in_(user_ids))).all()
        changes = updates.model_dump(exclude_unset=True)
        reads = [self._update_row(session, actor_user, profile, changes) for profile in profiles]
        session.commit()
        return reads

    def get_user_stats(self, session: Session, actor_user: ActorUser) -> UserStats:
        self._require_manager(actor_user)
        return UserStats(**analytics.user_stats(session.scalars(select(CRMUserProfile)).all(), utcnow()))

    def search_users(self, session: Session, actor_user: ActorUser, term: str) -> list[UserProfileRead]:
        pattern = f"%{term.strip()}%"
        stmt = select(CRMUserProfile).where(
            or_(
                CRMUserProfile.first_name.ilike(pattern),
                CRMUserProfile.last_name.ilike(pattern),
                CRMUserProfile.email.ilike(pattern),
            )
        )
        return [UserProfileRead.model_validate(user) for user in session.scalars(stmt.order_by(CRMUserProfile.email)).all()]

    def filter_users(self, session: Session, actor_user: ActorUser, filters: UserFilter) -> list[UserProfileRead]:
        stmt = select(CRMUserProfile)
        if filters.roles:
            stmt = stmt.where(CRMUserProfile.role.in_(filters.roles))
        if filters.status is not None:
            stmt = stmt.where(CRMUserProfile.is_active.is_(filters.status == "active"))
        if filters.territories:
            stmt = stmt.where(CRMUserProfile.territory.in_(filters.territories))
        stmt = stmt.order_by(CRMUserProfile.created_at.desc())
        return [UserProfileRead.model_validate(user) for user in session.scalars(stmt).all()]

    def get_user_activity_summary(
        self,
        session: Session,
        actor_user: ActorUser,
        user_id: uuid.UUID,
        days: int = 30,
    ) -> UserActivitySummary:
        if user_id != actor_user.owner_key and not actor_user.is_manager:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Cannot view another user's activity")
        since = utcnow() - timedelta(days=days)
        activities = session.scalars(
            select(CRMActivity).where(CRMActivity.user_id == user_id, CRMActivity.created_at >= since)
        ).all()
        tasks = session.scalars(select(CRMTask).where(CRMTask.assigned_to == user_id, CRMTask.created_at >= since)).all()
        deals = session.scalars(select(CRMDeal).where(CRMDeal.owner_id == user_id, CRMDeal.created_at >= since)).all()
        return UserActivitySummary(**analytics.user_activity_summary(activities, tasks, deals, days=days))

    def get_user_roles(self) -> list[UserRoleRead]:
        return [UserRoleRead(value=value, label=label) for value, label in ROLE_LABELS.items()]

    def _insert(self, session: Session, actor_user: ActorUser, values: dict[str, Any]) -> CRMUserProfile:
        profile = CRMUserProfile(**values)
        session.add(profile)
        session.flush()
        session.refresh(profile)
        _record_change(
            session,
            actor_user,
            entity=self.entity,
            table=self.table,
            action="create",
            entity_id=profile.id,
            before=None,
            after=_dump(UserProfileRead.model_validate(profile)),
        )
        return profile

    def _update_row(
        self,
        session: Session,
        actor_user: ActorUser,
        profile: CRMUserProfile,
        changes: dict[str, Any],
    ) -> UserProfileRead:
        before = _dump(UserProfileRead.model_validate(profile))
        _apply_changes(profile, changes)
        profile.updated_at = utcnow()
        session.flush()
        session.refresh(profile)
        read_model = UserProfileRead.model_validate(profile)
        _record_change(
            session,
            actor_user,
            entity=self.entity,
            table=self.table,
            action="update",
            entity_id=profile.id,
            before=before,
            after=_dump(read_model),
        )
        return read_model

    def _load(self, session: Session, user_id: uuid.UUID) -> CRMUserProfile:
        profile = session.get(CRMUserProfile, user_id)
        if profile is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
        return profile

    def _ensure_available(self, session: Session, email: str, profile_id: uuid.UUID | None) -> None:
        if session.scalar(select(CRMUserProfile.id).where(func.lower(CRMUserProfile.email) == email.lower())):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="User with this email already exists")
        if profile_id is not None and session.get(CRMUserProfile, profile_id) is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="User profile already exists")

    def _require_manager(self, actor_user: ActorUser) -> None:
        if not actor_user.is_manager:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only admins and managers can view users")

    def _require_admin(self, actor_user: ActorUser) -> None:
        if not actor_user.is_admin:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only administrators can manage users")
