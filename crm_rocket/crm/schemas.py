from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field


ContactStatus = Literal["active", "inactive", "prospect", "customer"]
TaskStatus = Literal["pending", "in_progress", "completed", "cancelled"]
TaskPriority = Literal["low", "medium", "high", "urgent"]
UserRole = Literal["admin", "manager", "sales_rep", "user"]
DocumentType = Literal["proposal", "contract", "presentation", "other"]
FollowUpPriority = Literal["high", "medium", "low"]


class UserSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    first_name: str | None = None
    last_name: str | None = None
    full_name: str | None = None
    email: str | None = None


class CompanySummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str


class ContactSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    first_name: str
    last_name: str
    email: str | None = None


class DealSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    stage: str
    value: float


class DateRange(BaseModel):
    start: datetime | None = None
    end: datetime | None = None


class CompanyCreate(BaseModel):
    name: str = Field(min_length=1)
    domain: str | None = None
    industry: str | None = None
    size: str | None = None
    city: str | None = None
    state: str | None = None
    country: str | None = None
    phone: str | None = None
    website: str | None = None
    description: str | None = None


class CompanyUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    domain: str | None = None
    industry: str | None = None
    size: str | None = None
    city: str | None = None
    state: str | None = None
    country: str | None = None
    phone: str | None = None
    website: str | None = None
    description: str | None = None


class CompanyRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    domain: str | None
    industry: str | None
    size: str | None
    city: str | None
    state: str | None
    country: str | None
    phone: str | None
    website: str | None
    description: str | None
    contact_count: int = 0
    deal_count: int = 0
    created_at: datetime
    updated_at: datetime


class CompanyFilter(BaseModel):
    industries: list[str] = Field(default_factory=list)
    sizes: list[str] = Field(default_factory=list)
    locations: list[str] = Field(default_factory=list)
    has_contacts: bool | None = None
    has_deals: bool | None = None


class CompanyStats(BaseModel):
    total: int
    by_industry: dict[str, int]
    by_size: dict[str, int]
    recently_added: int


class CompanyInsightsSummary(BaseModel):
    total_contacts: int
    total_deals: int
    total_deal_value: float
    active_deal_value: float
    won_deals: int
    lost_deals: int
    total_activities: int
    win_rate: float


class RelationshipHealth(BaseModel):
    score: int
    level: Literal["Excellent", "Good", "Fair", "Poor"]
    factors: list[str]


class ContactCreate(BaseModel):
    first_name: str
    last_name: str
    email: str | None = None
    phone: str | None = None
    position: str | None = None
    status: ContactStatus = "active"
    lead_source: str | None = None
    tags: list[str] = Field(default_factory=list)
    notes: str | None = None
    company_id: UUID | None = None
    company_name: str | None = None
    industry: str | None = None
    owner_id: UUID | None = None


class ContactUpdate(BaseModel):
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None
    position: str | None = None
    status: ContactStatus | None = None
    lead_source: str | None = None
    tags: list[str] | None = None
    notes: str | None = None
    company_id: UUID | None = None
    owner_id: UUID | None = None
    last_contact_date: datetime | None = None


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    first_name: str
    last_name: str
    email: str | None
    phone: str | None
    position: str | None
    status: str
    lead_source: str | None
    tags: list[str]
    notes: str | None
    company_id: UUID | None
    owner_id: UUID | None
    last_contact_date: datetime | None
    company: CompanySummary | None = None
    owner: UserSummary | None = None
    created_at: datetime
    updated_at: datetime


class ContactFilter(BaseModel):
    statuses: list[str] = Field(default_factory=list)
    company_ids: list[UUID] = Field(default_factory=list)
    lead_sources: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    last_contact: DateRange | None = None


class ContactImportRequest(BaseModel):
    rows: list[ContactCreate] = Field(min_length=1)


class ContactMergeRequest(BaseModel):
    primary_id: UUID
    duplicate_id: UUID
    merged_data: ContactUpdate = Field(default_factory=ContactUpdate)


class ContactStats(BaseModel):
    total: int
    active: int
    prospects: int
    customers: int
    lead_sources: dict[str, int]


class ScheduleFollowUpRequest(BaseModel):
    priority: FollowUpPriority = "medium"


class BulkIdsRequest(BaseModel):
    ids: list[UUID] = Field(min_length=1)


class DealCreate(BaseModel):
    name: str
    value: float = 0
    stage: str = "lead"
    probability: int | None = Field(default=None, ge=0, le=100)
    expected_close_date: date | None = None
    lead_source: str | None = None
    description: str | None = None
    company_id: UUID | None = None
    contact_id: UUID | None = None
    owner_id: UUID | None = None


class DealUpdate(BaseModel):
    name: str | None = None
    value: float | None = None
    stage: str | None = None
    probability: int | None = Field(default=None, ge=0, le=100)
    expected_close_date: date | None = None
    actual_close_date: date | None = None
    lead_source: str | None = None
    description: str | None = None
    company_id: UUID | None = None
    contact_id: UUID | None = None
    owner_id: UUID | None = None


class DealStageUpdate(BaseModel):
    stage: str
    create_transition_task: bool = False


class DealRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    value: float
    stage: str
    probability: int
    expected_close_date: date | None
    actual_close_date: date | None
    lead_source: str | None
    description: str | None
    company_id: UUID | None
    contact_id: UUID | None
    owner_id: UUID | None
    company: CompanySummary | None = None
    contact: ContactSummary | None = None
    owner: UserSummary | None = None
    created_at: datetime
    updated_at: datetime


class PipelineDealCard(BaseModel):
    id: UUID
    title: str
    company: str | None
    contact: str | None
    owner: str | None
    value: float
    probability: int
    stage: str
    expected_close_date: date | None
    days_in_stage: int


class PipelineColumn(BaseModel):
    id: str
    title: str
    probability: int
    deals: list[PipelineDealCard]
    count: int
    total_value: float
    weighted_value: float


class RevenueMonth(BaseModel):
    month: str
    forecast: float
    actual: float
    target: float


class PerformanceMetrics(BaseModel):
    quota: float
    achieved: float
    percentage: int
    deals_won: int
    deals_lost: int
    avg_deal_size: int
    conversion_rate: float


class WinRatePeriod(BaseModel):
    period: str
    won: int
    total: int
    win_rate: int


class PipelineSummary(BaseModel):
    total_value: float
    weighted_value: float
    open_deals: int
    won_value: float
    win_rate: int


class StageVelocity(BaseModel):
    stage: str
    deal_count: int
    average_days: float


class PipelineVelocity(BaseModel):
    stages: list[StageVelocity]
    bottlenecks: list[StageVelocity]
    average_days_in_pipeline: int


class BusinessRules(BaseModel):
    conversion_rate: int
    average_deal_size: float
    average_days_in_pipeline: int
    bottlenecks: list[StageVelocity]


class ActivityCreate(BaseModel):
    type: str = "note"
    subject: str | None = None
    description: str | None = None
    duration_minutes: int | None = Field(default=None, ge=0)
    deal_id: UUID | None = None
    contact_id: UUID | None = None
    user_id: UUID | None = None
    scheduled_at: datetime | None = None
    completed_at: datetime | None = None


class ActivityUpdate(BaseModel):
    type: str | None = None
    subject: str | None = None
    description: str | None = None
    duration_minutes: int | None = Field(default=None, ge=0)
    deal_id: UUID | None = None
    contact_id: UUID | None = None
    scheduled_at: datetime | None = None
    completed_at: datetime | None = None


class ActivityLogRequest(BaseModel):
    subject: str | None = None
    description: str | None = None
    contact_id: UUID | None = None
    deal_id: UUID | None = None
    duration_minutes: int | None = Field(default=None, ge=0)
    scheduled_at: datetime | None = None


class ActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    type: str
    subject: str | None
    description: str | None
    duration_minutes: int | None
    deal_id: UUID | None
    contact_id: UUID | None
    user_id: UUID | None
    scheduled_at: datetime | None
    completed_at: datetime | None
    contact: ContactSummary | None = None
    deal: DealSummary | None = None
    user: UserSummary | None = None
    created_at: datetime
    updated_at: datetime


class ActivityFilter(BaseModel):
    types: list[str] = Field(default_factory=list)
    deal_ids: list[UUID] = Field(default_factory=list)
    contact_ids: list[UUID] = Field(default_factory=list)
    user_ids: list[UUID] = Field(default_factory=list)
    created: DateRange | None = None


class RecentActivityItem(BaseModel):
    id: UUID
    type: str
    title: str | None
    description: str | None
    user: str | None
    contact: str | None
    company: str | None
    deal: str | None
    time: datetime
    icon: str


class ActivityStats(BaseModel):
    total: int
    emails: int
    calls: int
    meetings: int
    notes: int
    total_call_time: int
    avg_call_duration: int


class DealActivityCreate(BaseModel):
    type: str = "note"
    subject: str | None = None
    description: str | None = None
    duration_minutes: int | None = Field(default=None, ge=0)
    contact_id: UUID | None = None
    scheduled_at: datetime | None = None
    completed_at: datetime | None = None


class TimelineEntry(BaseModel):
    id: UUID
    type: str
    title: str
    description: str | None
    timestamp: datetime
    user: str
    contact: str | None
    company: str | None
    duration: int | None
    scheduled_at: datetime | None
    completed_at: datetime | None


class DocumentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    file_path: str
    file_size: int
    file_type: str | None
    document_type: str
    deal_id: UUID
    uploaded_by: UUID | None
    uploader: UserSummary | None = None
    size_label: str = ""
    extension: str = ""
    icon: str = "File"
    created_at: datetime


class SignedUrlRead(BaseModel):
    file_path: str
    signed_url: str
    expires_in: int


class TaskCreate(BaseModel):
    title: str = Field(min_length=1)
    description: str | None = None
    status: TaskStatus = "pending"
    priority: TaskPriority = "medium"
    due_date: datetime | None = None
    deal_id: UUID | None = None
    contact_id: UUID | None = None
    assigned_to: UUID | None = None


class TaskUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1)
    description: str | None = None
    status: TaskStatus | None = None
    priority: TaskPriority | None = None
    due_date: datetime | None = None
    deal_id: UUID | None = None
    contact_id: UUID | None = None
    assigned_to: UUID | None = None


class TaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    description: str | None
    status: str
    priority: str
    due_date: datetime | None
    deal_id: UUID | None
    contact_id: UUID | None
    assigned_to: UUID | None
    created_by: UUID | None
    completed_at: datetime | None
    deal: DealSummary | None = None
    contact: ContactSummary | None = None
    assignee: UserSummary | None = None
    created_at: datetime
    updated_at: datetime


class UpcomingTaskRead(TaskRead):
    is_overdue: bool
    days_until_due: int | None


class TaskFilter(BaseModel):
    statuses: list[str] = Field(default_factory=list)
    priorities: list[str] = Field(default_factory=list)
    deal_ids: list[UUID] = Field(default_factory=list)
    assignees: list[UUID] = Field(default_factory=list)
    due: DateRange | None = None
    overdue: bool = False


class TaskBulkUpdate(BaseModel):
    ids: list[UUID] = Field(min_length=1)
    updates: TaskUpdate


class TaskStats(BaseModel):
    total: int
    pending: int
    in_progress: int
    completed: int
    overdue: int
    high_priority: int
    completion_rate: int


class FollowUpTaskRequest(BaseModel):
    deal_id: UUID
    contact_id: UUID | None = None
    description: str | None = None


class StageTransitionTaskRequest(BaseModel):
    deal_id: UUID
    from_stage: str
    to_stage: str


class UserProfileCreate(BaseModel):
    id: UUID | None = None
    email: EmailStr
    first_name: str | None = None
    last_name: str | None = None
    role: UserRole = "sales_rep"
    territory: str | None = None
    phone: str | None = None
    avatar_url: str | None = None
    is_active: bool = True


class UserProfileUpdate(BaseModel):
    first_name: str | None = None
    last_name: str | None = None
    role: UserRole | None = None
    territory: str | None = None
    phone: str | None = None
    avatar_url: str | None = None
    is_active: bool | None = None


class UserProfileRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    first_name: str | None
    last_name: str | None
    full_name: str
    role: str
    territory: str | None
    phone: str | None
    avatar_url: str | None
    is_active: bool
    created_at: datetime
    updated_at: datetime


class InviteUserRequest(BaseModel):
    email: EmailStr
    first_name: str | None = None
    last_name: str | None = None
    role: UserRole = "sales_rep"


class UserBulkUpdate(BaseModel):
    ids: list[UUID] = Field(min_length=1)
    updates: UserProfileUpdate


class UserFilter(BaseModel):
    roles: list[str] = Field(default_factory=list)
    status: Literal["active", "inactive"] | None = None
    territories: list[str] = Field(default_factory=list)


class UserStats(BaseModel):
    total: int
    active: int
    inactive: int
    by_role: dict[str, int]
    recently_joined: int


class UserActivitySummary(BaseModel):
    total_activities: int
    total_tasks: int
    completed_tasks: int
    total_deals: int
    won_deals: int
    total_deal_value: float
    period: int


class UserRoleRead(BaseModel):
    value: str
    label: str


class CompanyInsights(BaseModel):
    company: CompanyRead
    summary: CompanyInsightsSummary
    recent_activity: list[ActivityRead]
    deals_by_stage: dict[str, int]
    contacts_by_status: dict[str, int]
    relationship_health: RelationshipHealth


class AuditRead(BaseModel):
    id: str
    actor_user_id: str
    entity_type: str
    entity_id: str
    action: str
    changed_fields: list[str]
    correlation_id: str | None
    occurred_at: str
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
