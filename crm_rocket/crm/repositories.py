from __future__ import annotations

from typing import Any

from sqlalchemy import Select

from crm_rocket.platform.security.context import AuthContext
from crm_rocket.platform.security.repository import BaseRepository


class ContactRepository(BaseRepository):
    resource = "crm.contact"
    owner_columns = ("owner_id",)


class CompanyRepository(BaseRepository):
    resource = "crm.company"

    def apply_scope_query(self, query: Select[Any], ctx: AuthContext) -> Select[Any]:
        # companies are shared reference data
        return query


class DealRepository(BaseRepository):
    resource = "crm.deal"
    owner_columns = ("owner_id",)


class ActivityRepository(BaseRepository):
    resource = "crm.activity"
    owner_columns = ("user_id",)


class TaskRepository(BaseRepository):
    resource = "crm.task"
    owner_columns = ("assigned_to", "created_by")


class DocumentRepository(BaseRepository):
    resource = "crm.document"
    owner_columns = ("uploaded_by",)


class UserProfileRepository(BaseRepository):
    resource = "crm.user_profile"
    # a profile row is keyed by its user
    owner_columns = ("id",)


contact_repository = ContactRepository()
company_repository = CompanyRepository()
deal_repository = DealRepository()
activity_repository = ActivityRepository()
task_repository = TaskRepository()
document_repository = DocumentRepository()
user_profile_repository = UserProfileRepository()

REPOSITORIES_BY_TABLE: dict[str, BaseRepository] = {
    "contacts": contact_repository,
    "companies": company_repository,
    "deals": deal_repository,
    "activities": activity_repository,
    "tasks": task_repository,
    "documents": document_repository,
    "user_profiles": user_profile_repository,
}
