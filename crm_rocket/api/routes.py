from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from crm_rocket.core.auth import AuthUser, get_current_user
from crm_rocket.core.config import get_settings
from crm_rocket.crm.api import (
    activities_router,
    analytics_router,
    audit_router,
    companies_router,
    contacts_router,
    deals_router,
    documents_router,
    realtime_router,
    storage_router,
    tasks_router,
    timeline_router,
    users_router,
)
from crm_rocket.email.api import router as email_router
from crm_rocket.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(contacts_router)
router.include_router(companies_router)
router.include_router(deals_router)
router.include_router(analytics_router)
router.include_router(activities_router)
router.include_router(timeline_router)
router.include_router(documents_router)
router.include_router(tasks_router)
router.include_router(users_router)
router.include_router(audit_router)
router.include_router(realtime_router)
router.include_router(storage_router)
router.include_router(email_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | list[str] | None]:
    return {
        "sub": user.sub,
        "roles": user.roles,
        "email": user.email,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if "system.metrics.read" not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: system.metrics.read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
