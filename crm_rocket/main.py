from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from crm_rocket.api.routes import router as api_router
from crm_rocket.core.config import get_settings
from crm_rocket.core.context import RequestContextMiddleware
from crm_rocket.core.events import InternalEvent, event_bus
from crm_rocket.logging import configure_logging
from crm_rocket.middleware.correlation_id import CorrelationIdMiddleware
from crm_rocket.middleware.rate_limit import CrmMutationRateLimitMiddleware
from crm_rocket.middleware.request_logging import RequestLoggingMiddleware
from crm_rocket.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("app.lifecycle")
_subscriptions_registered = False


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_type": event.name, "status": "started"})


def _on_user_invited(event: InternalEvent) -> None:
    payload = event.payload.get("payload") or {}
    # account provisioning happens in the identity provider
    logger.info(
        "user_invited",
        extra={"event_type": event.name, "entity_type": "crm.user", "entity_id": payload.get("user_id")},
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        event_bus.subscribe("crm.user.invited", _on_user_invited)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.add_middleware(CrmMutationRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel("api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
