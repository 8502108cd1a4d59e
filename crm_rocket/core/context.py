import uuid
from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from crm_rocket.core.auth import decode_access_token


@dataclass
class RequestContext:
    request_id: str
    correlation_id: str
    user_id: str | None
    client: str


def _bearer_subject(request: Request) -> str | None:
    auth_header = request.headers.get("authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    user = decode_access_token(auth_header.removeprefix("Bearer "))
    return None if user.is_anonymous else user.sub


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Attach per-request metadata used by request logs and the CRM dependency."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        request.state.context = RequestContext(
            request_id=uuid.uuid4().hex,
            correlation_id=getattr(request.state, "correlation_id", None) or "",
            user_id=_bearer_subject(request),
            client=request.headers.get("x-client-info", "crm-web"),
        )
        response = await call_next(request)
        response.headers["x-request-id"] = request.state.context.request_id
        return response
