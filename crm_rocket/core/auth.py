from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt
from starlette.requests import HTTPConnection

from crm_rocket.core.config import get_settings

ANONYMOUS_SUBJECT = "anonymous"


@dataclass
class AuthUser:
    sub: str
    roles: list[str]
    email: str | None = None
    claims: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def is_anonymous(self) -> bool:
        return self.sub == ANONYMOUS_SUBJECT


def create_access_token(sub: str, roles: list[str], *, email: str | None = None, expires_in: int = 3600) -> str:
    settings = get_settings()
    claims: dict[str, Any] = {
        "sub": sub,
        "roles": roles,
        "exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
    }
    if email:
        claims["email"] = email
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> AuthUser:
    if not token:
        return AuthUser(sub=ANONYMOUS_SUBJECT, roles=["guest"])

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return AuthUser(sub=ANONYMOUS_SUBJECT, roles=["guest"])

    roles = payload.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    email = payload.get("email")
    return AuthUser(
        sub=str(payload.get("sub", ANONYMOUS_SUBJECT)),
        roles=[str(role) for role in roles],
        email=str(email) if email else None,
        claims=payload,
    )


async def get_current_user(connection: HTTPConnection) -> AuthUser:
    auth_header = connection.headers.get("authorization", "")
    token = auth_header.removeprefix("Bearer ") if auth_header.startswith("Bearer ") else ""
    if not token:
        # browsers cannot set headers on websocket upgrades
        token = connection.query_params.get("access_token", "")

    user = decode_access_token(token)
    context = getattr(connection.state, "context", None)
    if context is not None and not user.is_anonymous:
        context.user_id = user.sub
    return user
