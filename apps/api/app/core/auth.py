from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from jose import JWTError, jwt
from starlette.requests import Request

from app.core.config import get_settings


@dataclass
class AuthUser:
    sub: str
    roles: list[str]
    tenant_id: str | None = None
    permissions: list[str] = field(default_factory=list)
    attributes: dict[str, Any] = field(default_factory=dict)


_ANONYMOUS_ROLES = ["guest"]


def _as_str_list(value: Any, default: list[str]) -> list[str]:
    if not isinstance(value, list):
        return list(default)
    return [str(item) for item in value]


async def get_current_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.removeprefix("Bearer ") if auth_header.startswith("Bearer ") else ""

    if not token:
        return AuthUser(sub="anonymous", roles=list(_ANONYMOUS_ROLES))

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return AuthUser(sub="anonymous", roles=list(_ANONYMOUS_ROLES))

    attributes = payload.get("attributes")
    tenant_id = payload.get("tenant_id")
    return AuthUser(
        sub=str(payload.get("sub", "anonymous")),
        roles=_as_str_list(payload.get("roles"), ["user"]),
        tenant_id=str(tenant_id) if tenant_id else None,
        permissions=_as_str_list(payload.get("permissions"), []),
        attributes=attributes if isinstance(attributes, dict) else {},
    )
