from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Any

from app.platform.conditions import canonical_json
from app.platform.errors import ValidationError


@dataclass(slots=True)
class AuthContext:
    """Actor context used by policy evaluation, routing and approvals."""

    user_id: str
    tenant_id: str | None = None
    correlation_id: str | None = None
    is_super_admin: bool = False
    roles: list[str] = field(default_factory=list)
    permissions: list[str] = field(default_factory=list)
    attributes: dict[str, Any] = field(default_factory=dict)
    _cache: dict[str, Any] = field(default_factory=dict, repr=False)

    def as_view(self) -> dict[str, Any]:
        view = dict(self.attributes)
        view.update(
            {
                "user_id": self.user_id,
                "tenant_id": self.tenant_id,
                "roles": list(self.roles),
                "permissions": list(self.permissions),
                "is_super_admin": self.is_super_admin,
            }
        )
        return view

    def fingerprint(self) -> str:
        cached = self._cache.get("subject.fingerprint")
        if isinstance(cached, str):
            return cached
        digest = hashlib.sha256(
            canonical_json(
                {
                    "user_id": self.user_id,
                    "roles": sorted(self.roles),
                    "permissions": sorted(self.permissions),
                    "attributes": self.attributes,
                    "super": self.is_super_admin,
                }
            ).encode("utf-8")
        ).hexdigest()
        self._cache["subject.fingerprint"] = digest
        return digest

    def require_tenant(self) -> str:
        if not self.tenant_id:
            raise ValidationError("tenant id is required")
        return self.tenant_id
