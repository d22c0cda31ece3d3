from collections.abc import Callable

from fastapi import Depends, HTTPException, status

from app.core.auth import AuthUser, get_current_user

ADMIN_ROLES = frozenset({"admin", "system.admin"})


def require_roles(*roles: str) -> Callable[[AuthUser], AuthUser]:
    """Dependency accepting users holding any of ``roles`` (admins always pass)."""

    accepted = set(roles) | ADMIN_ROLES

    async def checker(user: AuthUser = Depends(get_current_user)) -> AuthUser:
        if not accepted.intersection(user.roles):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing role: {' or '.join(sorted(roles)) or 'admin'}",
            )
        return user

    return checker
