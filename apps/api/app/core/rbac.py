from fastapi import HTTPException, status

from app.core.auth import AuthUser


def has_permissions(user: AuthUser, *permissions: str) -> bool:
    return all(permission in user.roles for permission in permissions)


def require_permissions(user: AuthUser, *permissions: str) -> AuthUser:
    missing_permissions = [permission for permission in permissions if permission not in user.roles]
    if missing_permissions:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Missing permissions: {', '.join(missing_permissions)}",
        )
    return user
