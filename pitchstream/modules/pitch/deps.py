"""Request dependencies for the pitch and streaming routers."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, Query, status


@dataclass(frozen=True)
class CurrentUser:
    """Caller identity forwarded by the upstream auth gateway."""
    user_id: str
    role: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return (self.role or "").lower() == "admin"


async def get_current_user(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> CurrentUser:
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return CurrentUser(user_id=x_user_id, role=x_user_role.lower() if x_user_role else None)


async def get_admin_user(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return user


async def resolve_owner_id(
    user_id: Optional[str] = Query(None),
    user: CurrentUser = Depends(get_current_user),
) -> str:
    """Owner the request acts on: ``?user_id=`` for admins, else the caller."""
    if user_id and user_id != user.user_id:
        if not user.is_admin:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Not allowed to act on another user's pitch",
            )
        return user_id
    return user.user_id
