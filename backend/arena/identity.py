"""
Caller identity.

Authentication lives in front of this service; it forwards the verified user
id in ``X-User-Id`` and marks administrators with ``X-User-Role: admin``.
"""
from typing import Optional

from fastapi import Depends, Header, HTTPException

ADMIN_ROLE = "admin"


def get_current_user_id(x_user_id: Optional[str] = Header(default=None)) -> int:
    """FastAPI dependency: the authenticated user id (401 when missing)."""
    if x_user_id is None or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="UNAUTHENTICATED: X-User-Id header required")
    try:
        user_id = int(x_user_id.strip())
    except ValueError:
        raise HTTPException(status_code=401, detail=f"UNAUTHENTICATED: invalid user id '{x_user_id}'")
    if user_id <= 0:
        raise HTTPException(status_code=401, detail=f"UNAUTHENTICATED: invalid user id '{x_user_id}'")
    return user_id


def require_admin(
    user_id: int = Depends(get_current_user_id),
    x_user_role: Optional[str] = Header(default=None),
) -> int:
    """FastAPI dependency: the admin's user id (403 for non-admins)."""
    if (x_user_role or "").strip().lower() != ADMIN_ROLE:
        raise HTTPException(status_code=403, detail="FORBIDDEN: administrator role required")
    return user_id
