"""
Common dependencies for FastAPI routes.

Token verification happens at the gateway; requests reach this service with
the authenticated user id in the X-User-Id header.
"""

from typing import Optional

from fastapi import Header

from app.core.exceptions import UnauthorizedException


async def get_current_user(
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
) -> dict:
    """
    Dependency to get the current authenticated user.
    Returns user dict with 'id'.
    """
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise UnauthorizedException("Missing authenticated user")
    return {"id": user_id}
