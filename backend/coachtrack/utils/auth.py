"""
Utility functions for resolving the acting user.

Tokens are verified by the upstream gateway, which forwards the user id in a
header. Endpoints pass the (possibly missing) id straight to the tracker,
which rejects anonymous writes itself.
"""

from typing import Optional
from fastapi import HTTPException, Request, status

from ..config import settings


async def get_actor_id_optional(request: Request) -> Optional[str]:
    """Return the forwarded user id, or None for anonymous requests."""
    user_id = request.headers.get(settings.USER_ID_HEADER)
    if user_id is None:
        return None
    user_id = user_id.strip()
    return user_id or None


async def get_actor_id(request: Request) -> str:
    """Return the forwarded user id or reject the request with 401."""
    user_id = await get_actor_id_optional(request)
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated: user id missing",
        )
    return user_id
