"""
Auth module: the get_current_user FastAPI dependency and actor checks.

Every request that touches an appointment must carry a session token in the
Authorization header. The token is validated against the session store on
each request; there is no anonymous principal.
"""

from typing import Optional
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from medtrack.database import get_db
from medtrack.exceptions import AuthorizationError
from medtrack.services.session_service import UserPrincipal, session_service


def bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    return auth_header[7:].strip() or None


async def get_current_user(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> UserPrincipal:
    """
    FastAPI dependency. Resolves the Bearer token to a principal or raises
    SessionExpiredError (rendered as 401 by the app's error handler).
    """
    return await session_service.validate(bearer_token(request), db)


def require_actor(principal: UserPrincipal, acting_user_id: int) -> None:
    """The session's user must be the user the operation acts as."""
    if principal.user_id != acting_user_id:
        raise AuthorizationError(
            "Session does not belong to the acting user",
            {"acting_user_id": acting_user_id},
        )
