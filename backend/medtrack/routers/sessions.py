from typing import Optional
from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from medtrack.database import get_db
from medtrack.auth import bearer_token, get_current_user
from medtrack.schemas.session import LoginRequest, TokenRequest, SessionResponse, ValidateResponse
from medtrack.services.directory_service import directory_service
from medtrack.services.session_service import UserPrincipal, session_service
from medtrack.routers.users import user_response

router = APIRouter()


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def _token(request: Request, body: Optional[TokenRequest]) -> Optional[str]:
    if body and body.session_token:
        return body.session_token
    return bearer_token(request)


@router.post("/login", response_model=SessionResponse)
async def login(data: LoginRequest, request: Request, db: AsyncSession = Depends(get_db)):
    session = await session_service.login(
        email=data.email,
        password=data.password,
        user_agent=request.headers.get("User-Agent"),
        ip_address=_client_ip(request),
        db=db,
    )
    user = await directory_service.resolve_user(session.user_id, db)
    return SessionResponse(
        session_token=session.token,
        user_id=session.user_id,
        issued_at=session.issued_at,
        expires_at=session.expires_at,
        user=user_response(user),
    )


@router.post("/validate", response_model=ValidateResponse)
async def validate(
    request: Request,
    body: Optional[TokenRequest] = None,
    db: AsyncSession = Depends(get_db),
):
    principal = await session_service.validate(_token(request, body), db)
    user = await directory_service.resolve_user(principal.user_id, db)
    return ValidateResponse(user=user_response(user), expires_at=principal.expires_at)


@router.post("/refresh", response_model=SessionResponse)
async def refresh(
    request: Request,
    body: Optional[TokenRequest] = None,
    db: AsyncSession = Depends(get_db),
):
    session = await session_service.refresh(_token(request, body), db)
    return SessionResponse(
        session_token=session.token,
        user_id=session.user_id,
        issued_at=session.issued_at,
        expires_at=session.expires_at,
    )


@router.post("/logout")
async def logout(
    request: Request,
    body: Optional[TokenRequest] = None,
    db: AsyncSession = Depends(get_db),
):
    await session_service.logout(_token(request, body), db)
    return {"logged_out": True}


@router.post("/logout-all")
async def logout_all(
    db: AsyncSession = Depends(get_db),
    current_user: UserPrincipal = Depends(get_current_user),
):
    closed = await session_service.logout_all(current_user.user_id, db)
    return {"logged_out": True, "sessions_closed": closed}
