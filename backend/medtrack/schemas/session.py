from pydantic import BaseModel
from datetime import datetime
from typing import Optional
from medtrack.schemas.user import UserResponse


class LoginRequest(BaseModel):
    email: str
    password: str


class TokenRequest(BaseModel):
    session_token: Optional[str] = None


class SessionResponse(BaseModel):
    session_token: str
    token_type: str = "bearer"
    user_id: int
    issued_at: datetime
    expires_at: datetime
    user: Optional[UserResponse] = None


class ValidateResponse(BaseModel):
    valid: bool = True
    user: UserResponse
    expires_at: datetime
