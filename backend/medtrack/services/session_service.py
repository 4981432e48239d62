"""
Session store: issues, validates, refreshes and revokes session tokens.

Tokens are HS256-signed JWTs carrying the user id and a random ``jti``. The
signature only filters forged tokens early; validity is decided by the
``user_sessions`` row the ``jti`` points at, so logout takes effect
immediately. Every mutation is a single conditional UPDATE, which keeps a
concurrent ``validate`` from ever seeing a half-written record.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from jose import jwt, JWTError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from medtrack.config import Settings, get_settings
from medtrack.exceptions import NotFoundError, SessionExpiredError, TransientError
from medtrack.models.session import UserSession
from medtrack.models.user import Role, Specialty
from medtrack.services.directory_service import Directory, directory_service
from medtrack.timeutils import utcnow

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
REFRESH_ATTEMPTS = 3


@dataclass(frozen=True)
class SessionInfo:
    token: str
    user_id: int
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class UserPrincipal:
    """Resolved identity attached to each authenticated request."""
    user_id: int
    email: str
    role: Role
    display_name: str
    specialty: Optional[Specialty]
    expires_at: datetime

    @property
    def is_doctor(self) -> bool:
        return self.role == Role.DOCTOR

    @property
    def is_patient(self) -> bool:
        return self.role == Role.PATIENT


class SessionService:
    def __init__(self, directory: Optional[Directory] = None, settings: Optional[Settings] = None):
        self.directory = directory or directory_service
        self.settings = settings or get_settings()

    @property
    def ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.session_ttl_minutes)

    def _encode(self, user_id: int, jti: str) -> str:
        payload = {"sub": str(user_id), "jti": jti}
        return jwt.encode(payload, self.settings.jwt_secret_key, algorithm=ALGORITHM)

    def _decode(self, token: Optional[str]) -> tuple[int, str]:
        """Return (user_id, jti) for a well-formed token signed by us."""
        if not token:
            raise SessionExpiredError("Missing session token")
        try:
            payload = jwt.decode(token, self.settings.jwt_secret_key, algorithms=[ALGORITHM])
            return int(payload["sub"]), str(payload["jti"])
        except (JWTError, KeyError, ValueError, TypeError):
            raise SessionExpiredError("Invalid or expired session")

    async def _load(self, jti: str, db: AsyncSession) -> Optional[UserSession]:
        return await db.scalar(
            select(UserSession)
            .where(UserSession.jti == jti)
            .execution_options(populate_existing=True)
        )

    @staticmethod
    def _is_live(row: Optional[UserSession], user_id: int, now: datetime) -> bool:
        return (
            row is not None
            and row.is_active
            and row.user_id == user_id
            and now < row.expires_at
        )

    async def login(
        self,
        email: str,
        password: str,
        db: AsyncSession,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> SessionInfo:
        user_id = await self.directory.verify_credentials(email, password, db)
        now = utcnow()

        await self._deactivate_expired(db, now)
        if self.settings.single_session_per_user:
            await db.execute(
                update(UserSession)
                .where(UserSession.user_id == user_id, UserSession.is_active.is_(True))
                .values(is_active=False)
                .execution_options(synchronize_session=False)
            )

        jti = secrets.token_urlsafe(32)
        expires_at = now + self.ttl
        session = UserSession(
            jti=jti,
            user_id=user_id,
            issued_at=now,
            expires_at=expires_at,
            is_active=True,
            user_agent=(user_agent or "")[:300] or None,
            ip_address=ip_address,
        )
        db.add(session)
        await db.commit()
        logger.info(f"Session opened for user_id={user_id}")
        return SessionInfo(
            token=self._encode(user_id, jti),
            user_id=user_id,
            issued_at=now,
            expires_at=expires_at,
        )

    async def validate(self, token: Optional[str], db: AsyncSession) -> UserPrincipal:
        user_id, jti = self._decode(token)
        row = await self._load(jti, db)
        if not self._is_live(row, user_id, utcnow()):
            raise SessionExpiredError("Invalid or expired session")
        try:
            user = await self.directory.resolve_user(user_id, db)
        except NotFoundError:
            raise SessionExpiredError("Session user no longer exists")
        return UserPrincipal(
            user_id=user.id,
            email=user.email,
            role=user.role,
            display_name=user.full_name,
            specialty=user.specialty,
            expires_at=row.expires_at,
        )

    async def refresh(self, token: Optional[str], db: AsyncSession) -> SessionInfo:
        user_id, jti = self._decode(token)

        for _ in range(REFRESH_ATTEMPTS):
            row = await self._load(jti, db)
            now = utcnow()
            if not self._is_live(row, user_id, now):
                raise SessionExpiredError("Invalid or expired session")

            observed = row.expires_at
            issued_at = row.issued_at
            new_expires = max(now + self.ttl, observed + timedelta(microseconds=1))
            new_jti = secrets.token_urlsafe(32) if self.settings.session_rotate_on_refresh else jti

            # Compare-and-swap on the expiry we just read
            result = await db.execute(
                update(UserSession)
                .where(
                    UserSession.id == row.id,
                    UserSession.is_active.is_(True),
                    UserSession.expires_at == observed,
                )
                .values(expires_at=new_expires, jti=new_jti)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                await db.commit()
                logger.debug(f"Session refreshed for user_id={user_id}")
                return SessionInfo(
                    token=self._encode(user_id, new_jti) if new_jti != jti else token,
                    user_id=user_id,
                    issued_at=issued_at,
                    expires_at=new_expires,
                )
            await db.rollback()

        raise TransientError("Session is being refreshed concurrently, try again")

    async def logout(self, token: Optional[str], db: AsyncSession) -> None:
        try:
            user_id, jti = self._decode(token)
        except SessionExpiredError:
            return
        result = await db.execute(
            update(UserSession)
            .where(UserSession.jti == jti, UserSession.is_active.is_(True))
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if result.rowcount:
            logger.info(f"Session closed for user_id={user_id}")

    async def logout_all(self, user_id: int, db: AsyncSession) -> int:
        result = await db.execute(
            update(UserSession)
            .where(UserSession.user_id == user_id, UserSession.is_active.is_(True))
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        logger.info(f"Closed {result.rowcount} session(s) for user_id={user_id}")
        return result.rowcount

    async def purge_expired(self, db: AsyncSession) -> int:
        count = await self._deactivate_expired(db, utcnow())
        await db.commit()
        return count

    async def _deactivate_expired(self, db: AsyncSession, now: datetime) -> int:
        result = await db.execute(
            update(UserSession)
            .where(UserSession.is_active.is_(True), UserSession.expires_at <= now)
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount


session_service = SessionService()
