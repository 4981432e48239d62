"""
Directory lookup: the user registry the scheduling core consults.

The core only ever sees ``UserRecord`` snapshots and user ids. Password hashes
stay inside this module; ``verify_credentials`` is the single place a password
is compared.
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional, Protocol

from passlib.context import CryptContext
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from medtrack.config import Settings, get_settings
from medtrack.exceptions import AuthenticationError, AuthorizationError, NotFoundError, ValidationError
from medtrack.models.user import Role, Specialty, User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserRecord:
    """Read-only view of a registered user, without credential material."""
    id: int
    email: str
    role: Role
    name: str
    surname: str
    birth_date: date
    phone_no: Optional[str] = None
    specialty: Optional[Specialty] = None
    availability: bool = True

    @property
    def full_name(self) -> str:
        return f"{self.name} {self.surname}"

    @property
    def is_doctor(self) -> bool:
        return self.role == Role.DOCTOR

    @property
    def is_patient(self) -> bool:
        return self.role == Role.PATIENT

    def age(self, today: Optional[date] = None) -> int:
        return age_of(self.birth_date, today)


@dataclass(frozen=True)
class DoctorSummary:
    id: int
    name: str
    specialty: Specialty
    availability: bool


class Directory(Protocol):
    """What the scheduler and session store need from the user registry."""

    async def resolve_user(self, user_id: int, db: AsyncSession) -> UserRecord: ...

    async def verify_credentials(self, email: str, password: str, db: AsyncSession) -> int: ...

    async def doctors_by_specialty(self, specialty, db: AsyncSession) -> list[DoctorSummary]: ...


def age_of(birth_date: date, today: Optional[date] = None) -> int:
    today = today or date.today()
    had_birthday = (today.month, today.day) >= (birth_date.month, birth_date.day)
    return today.year - birth_date.year - (0 if had_birthday else 1)


def parse_specialty(value) -> Specialty:
    if isinstance(value, Specialty):
        return value
    try:
        return Specialty(value)
    except ValueError:
        allowed = ", ".join(s.value for s in Specialty)
        raise ValidationError(
            f"Unknown specialty '{value}'",
            {"field": "specialty", "allowed": allowed},
        )


def _to_record(user: User) -> UserRecord:
    return UserRecord(
        id=user.id,
        email=user.email,
        role=Role(user.role),
        name=user.name,
        surname=user.surname,
        birth_date=user.birth_date,
        phone_no=user.phone_no,
        specialty=Specialty(user.specialty) if user.specialty else None,
        availability=bool(user.availability),
    )


class DirectoryService:
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.pwd_context = CryptContext(schemes=self.settings.password_scheme_list, deprecated="auto")

    async def resolve_user(self, user_id: int, db: AsyncSession) -> UserRecord:
        user = await db.get(User, user_id, populate_existing=True)
        if user is None:
            raise NotFoundError(f"User {user_id} not found", {"user_id": user_id})
        return _to_record(user)

    async def find_by_email(self, email: str, db: AsyncSession) -> Optional[UserRecord]:
        user = await db.scalar(select(User).where(User.email == _normalize_email(email)))
        return _to_record(user) if user else None

    async def verify_credentials(self, email: str, password: str, db: AsyncSession) -> int:
        user = await db.scalar(select(User).where(User.email == _normalize_email(email or "")))
        if user is None:
            # Keep the timing of unknown emails close to a real hash check
            self.pwd_context.dummy_verify()
            raise AuthenticationError("Invalid email or password")
        if not self.pwd_context.verify(password or "", user.password_hash):
            raise AuthenticationError("Invalid email or password")
        return user.id

    async def doctors_by_specialty(self, specialty, db: AsyncSession) -> list[DoctorSummary]:
        specialty = parse_specialty(specialty)
        result = await db.execute(
            select(User)
            .where(User.role == Role.DOCTOR.value, User.specialty == specialty.value)
            .order_by(User.surname, User.name, User.id)
        )
        return [_to_summary(u) for u in result.scalars().all()]

    async def list_doctors(self, db: AsyncSession) -> list[DoctorSummary]:
        result = await db.execute(
            select(User).where(User.role == Role.DOCTOR.value).order_by(User.surname, User.name, User.id)
        )
        return [_to_summary(u) for u in result.scalars().all()]

    async def set_availability(
        self, doctor_id: int, available: bool, db: AsyncSession, acting_user_id: Optional[int] = None
    ) -> DoctorSummary:
        """Open or close a doctor's calendar for new bookings. Only the doctor may do it."""
        if acting_user_id is not None and acting_user_id != doctor_id:
            raise AuthorizationError(
                "Doctors can only change their own availability", {"doctor_id": doctor_id}
            )
        record = await self.resolve_user(doctor_id, db)
        if not record.is_doctor:
            raise NotFoundError(f"Doctor {doctor_id} not found", {"doctor_id": doctor_id})

        await db.execute(
            update(User)
            .where(User.id == doctor_id)
            .values(availability=bool(available))
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        logger.info(f"Doctor {doctor_id} availability set to {bool(available)}")
        return _to_summary(await db.get(User, doctor_id, populate_existing=True))

    async def register_patient(
        self,
        email: str,
        password: str,
        name: str,
        surname: str,
        birth_date: date,
        db: AsyncSession,
        phone_no: Optional[str] = None,
    ) -> UserRecord:
        return await self._register(
            db,
            role=Role.PATIENT,
            specialty=None,
            email=email,
            password=password,
            name=name,
            surname=surname,
            birth_date=birth_date,
            phone_no=phone_no,
        )

    async def register_doctor(
        self,
        email: str,
        password: str,
        name: str,
        surname: str,
        birth_date: date,
        specialty,
        db: AsyncSession,
        phone_no: Optional[str] = None,
    ) -> UserRecord:
        return await self._register(
            db,
            role=Role.DOCTOR,
            specialty=parse_specialty(specialty),
            email=email,
            password=password,
            name=name,
            surname=surname,
            birth_date=birth_date,
            phone_no=phone_no,
        )

    async def _register(
        self,
        db: AsyncSession,
        role: Role,
        specialty: Optional[Specialty],
        email: str,
        password: str,
        name: str,
        surname: str,
        birth_date: date,
        phone_no: Optional[str],
    ) -> UserRecord:
        email = _normalize_email(email or "")
        if "@" not in email:
            raise ValidationError("A valid email address is required", {"field": "email"})
        if not password:
            raise ValidationError("Password is required", {"field": "password"})
        if not (name or "").strip() or not (surname or "").strip():
            raise ValidationError("Name and surname are required", {"field": "name"})
        if age_of(birth_date) < self.settings.min_user_age:
            raise ValidationError(
                f"Users must be at least {self.settings.min_user_age} years old",
                {"field": "birth_date"},
            )
        if await db.scalar(select(User.id).where(User.email == email)) is not None:
            raise ValidationError(f"User already exists: {email}", {"field": "email"})

        user = User(
            email=email,
            password_hash=self.pwd_context.hash(password),
            role=role.value,
            name=name.strip(),
            surname=surname.strip(),
            birth_date=birth_date,
            phone_no=phone_no,
            specialty=specialty.value if specialty else None,
            availability=True,
        )
        db.add(user)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise ValidationError(f"User already exists: {email}", {"field": "email"})
        await db.refresh(user)
        logger.info(f"Registered {role.value.lower()} user_id={user.id}")
        return _to_record(user)


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def _to_summary(user: User) -> DoctorSummary:
    return DoctorSummary(
        id=user.id,
        name=f"{user.name} {user.surname}",
        specialty=Specialty(user.specialty),
        availability=bool(user.availability),
    )


directory_service = DirectoryService()
