from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from medtrack.database import get_db
from medtrack.schemas.user import PatientRegister, DoctorRegister, PublicUserResponse, UserResponse
from medtrack.services.directory_service import UserRecord, directory_service
from medtrack.services.session_service import UserPrincipal
from medtrack.auth import get_current_user

router = APIRouter()


def user_response(user: UserRecord) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        role=user.role.value,
        name=user.full_name,
        age=user.age(),
        specialty=user.specialty.value if user.specialty else None,
        phone_no=user.phone_no,
        birth_date=user.birth_date,
    )


@router.post("/register/patient", response_model=UserResponse, status_code=201)
async def register_patient(data: PatientRegister, db: AsyncSession = Depends(get_db)):
    user = await directory_service.register_patient(
        email=data.email,
        password=data.password,
        name=data.name,
        surname=data.surname,
        birth_date=data.birth_date,
        phone_no=data.phone_no,
        db=db,
    )
    return user_response(user)


@router.post("/register/doctor", response_model=UserResponse, status_code=201)
async def register_doctor(data: DoctorRegister, db: AsyncSession = Depends(get_db)):
    user = await directory_service.register_doctor(
        email=data.email,
        password=data.password,
        name=data.name,
        surname=data.surname,
        birth_date=data.birth_date,
        specialty=data.specialty,
        phone_no=data.phone_no,
        db=db,
    )
    return user_response(user)


@router.get("/me", response_model=UserResponse)
async def get_me(
    db: AsyncSession = Depends(get_db),
    current_user: UserPrincipal = Depends(get_current_user),
):
    return user_response(await directory_service.resolve_user(current_user.user_id, db))


@router.get("/{user_id}", response_model=PublicUserResponse)
async def get_user(
    user_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: UserPrincipal = Depends(get_current_user),
):
    # Contact details and birth date are only served through /me
    user = await directory_service.resolve_user(user_id, db)
    return PublicUserResponse(
        id=user.id,
        name=user.full_name,
        role=user.role.value,
        specialty=user.specialty.value if user.specialty else None,
    )
