from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from medtrack.database import get_db
from medtrack.auth import get_current_user, require_actor
from medtrack.models.user import Specialty
from medtrack.schemas.user import AvailabilityUpdate, DoctorListResponse, DoctorSummaryResponse
from medtrack.services.directory_service import DoctorSummary, directory_service
from medtrack.services.session_service import UserPrincipal

router = APIRouter()


def _summary(doctor: DoctorSummary) -> DoctorSummaryResponse:
    return DoctorSummaryResponse(
        id=doctor.id,
        name=doctor.name,
        specialty=doctor.specialty.value,
        availability=doctor.availability,
    )


@router.get("", response_model=DoctorListResponse)
async def list_doctors(
    specialty: Optional[str] = Query(None, description="Dermatology, Cardiology, Eye or General_Surgery"),
    db: AsyncSession = Depends(get_db),
):
    if specialty:
        doctors = await directory_service.doctors_by_specialty(specialty, db)
    else:
        doctors = await directory_service.list_doctors(db)
    return DoctorListResponse(doctors=[_summary(d) for d in doctors], total=len(doctors))


@router.get("/specialties")
async def list_specialties():
    return {"specialties": [s.value for s in Specialty]}


@router.put("/{doctor_id}/availability", response_model=DoctorSummaryResponse)
async def set_availability(
    doctor_id: int,
    data: AvailabilityUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: UserPrincipal = Depends(get_current_user),
):
    require_actor(current_user, doctor_id)
    doctor = await directory_service.set_availability(
        doctor_id, data.available, db, acting_user_id=current_user.user_id
    )
    return _summary(doctor)
