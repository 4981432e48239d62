from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from medtrack.database import get_db
from medtrack.auth import get_current_user, require_actor
from medtrack.models.appointment import Appointment, AppointmentStatus
from medtrack.schemas.appointment import (
    AppointmentCreate,
    AppointmentListResponse,
    AppointmentResponse,
    DoctorNoteUpdate,
)
from medtrack.services.appointment_service import appointment_service
from medtrack.services.directory_service import UserRecord, directory_service
from medtrack.services.session_service import UserPrincipal

router = APIRouter()


async def _enrich(appointments: list[Appointment], db: AsyncSession) -> list[AppointmentResponse]:
    """Attach doctor and patient display data from the directory."""
    users: dict[int, UserRecord] = {}

    async def lookup(user_id: int) -> UserRecord:
        if user_id not in users:
            users[user_id] = await directory_service.resolve_user(user_id, db)
        return users[user_id]

    responses = []
    for a in appointments:
        doctor = await lookup(a.doctor_id)
        patient = await lookup(a.patient_id)
        response = AppointmentResponse.model_validate(a)
        response.doctor_name = doctor.full_name
        response.doctor_specialty = doctor.specialty.value if doctor.specialty else None
        response.patient_name = patient.full_name
        responses.append(response)
    return responses


async def _single(appointment: Appointment, db: AsyncSession) -> AppointmentResponse:
    return (await _enrich([appointment], db))[0]


@router.post("", response_model=AppointmentResponse, status_code=201)
async def create_appointment(
    data: AppointmentCreate,
    db: AsyncSession = Depends(get_db),
    current_user: UserPrincipal = Depends(get_current_user),
):
    patient_id = data.patient_id if data.patient_id is not None else current_user.user_id
    require_actor(current_user, patient_id)
    appointment = await appointment_service.create(
        doctor_id=data.doctor_id,
        patient_id=patient_id,
        scheduled_at=data.scheduled_at,
        patient_note=data.patient_note,
        acting_user_id=current_user.user_id,
        db=db,
    )
    return await _single(appointment, db)


@router.get("/patient/{patient_id}", response_model=AppointmentListResponse)
async def list_patient_appointments(
    patient_id: int,
    status: Optional[AppointmentStatus] = Query(None),
    db: AsyncSession = Depends(get_db),
    current_user: UserPrincipal = Depends(get_current_user),
):
    require_actor(current_user, patient_id)
    appointments = await appointment_service.list_for_patient(patient_id, db, status=status)
    return AppointmentListResponse(appointments=await _enrich(appointments, db), total=len(appointments))


@router.get("/doctor/{doctor_id}", response_model=AppointmentListResponse)
async def list_doctor_appointments(
    doctor_id: int,
    status: Optional[AppointmentStatus] = Query(None),
    db: AsyncSession = Depends(get_db),
    current_user: UserPrincipal = Depends(get_current_user),
):
    require_actor(current_user, doctor_id)
    appointments = await appointment_service.list_for_doctor(doctor_id, db, status=status)
    return AppointmentListResponse(appointments=await _enrich(appointments, db), total=len(appointments))


@router.get("/{appointment_id}", response_model=AppointmentResponse)
async def get_appointment(
    appointment_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: UserPrincipal = Depends(get_current_user),
):
    appointment = await appointment_service.get(appointment_id, current_user.user_id, db)
    return await _single(appointment, db)


@router.post("/{appointment_id}/approve", response_model=AppointmentResponse)
async def approve_appointment(
    appointment_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: UserPrincipal = Depends(get_current_user),
):
    appointment = await appointment_service.approve(appointment_id, current_user.user_id, db)
    return await _single(appointment, db)


@router.post("/{appointment_id}/reject", response_model=AppointmentResponse)
async def reject_appointment(
    appointment_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: UserPrincipal = Depends(get_current_user),
):
    appointment = await appointment_service.reject(appointment_id, current_user.user_id, db)
    return await _single(appointment, db)


@router.post("/{appointment_id}/cancel", response_model=AppointmentResponse)
async def cancel_appointment(
    appointment_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: UserPrincipal = Depends(get_current_user),
):
    appointment = await appointment_service.cancel(appointment_id, current_user.user_id, db)
    return await _single(appointment, db)


@router.put("/{appointment_id}/doctor-note", response_model=AppointmentResponse)
async def set_doctor_note(
    appointment_id: int,
    data: DoctorNoteUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: UserPrincipal = Depends(get_current_user),
):
    appointment = await appointment_service.set_doctor_note(
        appointment_id, current_user.user_id, data.note, db
    )
    return await _single(appointment, db)
