from pydantic import BaseModel
from datetime import datetime
from typing import Optional


class AppointmentCreate(BaseModel):
    doctor_id: int
    scheduled_at: datetime
    # Defaults to the session's user
    patient_id: Optional[int] = None
    patient_note: Optional[str] = None


class DoctorNoteUpdate(BaseModel):
    note: Optional[str] = None


class AppointmentResponse(BaseModel):
    id: int
    doctor_id: int
    patient_id: int
    scheduled_at: datetime
    status: str
    patient_note: Optional[str] = None
    doctor_note: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    # Directory enrichment
    doctor_name: Optional[str] = None
    doctor_specialty: Optional[str] = None
    patient_name: Optional[str] = None

    class Config:
        from_attributes = True


class AppointmentListResponse(BaseModel):
    appointments: list[AppointmentResponse]
    total: int
