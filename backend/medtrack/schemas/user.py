from pydantic import BaseModel
from datetime import date
from typing import Optional


class PatientRegister(BaseModel):
    email: str
    password: str
    name: str
    surname: str
    birth_date: date
    phone_no: Optional[str] = None


class DoctorRegister(PatientRegister):
    specialty: str


class UserResponse(BaseModel):
    """Public profile; never carries credential material."""
    id: int
    email: str
    role: str
    name: str
    age: int
    specialty: Optional[str] = None
    phone_no: Optional[str] = None
    birth_date: Optional[date] = None


class DoctorSummaryResponse(BaseModel):
    id: int
    name: str
    specialty: str
    availability: bool


class DoctorListResponse(BaseModel):
    doctors: list[DoctorSummaryResponse]
    total: int


class PublicUserResponse(BaseModel):
    """What any signed-in user may see about someone else."""
    id: int
    name: str
    role: str
    specialty: Optional[str] = None


class AvailabilityUpdate(BaseModel):
    available: bool
