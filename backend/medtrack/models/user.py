import enum
from sqlalchemy import Column, Integer, String, Date, Boolean, DateTime
from medtrack.database import Base
from medtrack.timeutils import utcnow


class Role(str, enum.Enum):
    PATIENT = "PATIENT"
    DOCTOR = "DOCTOR"


class Specialty(str, enum.Enum):
    DERMATOLOGY = "Dermatology"
    CARDIOLOGY = "Cardiology"
    EYE = "Eye"
    GENERAL_SURGERY = "General_Surgery"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(200), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False)  # "PATIENT" | "DOCTOR"
    name = Column(String(100), nullable=False)
    surname = Column(String(100), nullable=False)
    birth_date = Column(Date, nullable=False)
    phone_no = Column(String(20))
    specialty = Column(String(50), index=True)  # doctors only
    availability = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
