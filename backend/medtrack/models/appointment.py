import enum
from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Index, text
from medtrack.database import Base
from medtrack.timeutils import utcnow


class AppointmentStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"


# Statuses that occupy a doctor's slot
ACTIVE_STATUSES = (AppointmentStatus.PENDING.value, AppointmentStatus.CONFIRMED.value)

_ACTIVE_SLOT = text("status IN ('PENDING', 'CONFIRMED')")


class Appointment(Base):
    __tablename__ = "appointments"

    id           = Column(Integer, primary_key=True, index=True)
    doctor_id    = Column(Integer, ForeignKey("users.id"), nullable=False)
    patient_id   = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    scheduled_at = Column(DateTime, nullable=False)
    status       = Column(String(20), nullable=False, default=AppointmentStatus.PENDING.value)
    patient_note = Column(Text)
    doctor_note  = Column(Text)
    created_at   = Column(DateTime, default=utcnow, nullable=False)
    updated_at   = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_appointments_doctor_slot_status", "doctor_id", "scheduled_at", "status"),
        # At most one live appointment per doctor and instant; cancelled rows are exempt
        Index(
            "uq_appointments_active_slot",
            "doctor_id",
            "scheduled_at",
            unique=True,
            sqlite_where=_ACTIVE_SLOT,
            postgresql_where=_ACTIVE_SLOT,
        ),
    )
