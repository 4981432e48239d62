"""
Appointment scheduler.

Slot uniqueness is enforced by the storage layer: a partial unique index on
(doctor_id, scheduled_at) covering PENDING and CONFIRMED rows. The pre-check in
``_insert`` only produces a friendlier failure in the common case; the index is
what makes N concurrent requests for one slot end in exactly one success.

Status transitions are conditional UPDATEs keyed by id and the expected source
status, so a losing writer changes nothing and gets InvalidTransitionError.
"""

import asyncio
import logging
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession

from medtrack.config import Settings, get_settings
from medtrack.exceptions import (
    AuthorizationError,
    InvalidTransitionError,
    NotFoundError,
    SlotConflictError,
    TransientError,
    ValidationError,
)
from medtrack.models.appointment import ACTIVE_STATUSES, Appointment, AppointmentStatus
from medtrack.models.user import Role
from medtrack.services.directory_service import Directory, UserRecord, directory_service
from medtrack.timeutils import to_utc_naive, utcnow

logger = logging.getLogger(__name__)

# Infrastructure failures that may be retried inside create()
TRANSIENT_ERRORS = (OperationalError, PoolTimeoutError, asyncio.TimeoutError)


class AppointmentService:
    def __init__(self, directory: Optional[Directory] = None, settings: Optional[Settings] = None):
        self.directory = directory or directory_service
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------ create

    async def create(
        self,
        doctor_id: int,
        patient_id: int,
        scheduled_at: datetime,
        patient_note: Optional[str],
        db: AsyncSession,
        acting_user_id: Optional[int] = None,
    ) -> Appointment:
        if acting_user_id is not None and acting_user_id != patient_id:
            raise AuthorizationError(
                "Appointments can only be requested by the patient they are for",
                {"patient_id": patient_id},
            )

        scheduled_at = self._normalize_slot(scheduled_at)
        patient_note = self._clean_note(patient_note, "patient_note")

        doctor = await self._resolve(doctor_id, Role.DOCTOR, db)
        await self._resolve(patient_id, Role.PATIENT, db)
        if not doctor.availability:
            raise ValidationError(
                f"Dr. {doctor.full_name} is not accepting appointments",
                {"doctor_id": doctor_id},
            )

        attempts = max(1, self.settings.create_max_retries)
        # Id of the row an earlier attempt flushed, in case its commit landed
        flushed_id = None
        for attempt in range(1, attempts + 1):
            try:
                # The timeout bounds the statements only; commit runs outside it
                appointment = await asyncio.wait_for(
                    self._insert(
                        doctor_id, patient_id, scheduled_at, patient_note, db,
                        flushed_id=flushed_id,
                    ),
                    timeout=self.settings.storage_timeout_seconds,
                )
                flushed_id = appointment.id
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise self._conflict(doctor_id, scheduled_at)
            except TRANSIENT_ERRORS as e:
                await db.rollback()
                logger.warning(
                    f"Transient storage failure creating appointment "
                    f"(attempt {attempt}/{attempts}): {e!r}"
                )
                if attempt < attempts:
                    await asyncio.sleep(self.settings.create_retry_backoff_seconds * attempt)
                continue

            logger.info(
                f"Appointment {appointment.id} created: doctor_id={doctor_id} "
                f"patient_id={patient_id} at {scheduled_at.isoformat()}"
            )
            return self._detach(appointment, db)

        raise TransientError(
            "Could not store the appointment, please retry",
            {"attempts": attempts},
        )

    async def _insert(
        self,
        doctor_id: int,
        patient_id: int,
        scheduled_at: datetime,
        patient_note: Optional[str],
        db: AsyncSession,
        flushed_id: Optional[int] = None,
    ) -> Appointment:
        taken = await db.scalar(
            select(Appointment)
            .where(
                Appointment.doctor_id == doctor_id,
                Appointment.scheduled_at == scheduled_at,
                Appointment.status.in_(ACTIVE_STATUSES),
            )
            .execution_options(populate_existing=True)
        )
        if taken is not None:
            # A previous attempt may have committed before its acknowledgement was lost
            if flushed_id is not None and taken.id == flushed_id and taken.patient_id == patient_id:
                logger.info(f"Appointment {taken.id} already stored by an earlier attempt")
                return taken
            raise self._conflict(doctor_id, scheduled_at)

        now = utcnow()
        appointment = Appointment(
            doctor_id=doctor_id,
            patient_id=patient_id,
            scheduled_at=scheduled_at,
            status=AppointmentStatus.PENDING.value,
            patient_note=patient_note,
            created_at=now,
            updated_at=now,
        )
        db.add(appointment)
        await db.flush()
        return appointment

    @staticmethod
    def _conflict(doctor_id: int, scheduled_at: datetime) -> SlotConflictError:
        logger.info(f"Slot conflict for doctor_id={doctor_id} at {scheduled_at.isoformat()}")
        return SlotConflictError(
            "The doctor already has an appointment at this time",
            {"doctor_id": doctor_id, "scheduled_at": scheduled_at.isoformat()},
        )

    # ------------------------------------------------------------- transitions

    async def approve(self, appointment_id: int, acting_doctor_id: int, db: AsyncSession) -> Appointment:
        appointment = await self._get_owned_by_doctor(appointment_id, acting_doctor_id, db)
        return await self._transition(
            appointment.id,
            (AppointmentStatus.PENDING.value,),
            AppointmentStatus.CONFIRMED,
            "approve",
            db,
        )

    async def reject(self, appointment_id: int, acting_doctor_id: int, db: AsyncSession) -> Appointment:
        appointment = await self._get_owned_by_doctor(appointment_id, acting_doctor_id, db)
        return await self._transition(
            appointment.id,
            (AppointmentStatus.PENDING.value,),
            AppointmentStatus.CANCELLED,
            "reject",
            db,
        )

    async def cancel(self, appointment_id: int, acting_user_id: int, db: AsyncSession) -> Appointment:
        appointment = await self._get(appointment_id, db)
        if acting_user_id not in (appointment.patient_id, appointment.doctor_id):
            raise AuthorizationError(
                "Only the patient or the doctor of an appointment can cancel it",
                {"appointment_id": appointment_id},
            )
        # Cancelling twice is a no-op so clients can retry safely
        if appointment.status == AppointmentStatus.CANCELLED.value:
            return appointment
        try:
            return await self._transition(
                appointment_id, ACTIVE_STATUSES, AppointmentStatus.CANCELLED, "cancel", db
            )
        except InvalidTransitionError:
            current = await self._get(appointment_id, db)
            if current.status == AppointmentStatus.CANCELLED.value:
                return current
            raise

    async def set_doctor_note(
        self,
        appointment_id: int,
        acting_doctor_id: int,
        note: Optional[str],
        db: AsyncSession,
    ) -> Appointment:
        await self._get_owned_by_doctor(appointment_id, acting_doctor_id, db)
        note = self._clean_note(note, "doctor_note")
        await db.execute(
            update(Appointment)
            .where(Appointment.id == appointment_id, Appointment.doctor_id == acting_doctor_id)
            .values(doctor_note=note, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        logger.info(f"Doctor note updated on appointment {appointment_id}")
        return await self._get(appointment_id, db)

    async def _transition(
        self,
        appointment_id: int,
        expected: Iterable[str],
        target: AppointmentStatus,
        action: str,
        db: AsyncSession,
    ) -> Appointment:
        result = await db.execute(
            update(Appointment)
            .where(Appointment.id == appointment_id, Appointment.status.in_(tuple(expected)))
            .values(status=target.value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.rollback()
            current = await self._get(appointment_id, db)
            raise InvalidTransitionError(
                f"Cannot {action} an appointment that is {current.status}",
                {"appointment_id": appointment_id, "status": current.status, "action": action},
            )
        await db.commit()
        logger.info(f"Appointment {appointment_id}: {action} -> {target.value}")
        return await self._get(appointment_id, db)

    # ------------------------------------------------------------------ reads

    async def get(self, appointment_id: int, acting_user_id: int, db: AsyncSession) -> Appointment:
        appointment = await self._get(appointment_id, db)
        if acting_user_id not in (appointment.patient_id, appointment.doctor_id):
            raise AuthorizationError(
                "This appointment belongs to another patient and doctor",
                {"appointment_id": appointment_id},
            )
        return appointment

    async def list_for_patient(
        self, patient_id: int, db: AsyncSession, status: Optional[AppointmentStatus] = None
    ) -> list[Appointment]:
        await self._require_role(patient_id, Role.PATIENT, db)
        return await self._list(Appointment.patient_id == patient_id, status, db)

    async def list_for_doctor(
        self, doctor_id: int, db: AsyncSession, status: Optional[AppointmentStatus] = None
    ) -> list[Appointment]:
        await self._require_role(doctor_id, Role.DOCTOR, db)
        return await self._list(Appointment.doctor_id == doctor_id, status, db)

    async def _list(self, owner_clause, status: Optional[AppointmentStatus], db: AsyncSession) -> list[Appointment]:
        query = select(Appointment).where(owner_clause)
        if status is not None:
            query = query.where(Appointment.status == AppointmentStatus(status).value)
        query = query.order_by(Appointment.scheduled_at.asc(), Appointment.id.asc())
        result = await db.execute(query.execution_options(populate_existing=True))
        return [self._detach(a, db) for a in result.scalars().all()]

    # ---------------------------------------------------------------- helpers

    async def _get(self, appointment_id: int, db: AsyncSession) -> Appointment:
        appointment = await db.scalar(
            select(Appointment)
            .where(Appointment.id == appointment_id)
            .execution_options(populate_existing=True)
        )
        if appointment is None:
            raise NotFoundError(
                f"Appointment {appointment_id} not found", {"appointment_id": appointment_id}
            )
        return self._detach(appointment, db)

    @staticmethod
    def _detach(appointment: Appointment, db: AsyncSession) -> Appointment:
        """
        Hand the caller a fully loaded snapshot that is no longer tracked, so a
        later rollback on this session cannot expire it under them.
        """
        db.expunge(appointment)
        return appointment

    async def _get_owned_by_doctor(
        self, appointment_id: int, acting_doctor_id: int, db: AsyncSession
    ) -> Appointment:
        appointment = await self._get(appointment_id, db)
        if appointment.doctor_id != acting_doctor_id:
            raise AuthorizationError(
                "Only the doctor assigned to this appointment can do that",
                {"appointment_id": appointment_id},
            )
        return appointment

    async def _resolve(self, user_id: int, role: Role, db: AsyncSession) -> UserRecord:
        user = await self.directory.resolve_user(user_id, db)
        if user.role != role:
            raise ValidationError(
                f"User {user_id} is not a {role.value.lower()}",
                {"user_id": user_id, "expected_role": role.value},
            )
        return user

    async def _require_role(self, user_id: int, role: Role, db: AsyncSession) -> UserRecord:
        user = await self.directory.resolve_user(user_id, db)
        if user.role != role:
            raise NotFoundError(
                f"{role.value.title()} {user_id} not found", {"user_id": user_id}
            )
        return user

    def _normalize_slot(self, scheduled_at: Optional[datetime]) -> datetime:
        if not isinstance(scheduled_at, datetime):
            raise ValidationError("scheduled_at must be a date and time", {"field": "scheduled_at"})
        scheduled_at = to_utc_naive(scheduled_at)
        if scheduled_at < utcnow():
            raise ValidationError(
                "Appointments cannot be booked in the past",
                {"field": "scheduled_at", "scheduled_at": scheduled_at.isoformat()},
            )
        return scheduled_at

    def _clean_note(self, note: Optional[str], field: str) -> Optional[str]:
        if note is None:
            return None
        note = note.strip()
        if not note:
            return None
        if len(note) > self.settings.max_note_length:
            raise ValidationError(
                f"{field} is longer than {self.settings.max_note_length} characters",
                {"field": field},
            )
        return note


appointment_service = AppointmentService()
