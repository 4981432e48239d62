"""Tests for appointment creation, the status lifecycle and list projections."""

import pytest
from datetime import datetime, timedelta, timezone
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from medtrack.exceptions import (
    AuthorizationError,
    InvalidTransitionError,
    NotFoundError,
    SlotConflictError,
    TransientError,
    ValidationError,
)
from medtrack.models.appointment import Appointment, AppointmentStatus
from medtrack.timeutils import utcnow

pytestmark = pytest.mark.anyio

PENDING = AppointmentStatus.PENDING.value
CONFIRMED = AppointmentStatus.CONFIRMED.value
CANCELLED = AppointmentStatus.CANCELLED.value


async def _stored_status(db, appointment_id):
    return await db.scalar(
        select(Appointment.status)
        .where(Appointment.id == appointment_id)
        .execution_options(populate_existing=True)
    )


class TestCreate:
    async def test_create_is_pending(self, scheduler, users, slot, db):
        appointment = await scheduler.create(users.d1.id, users.p1.id, slot, "follow-up", db)
        assert appointment.id is not None
        assert appointment.status == PENDING
        assert appointment.patient_note == "follow-up"
        assert appointment.doctor_note is None
        assert appointment.scheduled_at == slot
        assert appointment.created_at is not None

    async def test_same_slot_is_a_conflict(self, scheduler, users, slot, db):
        await scheduler.create(users.d1.id, users.p1.id, slot, None, db)
        with pytest.raises(SlotConflictError):
            await scheduler.create(users.d1.id, users.p2.id, slot, None, db)

    async def test_other_doctor_same_instant_is_fine(self, scheduler, users, slot, db):
        await scheduler.create(users.d1.id, users.p1.id, slot, None, db)
        other = await scheduler.create(users.d2.id, users.p2.id, slot, None, db)
        assert other.status == PENDING

    async def test_timezone_aware_slot_is_normalized(self, scheduler, users, slot, db):
        aware = slot.replace(tzinfo=timezone.utc).astimezone(timezone(timedelta(hours=3)))
        await scheduler.create(users.d1.id, users.p1.id, aware, None, db)
        with pytest.raises(SlotConflictError):
            await scheduler.create(users.d1.id, users.p2.id, slot, None, db)

    async def test_past_slot_rejected(self, scheduler, users, db):
        with pytest.raises(ValidationError):
            await scheduler.create(users.d1.id, users.p1.id, utcnow() - timedelta(hours=1), None, db)

    async def test_unknown_doctor(self, scheduler, users, slot, db):
        with pytest.raises(NotFoundError):
            await scheduler.create(9999, users.p1.id, slot, None, db)

    async def test_unknown_patient(self, scheduler, users, slot, db):
        with pytest.raises(NotFoundError):
            await scheduler.create(users.d1.id, 9999, slot, None, db)

    async def test_role_mismatch(self, scheduler, users, slot, db):
        with pytest.raises(ValidationError):
            await scheduler.create(users.p2.id, users.p1.id, slot, None, db)
        with pytest.raises(ValidationError):
            await scheduler.create(users.d1.id, users.d2.id, slot, None, db)

    async def test_unavailable_doctor(self, scheduler, directory, users, slot, db):
        await directory.set_availability(users.d1.id, False, db)
        with pytest.raises(ValidationError):
            await scheduler.create(users.d1.id, users.p1.id, slot, None, db)

        await directory.set_availability(users.d1.id, True, db)
        appointment = await scheduler.create(users.d1.id, users.p1.id, slot, None, db)
        assert appointment.status == PENDING

    async def test_only_the_patient_may_book_for_themselves(self, scheduler, users, slot, db):
        with pytest.raises(AuthorizationError):
            await scheduler.create(users.d1.id, users.p1.id, slot, None, db, acting_user_id=users.p2.id)

    async def test_note_too_long(self, scheduler, users, slot, settings, db):
        with pytest.raises(ValidationError):
            await scheduler.create(users.d1.id, users.p1.id, slot, "x" * (settings.max_note_length + 1), db)

    async def test_blank_note_stored_as_none(self, scheduler, users, slot, db):
        appointment = await scheduler.create(users.d1.id, users.p1.id, slot, "   ", db)
        assert appointment.patient_note is None


class TestTransientFailures:
    async def test_transient_error_is_retried(self, scheduler, users, slot, db, monkeypatch):
        real_insert = scheduler._insert
        calls = {"n": 0}

        async def flaky_insert(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                raise OperationalError("INSERT", {}, Exception("database is locked"))
            return await real_insert(*args, **kwargs)

        monkeypatch.setattr(scheduler, "_insert", flaky_insert)
        appointment = await scheduler.create(users.d1.id, users.p1.id, slot, None, db)
        assert appointment.status == PENDING
        assert calls["n"] == 2

    async def test_gives_up_with_transient_error(self, scheduler, users, slot, settings, db, monkeypatch):
        calls = {"n": 0}

        async def broken_insert(*args, **kwargs):
            calls["n"] += 1
            raise OperationalError("INSERT", {}, Exception("database is locked"))

        monkeypatch.setattr(scheduler, "_insert", broken_insert)
        with pytest.raises(TransientError):
            await scheduler.create(users.d1.id, users.p1.id, slot, None, db)
        assert calls["n"] == settings.create_max_retries

    async def test_conflict_is_not_retried(self, scheduler, users, slot, db, monkeypatch):
        await scheduler.create(users.d1.id, users.p1.id, slot, None, db)
        real_insert = scheduler._insert
        calls = {"n": 0}

        async def counting_insert(*args, **kwargs):
            calls["n"] += 1
            return await real_insert(*args, **kwargs)

        monkeypatch.setattr(scheduler, "_insert", counting_insert)
        with pytest.raises(SlotConflictError):
            await scheduler.create(users.d1.id, users.p2.id, slot, None, db)
        assert calls["n"] == 1

    async def test_commit_that_landed_is_not_reported_as_conflict(self, scheduler, users, slot, db, monkeypatch):
        real_commit = db.commit
        calls = {"n": 0}

        async def commit_then_drop_connection():
            calls["n"] += 1
            await real_commit()
            if calls["n"] == 1:
                raise OperationalError("COMMIT", {}, Exception("connection reset"))

        monkeypatch.setattr(db, "commit", commit_then_drop_connection)
        appointment = await scheduler.create(users.d1.id, users.p1.id, slot, None, db)
        assert appointment.patient_id == users.p1.id
        assert appointment.status == PENDING
        assert calls["n"] == 2

        stored = await db.scalar(
            select(func.count(Appointment.id)).where(Appointment.doctor_id == users.d1.id)
        )
        assert stored == 1


class TestReturnedAppointments:
    async def test_readable_after_a_conflict(self, scheduler, users, slot, db):
        booked = await scheduler.create(users.d1.id, users.p1.id, slot, None, db)
        with pytest.raises(SlotConflictError):
            await scheduler.create(users.d1.id, users.p2.id, slot, None, db)
        assert booked.id is not None
        assert booked.status == PENDING
        assert (await scheduler.approve(booked.id, users.d1.id, db)).status == CONFIRMED

    async def test_readable_after_an_invalid_transition(self, scheduler, users, slot, later_slot, db):
        first = await scheduler.create(users.d1.id, users.p1.id, slot, None, db)
        second = await scheduler.create(users.d1.id, users.p2.id, later_slot, None, db)
        await scheduler.approve(second.id, users.d1.id, db)
        with pytest.raises(InvalidTransitionError):
            await scheduler.approve(second.id, users.d1.id, db)
        assert first.status == PENDING
        assert first.patient_id == users.p1.id

    async def test_listed_rows_survive_a_failed_write(self, scheduler, users, slot, db):
        booked = await scheduler.create(users.d1.id, users.p1.id, slot, None, db)
        listed = await scheduler.list_for_patient(users.p1.id, db)
        with pytest.raises(SlotConflictError):
            await scheduler.create(users.d1.id, users.p2.id, slot, None, db)
        assert [a.id for a in listed] == [booked.id]


class TestTransitions:
    async def test_approve(self, scheduler, users, slot, db):
        appointment = await scheduler.create(users.d1.id, users.p1.id, slot, None, db)
        approved = await scheduler.approve(appointment.id, users.d1.id, db)
        assert approved.status == CONFIRMED

    async def test_reject(self, scheduler, users, slot, db):
        appointment = await scheduler.create(users.d1.id, users.p1.id, slot, None, db)
        rejected = await scheduler.reject(appointment.id, users.d1.id, db)
        assert rejected.status == CANCELLED

    async def test_approve_missing(self, scheduler, users, db):
        with pytest.raises(NotFoundError):
            await scheduler.approve(9999, users.d1.id, db)

    async def test_other_doctor_cannot_approve(self, scheduler, users, slot, db):
        appointment = await scheduler.create(users.d3.id, users.p1.id, slot, None, db)
        with pytest.raises(AuthorizationError):
            await scheduler.approve(appointment.id, users.d2.id, db)
        assert await _stored_status(db, appointment.id) == PENDING

    async def test_patient_cannot_approve(self, scheduler, users, slot, db):
        appointment = await scheduler.create(users.d1.id, users.p1.id, slot, None, db)
        with pytest.raises(AuthorizationError):
            await scheduler.approve(appointment.id, users.p1.id, db)

    @pytest.mark.parametrize(
        "setup, action",
        [
            ("approve", "approve"),
            ("approve", "reject"),
            ("reject", "approve"),
            ("reject", "reject"),
            ("cancel", "approve"),
            ("cancel", "reject"),
        ],
    )
    async def test_transitions_outside_table_fail(self, scheduler, users, slot, db, setup, action):
        appointment = await scheduler.create(users.d1.id, users.p1.id, slot, None, db)
        actor = users.p1.id if setup == "cancel" else users.d1.id
        before = await getattr(scheduler, setup)(appointment.id, actor, db)
        updated_at = before.updated_at

        with pytest.raises(InvalidTransitionError):
            await getattr(scheduler, action)(appointment.id, users.d1.id, db)

        stored = await scheduler.get(appointment.id, users.d1.id, db)
        assert stored.status == before.status
        assert stored.updated_at == updated_at

    async def test_patient_cancels_confirmed(self, scheduler, users, slot, db):
        appointment = await scheduler.create(users.d1.id, users.p1.id, slot, None, db)
        await scheduler.approve(appointment.id, users.d1.id, db)
        cancelled = await scheduler.cancel(appointment.id, users.p1.id, db)
        assert cancelled.status == CANCELLED

    async def test_doctor_cancels(self, scheduler, users, slot, db):
        appointment = await scheduler.create(users.d1.id, users.p1.id, slot, None, db)
        cancelled = await scheduler.cancel(appointment.id, users.d1.id, db)
        assert cancelled.status == CANCELLED

    async def test_stranger_cannot_cancel(self, scheduler, users, slot, db):
        appointment = await scheduler.create(users.d1.id, users.p1.id, slot, None, db)
        with pytest.raises(AuthorizationError):
            await scheduler.cancel(appointment.id, users.p2.id, db)
        with pytest.raises(AuthorizationError):
            await scheduler.cancel(appointment.id, users.d2.id, db)
        assert await _stored_status(db, appointment.id) == PENDING

    async def test_cancel_is_idempotent(self, scheduler, users, slot, db):
        appointment = await scheduler.create(users.d1.id, users.p1.id, slot, "first visit", db)
        await scheduler.set_doctor_note(appointment.id, users.d1.id, "bring test results", db)
        first = await scheduler.cancel(appointment.id, users.p1.id, db)
        snapshot = (first.status, first.doctor_note, first.patient_note, first.updated_at)

        again = await scheduler.cancel(appointment.id, users.p1.id, db)
        by_doctor = await scheduler.cancel(appointment.id, users.d1.id, db)
        for result in (again, by_doctor):
            assert (result.status, result.doctor_note, result.patient_note, result.updated_at) == snapshot

    async def test_cancel_frees_slot(self, scheduler, users, slot, db):
        appointment = await scheduler.create(users.d1.id, users.p1.id, slot, None, db)
        await scheduler.approve(appointment.id, users.d1.id, db)
        await scheduler.cancel(appointment.id, users.p1.id, db)
        rebooked = await scheduler.create(users.d1.id, users.p2.id, slot, None, db)
        assert rebooked.status == PENDING
        assert rebooked.id != appointment.id

    async def test_reject_frees_slot(self, scheduler, users, slot, db):
        appointment = await scheduler.create(users.d1.id, users.p1.id, slot, None, db)
        await scheduler.reject(appointment.id, users.d1.id, db)
        rebooked = await scheduler.create(users.d1.id, users.p1.id, slot, None, db)
        assert rebooked.status == PENDING


class TestDoctorNote:
    async def test_note_does_not_change_status(self, scheduler, users, slot, db):
        appointment = await scheduler.create(users.d1.id, users.p1.id, slot, None, db)
        await scheduler.approve(appointment.id, users.d1.id, db)
        noted = await scheduler.set_doctor_note(appointment.id, users.d1.id, "fasting required", db)
        assert noted.doctor_note == "fasting required"
        assert noted.status == CONFIRMED

    async def test_note_on_cancelled(self, scheduler, users, slot, db):
        appointment = await scheduler.create(users.d1.id, users.p1.id, slot, None, db)
        await scheduler.cancel(appointment.id, users.p1.id, db)
        noted = await scheduler.set_doctor_note(appointment.id, users.d1.id, "patient called", db)
        assert noted.status == CANCELLED
        assert noted.doctor_note == "patient called"

    async def test_other_doctor_cannot_annotate(self, scheduler, users, slot, db):
        appointment = await scheduler.create(users.d1.id, users.p1.id, slot, None, db)
        with pytest.raises(AuthorizationError):
            await scheduler.set_doctor_note(appointment.id, users.d2.id, "hijack", db)
        with pytest.raises(AuthorizationError):
            await scheduler.set_doctor_note(appointment.id, users.p1.id, "self note", db)

    async def test_patient_note_untouched(self, scheduler, users, slot, db):
        appointment = await scheduler.create(users.d1.id, users.p1.id, slot, "headache", db)
        noted = await scheduler.set_doctor_note(appointment.id, users.d1.id, "migraine", db)
        assert noted.patient_note == "headache"


class TestLists:
    async def test_ordered_by_time(self, scheduler, users, slot, db):
        late = await scheduler.create(users.d1.id, users.p1.id, slot + timedelta(days=2), None, db)
        early = await scheduler.create(users.d2.id, users.p1.id, slot, None, db)
        middle = await scheduler.create(users.d1.id, users.p1.id, slot + timedelta(days=1), None, db)

        for_patient = await scheduler.list_for_patient(users.p1.id, db)
        assert [a.id for a in for_patient] == [early.id, middle.id, late.id]

        for_doctor = await scheduler.list_for_doctor(users.d1.id, db)
        assert [a.id for a in for_doctor] == [middle.id, late.id]

    async def test_includes_cancelled_history(self, scheduler, users, slot, db):
        first = await scheduler.create(users.d1.id, users.p1.id, slot, None, db)
        await scheduler.cancel(first.id, users.p1.id, db)
        second = await scheduler.create(users.d1.id, users.p2.id, slot, None, db)
        listed = await scheduler.list_for_doctor(users.d1.id, db)
        assert [a.id for a in listed] == [first.id, second.id]
        assert [a.status for a in listed] == [CANCELLED, PENDING]

    async def test_status_filter(self, scheduler, users, slot, later_slot, db):
        a = await scheduler.create(users.d1.id, users.p1.id, slot, None, db)
        await scheduler.create(users.d1.id, users.p2.id, later_slot, None, db)
        await scheduler.approve(a.id, users.d1.id, db)
        confirmed = await scheduler.list_for_doctor(users.d1.id, db, status=AppointmentStatus.CONFIRMED)
        assert [x.id for x in confirmed] == [a.id]

    async def test_empty(self, scheduler, users, db):
        assert await scheduler.list_for_patient(users.p2.id, db) == []

    async def test_unknown_user(self, scheduler, users, db):
        with pytest.raises(NotFoundError):
            await scheduler.list_for_patient(9999, db)
        with pytest.raises(NotFoundError):
            await scheduler.list_for_doctor(users.p1.id, db)

    async def test_get_requires_party(self, scheduler, users, slot, db):
        appointment = await scheduler.create(users.d1.id, users.p1.id, slot, None, db)
        assert (await scheduler.get(appointment.id, users.p1.id, db)).id == appointment.id
        with pytest.raises(AuthorizationError):
            await scheduler.get(appointment.id, users.p2.id, db)


class TestScenarios:
    async def test_book_conflict_approve_cancel_rebook(self, scheduler, users, slot, db):
        booked = await scheduler.create(users.d1.id, users.p1.id, slot, "follow-up", db)
        assert booked.status == PENDING
        assert booked.id is not None

        with pytest.raises(SlotConflictError):
            await scheduler.create(users.d1.id, users.p2.id, slot, None, db)

        assert (await scheduler.approve(booked.id, users.d1.id, db)).status == CONFIRMED
        assert (await scheduler.cancel(booked.id, users.p1.id, db)).status == CANCELLED

        retried = await scheduler.create(users.d1.id, users.p2.id, slot, None, db)
        assert retried.status == PENDING

    async def test_wrong_doctor_approval_leaves_status(self, scheduler, users, slot, db):
        appointment = await scheduler.create(users.d3.id, users.p2.id, slot, None, db)
        with pytest.raises(AuthorizationError):
            await scheduler.approve(appointment.id, users.d2.id, db)
        assert await _stored_status(db, appointment.id) == PENDING
