from datetime import date, timedelta

import pytest
from sqlalchemy import select, func

from app.core.config import settings
from app.core.exceptions import (
    AuthorizationError, ConflictError, NoActivePackageError, SlotUnavailableError, ValidationError
)
from app.models.approval_request import ApprovalRequest, ApprovalRequestType
from app.models.lesson import LessonStatus
from app.models.package import PackageStatus
from app.services.approval_service import ApprovalService
from app.services.booking_service import BookingService, tutor_local_start
from app.services.credit_ledger_service import CreditLedgerService
from app.services.package_service import PackageService

from conftest import COURSE_ID, add_completed_lesson, create_user, fund_student, open_slot


async def make_returning(session_factory, student, tutor):
    await fund_student(session_factory, student)
    await add_completed_lesson(session_factory, student, tutor)


async def book(session_factory, student, slot, **kwargs):
    async with session_factory() as db:
        return await BookingService(db).book_lesson(student, slot.id, COURSE_ID, "Conversation", **kwargs)


async def ledger_entry(session_factory, student):
    async with session_factory() as db:
        return await CreditLedgerService(db).get_entry(student.id)


def hours_before(slot, hours):
    return tutor_local_start(slot.date, slot.hour) - timedelta(hours=hours)


async def test_first_booking_waits_for_approval(session_factory, student, tutor):
    await fund_student(session_factory, student)
    slot = await open_slot(session_factory, tutor)

    outcome = await book(session_factory, student, slot)

    assert outcome.status == "approval_required"
    assert outcome.lesson is None
    assert outcome.approval_request.type == ApprovalRequestType.NEW_STUDENT_BOOKING
    assert outcome.approval_request.payload["slot_id"] == str(slot.id)

    async with session_factory() as db:
        service = BookingService(db)
        assert not (await service.get_slot(slot.id)).is_booked
        assert await service.list_lessons(student.id) == []
    assert (await ledger_entry(session_factory, student)).committed_hours == 0

    async with session_factory() as db:
        await ApprovalService(db).resolve(outcome.approval_request.id, "approved", tutor)

    async with session_factory() as db:
        service = BookingService(db)
        lessons = await service.list_lessons(student.id)
        assert len(lessons) == 1
        assert lessons[0].status == LessonStatus.SCHEDULED
        booked = await service.get_slot(slot.id)
        assert booked.is_booked
        assert booked.lesson_id == lessons[0].id
    assert (await ledger_entry(session_factory, student)).committed_hours == 1


async def test_second_request_for_same_slot_conflicts(session_factory, student, tutor):
    await fund_student(session_factory, student)
    slot = await open_slot(session_factory, tutor)
    await book(session_factory, student, slot)

    with pytest.raises(ConflictError):
        await book(session_factory, student, slot)


async def test_returning_student_books_immediately(session_factory, student, tutor):
    await make_returning(session_factory, student, tutor)
    slot = await open_slot(session_factory, tutor)

    outcome = await book(session_factory, student, slot, duration_minutes=30)

    assert outcome.status == "confirmed"
    assert outcome.lesson.duration_hours == 0.5
    async with session_factory() as db:
        assert (await BookingService(db).get_slot(slot.id)).is_booked
        count = await db.execute(select(func.count()).select_from(ApprovalRequest))
        assert count.scalar_one() == 0

    entry = await ledger_entry(session_factory, student)
    assert entry.committed_hours == 0.5
    assert entry.uncommitted_hours == 9.5


async def test_slot_cannot_be_booked_twice(session_factory, student, tutor):
    other = await create_user(session_factory, name="Otto Other")
    await make_returning(session_factory, student, tutor)
    await make_returning(session_factory, other, tutor)
    slot = await open_slot(session_factory, tutor)

    await book(session_factory, student, slot)
    with pytest.raises(SlotUnavailableError):
        await book(session_factory, other, slot)

    assert (await ledger_entry(session_factory, other)).committed_hours == 0


async def test_booking_without_package_fails_cleanly(session_factory, student, tutor):
    await add_completed_lesson(session_factory, student, tutor)
    slot = await open_slot(session_factory, tutor)

    with pytest.raises(NoActivePackageError):
        await book(session_factory, student, slot)

    async with session_factory() as db:
        assert not (await BookingService(db).get_slot(slot.id)).is_booked


async def test_booking_past_slot_rejected(session_factory, student, tutor):
    await make_returning(session_factory, student, tutor)
    slot = await open_slot(session_factory, tutor, days_ahead=-1)

    with pytest.raises(SlotUnavailableError):
        await book(session_factory, student, slot)


async def test_early_cancel_releases_hours(session_factory, student, tutor):
    await make_returning(session_factory, student, tutor)
    slot = await open_slot(session_factory, tutor)
    lesson = (await book(session_factory, student, slot)).lesson

    async with session_factory() as db:
        outcome = await BookingService(db).cancel_lesson(student, lesson.id, "Travelling", now=hours_before(slot, 48))

    assert outcome.status == "cancelled"
    assert outcome.lesson.status == LessonStatus.CANCELLED
    entry = await ledger_entry(session_factory, student)
    assert entry.committed_hours == 0
    assert entry.uncommitted_hours == 10
    async with session_factory() as db:
        freed = await BookingService(db).get_slot(slot.id)
        assert not freed.is_booked
        assert freed.lesson_id is None


async def test_late_cancel_needs_approval(session_factory, student, tutor):
    await make_returning(session_factory, student, tutor)
    slot = await open_slot(session_factory, tutor)
    lesson = (await book(session_factory, student, slot)).lesson

    async with session_factory() as db:
        outcome = await BookingService(db).cancel_lesson(student, lesson.id, "Sick", now=hours_before(slot, 5))

    assert outcome.status == "approval_required"
    assert outcome.approval_request.type == ApprovalRequestType.LATE_CANCEL
    assert outcome.approval_request.payload["hours_until_lesson"] == 5
    assert (await ledger_entry(session_factory, student)).committed_hours == 1

    async with session_factory() as db:
        await ApprovalService(db).resolve(outcome.approval_request.id, "approved", tutor)

    async with session_factory() as db:
        cancelled = await BookingService(db).get_lesson(lesson.id)
        assert cancelled.status == LessonStatus.CANCELLED
        assert cancelled.cancellation_reason == "Sick"
    assert (await ledger_entry(session_factory, student)).committed_hours == 0


async def test_tutor_cancels_late_without_approval(session_factory, student, tutor):
    await make_returning(session_factory, student, tutor)
    slot = await open_slot(session_factory, tutor)
    lesson = (await book(session_factory, student, slot)).lesson

    async with session_factory() as db:
        outcome = await BookingService(db).cancel_lesson(tutor, lesson.id, now=hours_before(slot, 1))

    assert outcome.status == "cancelled"


async def test_reschedule_moves_lesson_and_frees_old_slot(session_factory, student, tutor):
    await make_returning(session_factory, student, tutor)
    slot = await open_slot(session_factory, tutor, hour=10)
    new_slot = await open_slot(session_factory, tutor, hour=15)
    lesson = (await book(session_factory, student, slot)).lesson

    async with session_factory() as db:
        outcome = await BookingService(db).reschedule_lesson(student, lesson.id, new_slot.id, now=hours_before(slot, 13))

    assert outcome.status == "rescheduled"
    assert outcome.lesson.slot_id == new_slot.id
    assert outcome.lesson.hour == 15
    async with session_factory() as db:
        service = BookingService(db)
        assert not (await service.get_slot(slot.id)).is_booked
        assert (await service.get_slot(new_slot.id)).lesson_id == lesson.id
    assert (await ledger_entry(session_factory, student)).committed_hours == 1


async def test_late_reschedule_needs_approval(session_factory, student, tutor):
    await make_returning(session_factory, student, tutor)
    slot = await open_slot(session_factory, tutor, hour=10)
    new_slot = await open_slot(session_factory, tutor, hour=15)
    lesson = (await book(session_factory, student, slot)).lesson

    async with session_factory() as db:
        outcome = await BookingService(db).reschedule_lesson(student, lesson.id, new_slot.id, now=hours_before(slot, 11))
    assert outcome.status == "approval_required"

    async with session_factory() as db:
        assert (await BookingService(db).get_lesson(lesson.id)).slot_id == slot.id

    async with session_factory() as db:
        await ApprovalService(db).resolve(outcome.approval_request.id, "approved", tutor)

    async with session_factory() as db:
        assert (await BookingService(db).get_lesson(lesson.id)).slot_id == new_slot.id


async def test_late_reschedule_approved_after_new_slot_started_is_rejected(session_factory, student, tutor):
    await make_returning(session_factory, student, tutor)
    slot = await open_slot(session_factory, tutor, days_ahead=-1, hour=12)
    new_slot = await open_slot(session_factory, tutor, days_ahead=-1, hour=14)
    lesson = (await book(session_factory, student, slot, now=hours_before(slot, 48))).lesson

    async with session_factory() as db:
        outcome = await BookingService(db).reschedule_lesson(student, lesson.id, new_slot.id, now=hours_before(slot, 6))
    assert outcome.status == "approval_required"

    async with session_factory() as db:
        with pytest.raises(SlotUnavailableError):
            await ApprovalService(db).resolve(outcome.approval_request.id, "approved", tutor)

    async with session_factory() as db:
        service = BookingService(db)
        assert (await service.get_lesson(lesson.id)).slot_id == slot.id
        assert not (await service.get_slot(new_slot.id)).is_booked


async def test_other_students_lessons_are_off_limits(session_factory, student, tutor):
    other = await create_user(session_factory, name="Otto Other")
    await make_returning(session_factory, student, tutor)
    slot = await open_slot(session_factory, tutor)
    lesson = (await book(session_factory, student, slot)).lesson

    async with session_factory() as db:
        with pytest.raises(AuthorizationError):
            await BookingService(db).cancel_lesson(other, lesson.id)


async def test_completing_twice_counts_once(session_factory, student, tutor):
    await make_returning(session_factory, student, tutor)
    slot = await open_slot(session_factory, tutor)
    lesson = (await book(session_factory, student, slot)).lesson

    for _ in range(2):
        async with session_factory() as db:
            completed = await BookingService(db).complete_lesson(tutor, lesson.id)
            assert completed.status == LessonStatus.COMPLETED

    entry = await ledger_entry(session_factory, student)
    assert entry.completed_hours == 1
    assert entry.committed_hours == 0
    async with session_factory() as db:
        package = await PackageService(db).get_package(lesson.package_id)
        assert package.remaining_hours == 9


async def test_cancel_under_expired_package_forfeits_hours(session_factory, student, tutor, monkeypatch):
    monkeypatch.setattr(settings, "FORFEIT_HOURS_ON_EXPIRED_CANCEL", True)
    await make_returning(session_factory, student, tutor)
    slot = await open_slot(session_factory, tutor)
    lesson = (await book(session_factory, student, slot)).lesson

    async with session_factory() as db:
        package = await PackageService(db).get_package(lesson.package_id)
        package.status = PackageStatus.EXPIRED
        await db.commit()

    async with session_factory() as db:
        await BookingService(db).cancel_lesson(student, lesson.id, now=hours_before(slot, 48))

    entry = await ledger_entry(session_factory, student)
    assert entry.committed_hours == 0
    assert entry.uncommitted_hours == 9
    assert entry.total_hours == 9
    async with session_factory() as db:
        assert (await PackageService(db).get_package(lesson.package_id)).forfeited_hours == 1


async def test_cancel_under_expired_package_releases_hours_by_default(session_factory, student, tutor):
    await make_returning(session_factory, student, tutor)
    slot = await open_slot(session_factory, tutor)
    lesson = (await book(session_factory, student, slot)).lesson

    async with session_factory() as db:
        package = await PackageService(db).get_package(lesson.package_id)
        package.status = PackageStatus.EXPIRED
        await db.commit()

    async with session_factory() as db:
        await BookingService(db).cancel_lesson(student, lesson.id, now=hours_before(slot, 48))

    entry = await ledger_entry(session_factory, student)
    assert entry.committed_hours == 0
    assert entry.uncommitted_hours == 10
    assert entry.total_hours == 10
    async with session_factory() as db:
        assert (await PackageService(db).get_package(lesson.package_id)).forfeited_hours == 0


async def test_booked_slot_cannot_be_toggled(session_factory, student, tutor):
    await make_returning(session_factory, student, tutor)
    slot = await open_slot(session_factory, tutor)
    await book(session_factory, student, slot)

    async with session_factory() as db:
        with pytest.raises(SlotUnavailableError):
            await BookingService(db).toggle_availability(tutor, slot.date, slot.hour)


async def test_toggle_opens_and_closes(session_factory, tutor):
    day = date.today() + timedelta(days=3)

    async with session_factory() as db:
        slot = await BookingService(db).toggle_availability(tutor, day, 9)
        assert slot.is_available

    async with session_factory() as db:
        slot = await BookingService(db).toggle_availability(tutor, day, 9)
        assert not slot.is_available
        assert await BookingService(db).get_available_slots(tutor.id) == []


async def test_schedule_template(session_factory, tutor, student):
    start = date.today() + timedelta(days=1)
    end = start + timedelta(days=13)

    async with session_factory() as db:
        opened = await BookingService(db).apply_schedule_template(tutor, start, end, [0, 2], [9, 10])
    assert len(opened) == 2 * 2 * 2
    assert all(slot.date.weekday() in (0, 2) for slot in opened)

    async with session_factory() as db:
        again = await BookingService(db).apply_schedule_template(tutor, start, end, [0, 2], [9, 10])
        assert again == []
        assert len(await BookingService(db).get_available_slots(tutor.id)) == 8

    async with session_factory() as db:
        with pytest.raises(AuthorizationError):
            await BookingService(db).apply_schedule_template(student, start, end, [0], [9])
        with pytest.raises(ValidationError):
            await BookingService(db).apply_schedule_template(tutor, end, start, [0], [9])
