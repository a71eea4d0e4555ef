from dataclasses import dataclass
from typing import List, Optional
from datetime import date, datetime, time
from uuid import UUID, uuid4
import logging

from dateutil import rrule
from sqlalchemy import select, update, and_, exists
from sqlalchemy.ext.asyncio import AsyncSession
import pytz

from app.core.config import settings
from app.core.database import utcnow
from app.core.exceptions import (
    AuthorizationError, BookingError, ConflictError, NotFoundError,
    SlotUnavailableError, ValidationError
)
from app.models.approval_request import ApprovalRequest, ApprovalRequestType
from app.models.availability import Slot
from app.models.lesson import Lesson, LessonStatus
from app.models.package import StudentPackage, PackageStatus
from app.models.user import User
from app.schemas.approval import (
    NewStudentBookingPayload, LateReschedulePayload, LateCancelPayload
)
from app.services.approval_service import ApprovalService
from app.services.credit_ledger_service import CreditLedgerService
from app.services.notification_service import NotificationService
from app.services.package_service import PackageService

logger = logging.getLogger(__name__)

# Longest range a schedule template may cover in one call
MAX_TEMPLATE_DAYS = 366


@dataclass
class BookingOutcome:
    """What happened to a booking action"""
    status: str
    lesson: Optional[Lesson] = None
    approval_request: Optional[ApprovalRequest] = None


def slot_target_key(slot_id: UUID) -> str:
    return f"slot:{slot_id}"


def lesson_target_key(lesson_id: UUID) -> str:
    return f"lesson:{lesson_id}"


def tutor_local_start(lesson_date: date, hour: int) -> datetime:
    """Start of an hour slot in the tutor's timezone, as an aware datetime"""
    tz = pytz.timezone(settings.TUTOR_TIMEZONE)
    return tz.localize(datetime.combine(lesson_date, time(hour=hour)))


def hours_until(lesson_date: date, hour: int, now: Optional[datetime] = None) -> float:
    now = now or utcnow()
    return (tutor_local_start(lesson_date, hour) - now).total_seconds() / 3600


class BookingService:
    """Tutor availability and the lesson lifecycle.

    ``book_lesson``, ``reschedule_lesson``, ``cancel_lesson`` and
    ``complete_lesson`` are the entry points and own their transaction.
    ``confirm_booking``, ``move_lesson`` and ``cancel_lesson_now`` carry out
    the change itself and are also what an approved request runs.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.ledger = CreditLedgerService(db)
        self.packages = PackageService(db)
        self.approvals = ApprovalService(db)
        self.notifications = NotificationService(db)

    # Availability

    async def get_available_slots(
        self,
        tutor_id: Optional[UUID] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> List[Slot]:
        """Get open, unbooked slots from today (or start_date) onwards"""
        start_date = start_date or utcnow().date()
        query = select(Slot).where(
            and_(
                Slot.is_available.is_(True),
                Slot.is_booked.is_(False),
                Slot.date >= start_date,
            )
        )
        if end_date:
            query = query.where(Slot.date <= end_date)
        if tutor_id:
            query = query.where(Slot.tutor_id == tutor_id)

        result = await self.db.execute(query.order_by(Slot.date, Slot.hour))
        return list(result.scalars().all())

    async def get_slot(self, slot_id: UUID) -> Slot:
        result = await self.db.execute(
            select(Slot).where(Slot.id == slot_id).execution_options(populate_existing=True)
        )
        slot = result.scalar_one_or_none()
        if not slot:
            raise NotFoundError("Slot not found")
        return slot

    async def toggle_availability(self, tutor: User, slot_date: date, hour: int) -> Slot:
        """Open a closed hour or close an open one; booked hours are left alone"""
        self._require_tutor(tutor)
        if not 0 <= hour <= 23:
            raise ValidationError(f"Hour must be between 0 and 23, got {hour}")

        try:
            slot = await self._find_slot(tutor.id, slot_date, hour)
            if slot is None:
                slot = Slot(tutor_id=tutor.id, date=slot_date, hour=hour, is_available=True, is_booked=False)
                self.db.add(slot)
            elif slot.is_booked:
                raise SlotUnavailableError("A booked slot cannot be toggled")
            else:
                slot.is_available = not slot.is_available

            await self.db.commit()
            await self.db.refresh(slot)
            logger.info(
                f"Tutor {tutor.id} set {slot_date.isoformat()} {hour:02d}:00 "
                f"{'available' if slot.is_available else 'unavailable'}"
            )
            return slot

        except Exception:
            await self.db.rollback()
            raise

    async def apply_schedule_template(
        self,
        tutor: User,
        start_date: date,
        end_date: date,
        weekdays: List[int],
        hours: List[int],
    ) -> List[Slot]:
        """Open the given hours on the given weekdays across a date range.

        Existing slots are made available unless they are booked; missing
        ones are created. Returns the slots that were opened.
        """
        self._require_tutor(tutor)
        if end_date < start_date:
            raise ValidationError("end_date must not be before start_date")
        if (end_date - start_date).days >= MAX_TEMPLATE_DAYS:
            raise ValidationError(f"A template can cover at most {MAX_TEMPLATE_DAYS} days")
        if not weekdays or any(not 0 <= day <= 6 for day in weekdays):
            raise ValidationError("weekdays must be values between 0 (Monday) and 6 (Sunday)")
        if not hours or any(not 0 <= hour <= 23 for hour in hours):
            raise ValidationError("hours must be values between 0 and 23")

        days = rrule.rrule(
            rrule.DAILY,
            dtstart=datetime.combine(start_date, time()),
            until=datetime.combine(end_date, time()),
            byweekday=sorted(set(weekdays)),
        )

        try:
            opened = []
            for day in days:
                for hour in sorted(set(hours)):
                    slot = await self._find_slot(tutor.id, day.date(), hour)
                    if slot is None:
                        slot = Slot(tutor_id=tutor.id, date=day.date(), hour=hour, is_available=True, is_booked=False)
                        self.db.add(slot)
                    elif slot.is_booked or slot.is_available:
                        continue
                    else:
                        slot.is_available = True
                    opened.append(slot)

            await self.db.commit()
            logger.info(f"Schedule template opened {len(opened)} slots for tutor {tutor.id}")
            return opened

        except Exception:
            await self.db.rollback()
            raise

    # Lesson lifecycle

    async def is_new_student(self, student_id: UUID) -> bool:
        """A student is new until one of their lessons has been completed"""
        result = await self.db.execute(
            select(
                exists().where(
                    and_(
                        Lesson.student_id == student_id,
                        Lesson.status == LessonStatus.COMPLETED,
                    )
                )
            )
        )
        return not result.scalar()

    async def book_lesson(
        self,
        student: User,
        slot_id: UUID,
        course_id: str,
        title: str,
        duration_minutes: int = 60,
        now: Optional[datetime] = None,
    ) -> BookingOutcome:
        """Book a slot, or ask the tutor first if the student is new"""
        hours = self._duration_hours(duration_minutes)
        student_id = student.id
        try:
            slot = await self.get_slot(slot_id)
            self._check_slot_open(slot, now)

            if await self.is_new_student(student.id):
                target_key = slot_target_key(slot.id)
                if await self.approvals.has_pending(target_key):
                    raise ConflictError("This slot already has a booking waiting for approval")

                # Fail early rather than after the tutor approves
                await self.packages.find_bookable_package(student.id, course_id, hours, now=now)

                request = await self.approvals.create_approval_request(
                    ApprovalRequestType.NEW_STUDENT_BOOKING,
                    student,
                    NewStudentBookingPayload(
                        slot_id=slot.id,
                        tutor_id=slot.tutor_id,
                        course_id=course_id,
                        lesson_title=title,
                        lesson_date=slot.date,
                        lesson_time=slot.time,
                        duration_minutes=duration_minutes,
                    ),
                    target_key,
                )
                await self.db.commit()
                return BookingOutcome(status="approval_required", approval_request=request)

            lesson = await self.confirm_booking(student.id, slot.id, course_id, title, duration_minutes, now=now)
            await self.notifications.notify_booking_confirmed(lesson)
            await self.db.commit()
            return BookingOutcome(status="confirmed", lesson=lesson)

        except Exception as e:
            await self.db.rollback()
            logger.error(f"Booking slot {slot_id} for student {student_id} failed: {e}")
            raise

    async def confirm_booking(
        self,
        student_id: UUID,
        slot_id: UUID,
        course_id: str,
        title: str,
        duration_minutes: int,
        now: Optional[datetime] = None,
    ) -> Lesson:
        """Claim the slot, reserve the hours and create the lesson; the caller commits"""
        hours = self._duration_hours(duration_minutes)
        slot = await self.get_slot(slot_id)
        self._check_slot_open(slot, now)
        package = await self.packages.reserve_package(student_id, course_id, hours, now=now)

        lesson_id = uuid4()
        await self._claim_slot(slot.id, lesson_id)

        lesson = Lesson(
            id=lesson_id,
            student_id=student_id,
            tutor_id=slot.tutor_id,
            course_id=course_id,
            title=title,
            package_id=package.id,
            slot_id=slot.id,
            date=slot.date,
            hour=slot.hour,
            duration_minutes=duration_minutes,
            duration_hours=hours,
            status=LessonStatus.SCHEDULED,
        )
        self.db.add(lesson)
        await self.db.flush()

        await self.ledger.commit(student_id, hours, lesson_id=lesson.id)

        logger.info(f"Booked lesson {lesson.id} for student {student_id} on {slot.date.isoformat()} {slot.time}")
        return lesson

    async def get_lesson(self, lesson_id: UUID) -> Lesson:
        result = await self.db.execute(
            select(Lesson).where(Lesson.id == lesson_id).execution_options(populate_existing=True)
        )
        lesson = result.scalar_one_or_none()
        if not lesson:
            raise NotFoundError("Lesson not found")
        return lesson

    async def list_lessons(self, student_id: UUID, status: Optional[LessonStatus] = None) -> List[Lesson]:
        query = select(Lesson).where(Lesson.student_id == student_id)
        if status:
            query = query.where(Lesson.status == status)
        result = await self.db.execute(query.order_by(Lesson.date, Lesson.hour))
        return list(result.scalars().all())

    async def reschedule_lesson(
        self,
        principal: User,
        lesson_id: UUID,
        new_slot_id: UUID,
        now: Optional[datetime] = None,
    ) -> BookingOutcome:
        """Move a lesson to another slot; inside the late window the tutor decides"""
        try:
            lesson = await self._get_scheduled_lesson(lesson_id, principal)
            new_slot = await self.get_slot(new_slot_id)
            self._check_slot_open(new_slot, now)

            until = hours_until(lesson.date, lesson.hour, now)
            if until < settings.LATE_RESCHEDULE_HOURS and not principal.is_approver:
                target_key = lesson_target_key(lesson.id)
                if await self.approvals.has_pending(target_key):
                    raise ConflictError("This lesson already has a request waiting for approval")

                request = await self.approvals.create_approval_request(
                    ApprovalRequestType.LATE_RESCHEDULE,
                    principal,
                    LateReschedulePayload(
                        lesson_id=lesson.id,
                        lesson_title=lesson.title,
                        lesson_date=lesson.date,
                        lesson_time=lesson.start_time,
                        new_slot_id=new_slot.id,
                        new_date=new_slot.date,
                        new_time=new_slot.time,
                        hours_until_lesson=round(until, 2),
                    ),
                    target_key,
                )
                await self.db.commit()
                return BookingOutcome(status="approval_required", approval_request=request)

            lesson = await self.move_lesson(lesson.id, new_slot.id, now=now)
            await self.db.commit()
            return BookingOutcome(status="rescheduled", lesson=lesson)

        except Exception as e:
            await self.db.rollback()
            logger.error(f"Rescheduling lesson {lesson_id} failed: {e}")
            raise

    async def move_lesson(self, lesson_id: UUID, new_slot_id: UUID, now: Optional[datetime] = None) -> Lesson:
        """Swap a scheduled lesson onto a new slot; the caller commits"""
        lesson = await self.get_lesson(lesson_id)
        if lesson.status != LessonStatus.SCHEDULED:
            raise BookingError(f"Lesson is {lesson.status.value}, only scheduled lessons can be moved")

        new_slot = await self.get_slot(new_slot_id)
        self._check_slot_open(new_slot, now)
        await self._claim_slot(new_slot.id, lesson.id)
        if lesson.slot_id:
            await self._free_slot(lesson.slot_id, lesson.id)

        old = f"{lesson.date.isoformat()} {lesson.start_time}"
        lesson.slot_id = new_slot.id
        lesson.date = new_slot.date
        lesson.hour = new_slot.hour
        await self.db.flush()

        logger.info(f"Moved lesson {lesson.id} from {old} to {new_slot.date.isoformat()} {new_slot.time}")
        return lesson

    async def cancel_lesson(
        self,
        principal: User,
        lesson_id: UUID,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> BookingOutcome:
        """Cancel a lesson; inside the late window the tutor decides"""
        try:
            lesson = await self._get_scheduled_lesson(lesson_id, principal)

            until = hours_until(lesson.date, lesson.hour, now)
            if until < settings.LATE_CANCEL_HOURS and not principal.is_approver:
                target_key = lesson_target_key(lesson.id)
                if await self.approvals.has_pending(target_key):
                    raise ConflictError("This lesson already has a request waiting for approval")

                request = await self.approvals.create_approval_request(
                    ApprovalRequestType.LATE_CANCEL,
                    principal,
                    LateCancelPayload(
                        lesson_id=lesson.id,
                        lesson_title=lesson.title,
                        lesson_date=lesson.date,
                        lesson_time=lesson.start_time,
                        hours_until_lesson=round(until, 2),
                    ),
                    target_key,
                    reason=reason,
                )
                await self.db.commit()
                return BookingOutcome(status="approval_required", approval_request=request)

            lesson = await self.cancel_lesson_now(lesson.id, reason=reason)
            await self.db.commit()
            return BookingOutcome(status="cancelled", lesson=lesson)

        except Exception as e:
            await self.db.rollback()
            logger.error(f"Cancelling lesson {lesson_id} failed: {e}")
            raise

    async def cancel_lesson_now(self, lesson_id: UUID, reason: Optional[str] = None) -> Lesson:
        """Cancel a scheduled lesson, free its slot and release its hours; the caller commits.

        If the package paying for it has already expired the released hours
        are forfeited straight away, matching what the expiry sweep did to
        the rest of the package.
        """
        lesson = await self.get_lesson(lesson_id)
        if lesson.status != LessonStatus.SCHEDULED:
            raise BookingError(f"Lesson is {lesson.status.value}, only scheduled lessons can be cancelled")

        now = utcnow()
        result = await self.db.execute(
            update(Lesson)
            .where(and_(Lesson.id == lesson.id, Lesson.status == LessonStatus.SCHEDULED))
            .values(
                status=LessonStatus.CANCELLED,
                cancelled_at=now,
                cancellation_reason=reason,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError("Lesson changed while it was being cancelled")

        if lesson.slot_id:
            await self._free_slot(lesson.slot_id, lesson.id)

        await self.ledger.release(lesson.student_id, lesson.duration_hours, lesson_id=lesson.id)

        if lesson.package_id and settings.FORFEIT_HOURS_ON_EXPIRED_CANCEL:
            package = await self.packages.get_package(lesson.package_id)
            if package.status == PackageStatus.EXPIRED:
                await self.ledger.forfeit(lesson.student_id, lesson.duration_hours)
                await self.db.execute(
                    update(StudentPackage)
                    .where(StudentPackage.id == package.id)
                    .values(forfeited_hours=StudentPackage.forfeited_hours + lesson.duration_hours)
                    .execution_options(synchronize_session=False)
                )
                logger.info(f"Forfeited {lesson.duration_hours:g}h of cancelled lesson {lesson.id}, package {package.id} has expired")

        logger.info(f"Cancelled lesson {lesson.id}")
        return await self.get_lesson(lesson.id)

    async def complete_lesson(self, principal: User, lesson_id: UUID) -> Lesson:
        """Mark a lesson as attended; completing it again changes nothing"""
        if not principal.is_approver:
            raise AuthorizationError("Only a tutor or admin can mark a lesson as completed")

        try:
            lesson = await self.get_lesson(lesson_id)
            if lesson.completed_at is not None:
                logger.info(f"Lesson {lesson_id} already completed")
                return lesson
            if lesson.status != LessonStatus.SCHEDULED:
                raise BookingError(f"Lesson is {lesson.status.value} and cannot be completed")

            now = utcnow()
            result = await self.db.execute(
                update(Lesson)
                .where(
                    and_(
                        Lesson.id == lesson.id,
                        Lesson.completed_at.is_(None),
                        Lesson.status == LessonStatus.SCHEDULED,
                    )
                )
                .values(status=LessonStatus.COMPLETED, completed_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                # Someone else completed it first
                await self.db.rollback()
                return await self.get_lesson(lesson_id)

            await self.ledger.complete(lesson.student_id, lesson.duration_hours, lesson_id=lesson.id)
            if lesson.package_id:
                await self.packages.consume(lesson.package_id, lesson.duration_hours)

            await self.db.commit()
            logger.info(f"Completed lesson {lesson.id} ({lesson.duration_hours:g}h)")
            return await self.get_lesson(lesson.id)

        except Exception as e:
            await self.db.rollback()
            logger.error(f"Completing lesson {lesson_id} failed: {e}")
            raise

    # Helpers

    async def _find_slot(self, tutor_id: UUID, slot_date: date, hour: int) -> Optional[Slot]:
        result = await self.db.execute(
            select(Slot).where(
                and_(Slot.tutor_id == tutor_id, Slot.date == slot_date, Slot.hour == hour)
            )
        )
        return result.scalar_one_or_none()

    async def _claim_slot(self, slot_id: UUID, lesson_id: UUID):
        """Book a slot only if it is still open; losing the race raises"""
        result = await self.db.execute(
            update(Slot)
            .where(
                and_(
                    Slot.id == slot_id,
                    Slot.is_available.is_(True),
                    Slot.is_booked.is_(False),
                )
            )
            .values(is_booked=True, lesson_id=lesson_id, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise SlotUnavailableError("This slot is no longer available")

    async def _free_slot(self, slot_id: UUID, lesson_id: UUID):
        await self.db.execute(
            update(Slot)
            .where(and_(Slot.id == slot_id, Slot.lesson_id == lesson_id))
            .values(is_booked=False, is_available=True, lesson_id=None, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    async def _get_scheduled_lesson(self, lesson_id: UUID, principal: User) -> Lesson:
        lesson = await self.get_lesson(lesson_id)
        if lesson.student_id != principal.id and not principal.is_approver:
            raise AuthorizationError("This lesson belongs to another student")
        if lesson.status != LessonStatus.SCHEDULED:
            raise BookingError(f"Lesson is {lesson.status.value}")
        return lesson

    @staticmethod
    def _check_slot_open(slot: Slot, now: Optional[datetime] = None):
        if not slot.is_available or slot.is_booked:
            raise SlotUnavailableError("This slot is no longer available")
        if hours_until(slot.date, slot.hour, now) <= 0:
            raise SlotUnavailableError("This slot is in the past")

    @staticmethod
    def _duration_hours(duration_minutes: int) -> float:
        if duration_minutes not in (30, 60):
            raise ValidationError(f"Unsupported duration: {duration_minutes} minutes")
        return duration_minutes / 60

    @staticmethod
    def _require_tutor(user: User):
        if not user.is_approver:
            raise AuthorizationError("Only a tutor or admin can change availability")
