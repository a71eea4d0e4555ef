from sqlalchemy.ext.asyncio import AsyncSession

from app.models.approval_request import ApprovalRequest, ApprovalRequestType
from app.models.user import User
from app.schemas.approval import (
    NewStudentBookingPayload, LateReschedulePayload, LateCancelPayload,
    PauseRequestPayload, PackageExtensionPayload
)
from app.services.booking_service import BookingService
from app.services.package_service import PackageService


async def confirm_new_student_booking(
    db: AsyncSession, request: ApprovalRequest, payload: NewStudentBookingPayload, principal: User
):
    """Book the slot the first-time student asked for"""
    return await BookingService(db).confirm_booking(
        student_id=request.student_id,
        slot_id=payload.slot_id,
        course_id=payload.course_id,
        title=payload.lesson_title,
        duration_minutes=payload.duration_minutes,
    )


async def apply_late_reschedule(
    db: AsyncSession, request: ApprovalRequest, payload: LateReschedulePayload, principal: User
):
    return await BookingService(db).move_lesson(payload.lesson_id, payload.new_slot_id)


async def apply_late_cancel(
    db: AsyncSession, request: ApprovalRequest, payload: LateCancelPayload, principal: User
):
    return await BookingService(db).cancel_lesson_now(payload.lesson_id, reason=request.reason)


async def apply_pause_request(
    db: AsyncSession, request: ApprovalRequest, payload: PauseRequestPayload, principal: User
):
    return await PackageService(db).apply_pause(payload.package_id, principal, reason=request.reason)


async def apply_package_extension(
    db: AsyncSession, request: ApprovalRequest, payload: PackageExtensionPayload, principal: User
):
    return await PackageService(db).apply_extension(payload.package_id, payload.extension_days, principal)


APPROVAL_ACTIONS = {
    ApprovalRequestType.NEW_STUDENT_BOOKING: confirm_new_student_booking,
    ApprovalRequestType.LATE_RESCHEDULE: apply_late_reschedule,
    ApprovalRequestType.LATE_CANCEL: apply_late_cancel,
    ApprovalRequestType.PAUSE_REQUEST: apply_pause_request,
    ApprovalRequestType.PACKAGE_EXTENSION: apply_package_extension,
}
