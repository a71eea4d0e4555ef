from typing import List, Optional
from uuid import UUID
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import get_current_user, require_approver
from app.core.database import get_db
from app.models.lesson import LessonStatus
from app.models.user import User
from app.schemas.approval import ApprovalRequestResponse
from app.schemas.booking import (
    BookLessonRequest, RescheduleLessonRequest, CancelLessonRequest,
    LessonResponse, BookingActionResponse
)
from app.services.booking_service import BookingService, BookingOutcome

router = APIRouter()


def _to_response(outcome: BookingOutcome) -> BookingActionResponse:
    return BookingActionResponse(
        status=outcome.status,
        lesson=LessonResponse.model_validate(outcome.lesson) if outcome.lesson else None,
        approval_request=(
            ApprovalRequestResponse.model_validate(outcome.approval_request)
            if outcome.approval_request else None
        ),
    )


@router.get("", response_model=List[LessonResponse])
async def list_my_lessons(
    status: Optional[LessonStatus] = Query(None, description="Filter by status"),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """The signed-in student's lessons"""
    return await BookingService(db).list_lessons(current_user.id, status)


@router.post("/book", response_model=BookingActionResponse)
async def book_lesson(
    request: BookLessonRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Book a slot; first-time students wait for the tutor's approval"""
    outcome = await BookingService(db).book_lesson(
        current_user,
        request.slot_id,
        request.course_id,
        request.title,
        request.duration_minutes,
    )
    return _to_response(outcome)


@router.post("/{lesson_id}/reschedule", response_model=BookingActionResponse)
async def reschedule_lesson(
    lesson_id: UUID,
    request: RescheduleLessonRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Move a lesson to another slot"""
    outcome = await BookingService(db).reschedule_lesson(current_user, lesson_id, request.new_slot_id)
    return _to_response(outcome)


@router.post("/{lesson_id}/cancel", response_model=BookingActionResponse)
async def cancel_lesson(
    lesson_id: UUID,
    request: CancelLessonRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Cancel a lesson and return its hours"""
    outcome = await BookingService(db).cancel_lesson(current_user, lesson_id, request.reason)
    return _to_response(outcome)


@router.post("/{lesson_id}/complete", response_model=BookingActionResponse)
async def complete_lesson(
    lesson_id: UUID,
    current_user: User = Depends(require_approver),
    db: AsyncSession = Depends(get_db),
):
    """Mark a lesson as attended"""
    lesson = await BookingService(db).complete_lesson(current_user, lesson_id)
    return _to_response(BookingOutcome(status="completed", lesson=lesson))
