from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List, Literal
import datetime as dt
from uuid import UUID

from app.models.lesson import LessonStatus
from app.schemas.approval import ApprovalRequestResponse


class SlotResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tutor_id: UUID
    date: dt.date
    hour: int
    time: str
    is_available: bool
    is_booked: bool


class ToggleAvailabilityRequest(BaseModel):
    date: dt.date = Field(..., description="Calendar date")
    hour: int = Field(..., ge=0, le=23, description="Start hour")


class ScheduleTemplateRequest(BaseModel):
    start_date: dt.date = Field(..., description="First day the template applies to")
    end_date: dt.date = Field(..., description="Last day the template applies to")
    weekdays: List[int] = Field(..., description="0=Monday .. 6=Sunday")
    hours: List[int] = Field(..., description="Start hours to open on each weekday")


class BookLessonRequest(BaseModel):
    slot_id: UUID = Field(..., description="Slot to book")
    course_id: str = Field(..., description="Course ID")
    title: str = Field(..., description="Lesson title")
    duration_minutes: Literal[30, 60] = Field(60, description="Session length")


class RescheduleLessonRequest(BaseModel):
    new_slot_id: UUID = Field(..., description="Slot to move the lesson to")


class CancelLessonRequest(BaseModel):
    reason: Optional[str] = Field(None, description="Cancellation reason")


class LessonResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    student_id: UUID
    tutor_id: UUID
    course_id: str
    title: str
    package_id: Optional[UUID] = None
    slot_id: Optional[UUID] = None
    date: dt.date
    hour: int
    duration_minutes: int
    duration_hours: float
    status: LessonStatus
    completed_at: Optional[dt.datetime] = None
    cancelled_at: Optional[dt.datetime] = None


class BookingActionResponse(BaseModel):
    """Either the action went through or it is waiting for approval"""
    status: Literal["confirmed", "rescheduled", "cancelled", "completed", "approval_required"]
    lesson: Optional[LessonResponse] = None
    approval_request: Optional[ApprovalRequestResponse] = None
