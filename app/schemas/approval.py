from pydantic import BaseModel, Field, TypeAdapter, ConfigDict
from typing import Annotated, Literal, List, Optional, Union
from datetime import date, datetime
from uuid import UUID

from app.models.approval_request import ApprovalRequestType, ApprovalStatus


class NewStudentBookingPayload(BaseModel):
    type: Literal["new_student_booking"] = "new_student_booking"
    slot_id: UUID
    tutor_id: UUID
    course_id: str
    lesson_title: str
    lesson_date: date
    lesson_time: str
    duration_minutes: int


class LateReschedulePayload(BaseModel):
    type: Literal["late_reschedule"] = "late_reschedule"
    lesson_id: UUID
    lesson_title: str
    lesson_date: date
    lesson_time: str
    new_slot_id: UUID
    new_date: date
    new_time: str
    hours_until_lesson: float


class LateCancelPayload(BaseModel):
    type: Literal["late_cancel"] = "late_cancel"
    lesson_id: UUID
    lesson_title: str
    lesson_date: date
    lesson_time: str
    hours_until_lesson: float


class PauseRequestPayload(BaseModel):
    type: Literal["pause_request"] = "pause_request"
    package_id: UUID


class PackageExtensionPayload(BaseModel):
    type: Literal["package_extension"] = "package_extension"
    package_id: UUID
    extension_days: int = Field(..., gt=0)


ApprovalPayload = Annotated[
    Union[
        NewStudentBookingPayload,
        LateReschedulePayload,
        LateCancelPayload,
        PauseRequestPayload,
        PackageExtensionPayload,
    ],
    Field(discriminator="type"),
]

approval_payload_adapter = TypeAdapter(ApprovalPayload)


def parse_payload(raw: dict) -> ApprovalPayload:
    """Rebuild the typed payload stored on an approval request"""
    return approval_payload_adapter.validate_python(raw)


class ResolveApprovalRequest(BaseModel):
    decision: Literal["approved", "denied"] = Field(..., description="Resolution")


class ApprovalRequestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    type: ApprovalRequestType
    status: ApprovalStatus
    student_id: UUID
    student_name: str
    student_email: str
    target_key: str
    payload: dict
    reason: Optional[str] = None
    created_at: datetime
    resolved_at: Optional[datetime] = None


class ApprovalListResponse(BaseModel):
    requests: List[ApprovalRequestResponse]
