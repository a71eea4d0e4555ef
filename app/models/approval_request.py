from sqlalchemy import Column, String, ForeignKey, Text, Enum, Uuid, JSON
import enum

from app.core.database import Base, UTCDateTime


class ApprovalRequestType(str, enum.Enum):
    NEW_STUDENT_BOOKING = "new_student_booking"
    LATE_RESCHEDULE = "late_reschedule"
    LATE_CANCEL = "late_cancel"
    PACKAGE_EXTENSION = "package_extension"
    PAUSE_REQUEST = "pause_request"


class ApprovalStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


class ApprovalRequest(Base):
    __tablename__ = "approval_requests"

    type = Column(Enum(ApprovalRequestType), nullable=False)
    status = Column(Enum(ApprovalStatus), default=ApprovalStatus.PENDING, nullable=False, index=True)

    # Student, denormalized for display
    student_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    student_name = Column(String, nullable=False)
    student_email = Column(String, nullable=False)

    # Resource the request is about, e.g. "lesson:<uuid>" or "slot:<uuid>"
    target_key = Column(String, nullable=False, index=True)

    # Type-specific fields, validated by app.schemas.approval
    payload = Column(JSON, nullable=False)
    reason = Column(Text, nullable=True)

    # Resolution
    resolved_at = Column(UTCDateTime, nullable=True)
    resolved_by = Column(Uuid, ForeignKey("users.id"), nullable=True)

    def __repr__(self):
        return f"<ApprovalRequest(type={self.type}, student_id={self.student_id}, status={self.status})>"
