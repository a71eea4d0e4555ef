from sqlalchemy import Column, String, Date, Integer, Float, ForeignKey, Text, Enum, Uuid
import enum

from app.core.database import Base, UTCDateTime


class LessonStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class Lesson(Base):
    __tablename__ = "lessons"

    # Participants
    student_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    tutor_id = Column(Uuid, ForeignKey("users.id"), nullable=False)

    # What is being taught and which package pays for it
    course_id = Column(String, nullable=False)
    title = Column(String, nullable=False)
    package_id = Column(Uuid, ForeignKey("student_packages.id"), nullable=True, index=True)

    # When
    slot_id = Column(Uuid, ForeignKey("slots.id"), nullable=True)
    date = Column(Date, nullable=False)
    hour = Column(Integer, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    duration_hours = Column(Float, nullable=False)

    status = Column(Enum(LessonStatus), default=LessonStatus.SCHEDULED, nullable=False)

    # Set once; guards against completing the same session twice
    completed_at = Column(UTCDateTime, nullable=True)

    cancelled_at = Column(UTCDateTime, nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    @property
    def start_time(self) -> str:
        return f"{self.hour:02d}:00"

    def __repr__(self):
        return f"<Lesson(student_id={self.student_id}, date={self.date}, start_time={self.start_time}, status={self.status})>"
