from sqlalchemy import Column, Date, Integer, Boolean, ForeignKey, Uuid, Index, CheckConstraint

from app.core.database import Base


class Slot(Base):
    """One bookable hour in a tutor's calendar"""

    __tablename__ = "slots"
    __table_args__ = (
        CheckConstraint("hour >= 0 AND hour <= 23", name="ck_slot_hour_range"),
    )

    # Foreign key to tutor
    tutor_id = Column(Uuid, ForeignKey("users.id"), nullable=False)

    # Time information (tutor's calendar, hour granularity)
    date = Column(Date, nullable=False)
    hour = Column(Integer, nullable=False)

    # State
    is_available = Column(Boolean, default=True, nullable=False)
    is_booked = Column(Boolean, default=False, nullable=False)
    lesson_id = Column(Uuid, nullable=True)

    @property
    def time(self) -> str:
        return f"{self.hour:02d}:00"

    def __repr__(self):
        return f"<Slot(tutor_id={self.tutor_id}, date={self.date}, time={self.time}, is_available={self.is_available}, is_booked={self.is_booked})>"


# Create unique index to prevent duplicate slots for the same hour
Index('idx_slots_tutor_date_hour_unique', Slot.tutor_id, Slot.date, Slot.hour, unique=True)
