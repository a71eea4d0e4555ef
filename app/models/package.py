from sqlalchemy import Column, String, Integer, Float, Boolean, ForeignKey, Text, Enum, Uuid, CheckConstraint
from sqlalchemy.orm import relationship
import enum

from app.core.database import Base, UTCDateTime
from app.core.pricing import PackageType


class PackageStatus(str, enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    EXPIRED = "expired"
    COMPLETED = "completed"


class StudentPackage(Base):
    __tablename__ = "student_packages"
    __table_args__ = (
        CheckConstraint("remaining_hours >= 0", name="ck_package_remaining_non_negative"),
        CheckConstraint("remaining_hours <= total_hours", name="ck_package_remaining_le_total"),
    )

    # Ownership
    student_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    course_id = Column(String, nullable=False)
    course_title = Column(String, nullable=True)
    payment_id = Column(Uuid, ForeignKey("payments.id"), unique=True, nullable=True)

    # Hours and price
    package_type = Column(Enum(PackageType), nullable=False)
    total_hours = Column(Float, nullable=False)
    remaining_hours = Column(Float, nullable=False)
    price_cents = Column(Integer, nullable=False)
    currency = Column(String, nullable=False)

    # Validity
    purchase_date = Column(UTCDateTime, nullable=False)
    expires_at = Column(UTCDateTime, nullable=False, index=True)

    # Pause state
    is_paused = Column(Boolean, default=False, nullable=False)
    paused_at = Column(UTCDateTime, nullable=True)
    pause_reason = Column(Text, nullable=True)
    total_days_paused = Column(Integer, default=0, nullable=False)
    pause_count = Column(Integer, default=0, nullable=False)

    # Unused hours taken back out of the credit ledger when the package expired
    forfeited_hours = Column(Float, default=0, nullable=False)

    # Bumped by every booking paid from this package
    reservation_version = Column(Integer, default=0, nullable=False)

    status = Column(Enum(PackageStatus), default=PackageStatus.ACTIVE, nullable=False, index=True)

    # Relationships
    student = relationship("User", back_populates="packages")
    payment = relationship("Payment", back_populates="package")

    def __repr__(self):
        return f"<StudentPackage(student_id={self.student_id}, remaining_hours={self.remaining_hours}/{self.total_hours}, status={self.status})>"
