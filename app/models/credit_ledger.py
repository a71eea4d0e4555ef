from sqlalchemy import Column, Float, Integer, ForeignKey, Enum, Uuid, CheckConstraint
from sqlalchemy.orm import relationship
import enum

from app.core.database import Base


class CreditReason(str, enum.Enum):
    PURCHASE = "purchase"
    BOOKING = "booking"
    RELEASE = "release"
    COMPLETION = "completion"
    FORFEIT = "forfeit"
    RESTORE = "restore"


class CreditLedger(Base):
    """Per-student pool of purchased hours split into three buckets"""

    __tablename__ = "credit_ledger"
    __table_args__ = (
        CheckConstraint("uncommitted_hours >= 0", name="ck_ledger_uncommitted_non_negative"),
        CheckConstraint("committed_hours >= 0", name="ck_ledger_committed_non_negative"),
        CheckConstraint("completed_hours >= 0", name="ck_ledger_completed_non_negative"),
    )

    # One entry per student, shared by all their packages
    student_id = Column(Uuid, ForeignKey("users.id"), unique=True, nullable=False)

    total_hours = Column(Float, default=0, nullable=False)
    uncommitted_hours = Column(Float, default=0, nullable=False)
    committed_hours = Column(Float, default=0, nullable=False)
    completed_hours = Column(Float, default=0, nullable=False)

    # Bumped on every write; updates are conditional on the version read
    version = Column(Integer, default=0, nullable=False)

    # Relationships
    student = relationship("User", back_populates="credit_ledger")

    def __repr__(self):
        return (
            f"<CreditLedger(student_id={self.student_id}, total={self.total_hours}, "
            f"uncommitted={self.uncommitted_hours}, committed={self.committed_hours}, "
            f"completed={self.completed_hours})>"
        )


class CreditTransaction(Base):
    """Audit trail of ledger movements"""

    __tablename__ = "credit_transactions"

    student_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    reason = Column(Enum(CreditReason), nullable=False)
    hours = Column(Float, nullable=False)

    # Optional links to what caused the movement
    lesson_id = Column(Uuid, ForeignKey("lessons.id"), nullable=True)
    payment_id = Column(Uuid, ForeignKey("payments.id"), nullable=True)

    # Ledger total after this movement
    total_after = Column(Float, nullable=False)

    def __repr__(self):
        return f"<CreditTransaction(student_id={self.student_id}, reason={self.reason}, hours={self.hours})>"
