from sqlalchemy import Column, String, Integer, ForeignKey, Text, Enum, Uuid
from sqlalchemy.orm import relationship
import enum

from app.core.database import Base, UTCDateTime


class PaymentType(str, enum.Enum):
    ONE_OFF = "one_off"
    PACKAGE = "package"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class Payment(Base):
    __tablename__ = "payments"

    # Foreign key to user
    student_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    course_id = Column(String, nullable=False)

    # Payment details
    amount_cents = Column(Integer, nullable=False)  # Amount in minor units
    currency = Column(String, nullable=False)
    type = Column(Enum(PaymentType), nullable=False)
    method = Column(String, default="stripe", nullable=False)
    status = Column(Enum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False)
    notes = Column(Text, nullable=True)

    # Stripe references; the checkout session id is the idempotency key
    stripe_session_id = Column(String, unique=True, nullable=False)
    stripe_payment_intent_id = Column(String, nullable=True)

    # Set together with the package and ledger credit; NULL means intake has
    # to finish crediting this payment
    credited_at = Column(UTCDateTime, nullable=True)

    # Relationships
    student = relationship("User", back_populates="payments")
    package = relationship("StudentPackage", back_populates="payment", uselist=False)

    def __repr__(self):
        return f"<Payment(student_id={self.student_id}, amount_cents={self.amount_cents}, type={self.type}, status={self.status})>"
