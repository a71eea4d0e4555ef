from sqlalchemy import Column, String, Enum
from sqlalchemy.orm import relationship
import enum

from app.core.database import Base


class UserRole(str, enum.Enum):
    STUDENT = "student"
    TUTOR = "tutor"
    ADMIN = "admin"


# Roles allowed to resolve approval requests and pause/resume packages
APPROVER_ROLES = (UserRole.TUTOR, UserRole.ADMIN)


class User(Base):
    __tablename__ = "users"

    # Core user fields
    role = Column(Enum(UserRole), default=UserRole.STUDENT, nullable=False)
    name = Column(String, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    timezone = Column(String, default="UTC", nullable=False)

    # Relationships
    payments = relationship("Payment", back_populates="student")
    packages = relationship("StudentPackage", back_populates="student")
    credit_ledger = relationship("CreditLedger", back_populates="student", uselist=False)
    notifications = relationship("Notification", back_populates="user")

    @property
    def is_approver(self) -> bool:
        return self.role in APPROVER_ROLES

    def __repr__(self):
        return f"<User(id={self.id}, email={self.email}, role={self.role})>"
