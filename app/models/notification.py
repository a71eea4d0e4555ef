from sqlalchemy import Column, ForeignKey, Enum, Uuid, JSON
from sqlalchemy.orm import relationship
import enum

from app.core.database import Base


class NotificationType(str, enum.Enum):
    PACKAGE_EXPIRED = "package_expired"
    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_RESOLVED = "approval_resolved"
    BOOKING_CONFIRMED = "booking_confirmed"


class NotificationDelivery(str, enum.Enum):
    INAPP = "inapp"


class NotificationStatus(str, enum.Enum):
    PENDING = "pending"


class Notification(Base):
    __tablename__ = "notifications"

    # Foreign key to user
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)

    # Notification details
    type = Column(Enum(NotificationType), nullable=False)
    payload = Column(JSON, nullable=False)  # JSON data containing notification content
    delivery = Column(Enum(NotificationDelivery), default=NotificationDelivery.INAPP, nullable=False)
    status = Column(Enum(NotificationStatus), default=NotificationStatus.PENDING, nullable=False)

    # Relationships
    user = relationship("User", back_populates="notifications")

    def __repr__(self):
        return f"<Notification(user_id={self.user_id}, type={self.type}, delivery={self.delivery}, status={self.status})>"
