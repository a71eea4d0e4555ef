from app.core.database import Base
from .user import User, UserRole, APPROVER_ROLES
from .payment import Payment, PaymentType, PaymentStatus
from .package import StudentPackage, PackageStatus
from .credit_ledger import CreditLedger, CreditTransaction, CreditReason
from .availability import Slot
from .lesson import Lesson, LessonStatus
from .approval_request import ApprovalRequest, ApprovalRequestType, ApprovalStatus
from .notification import Notification, NotificationType, NotificationDelivery, NotificationStatus

__all__ = [
    "Base",

    # Users
    "User",
    "UserRole",
    "APPROVER_ROLES",

    # Payments and credit
    "Payment",
    "PaymentType",
    "PaymentStatus",
    "StudentPackage",
    "PackageStatus",
    "CreditLedger",
    "CreditTransaction",
    "CreditReason",

    # Calendar and lessons
    "Slot",
    "Lesson",
    "LessonStatus",

    # Approvals
    "ApprovalRequest",
    "ApprovalRequestType",
    "ApprovalStatus",

    # Notifications
    "Notification",
    "NotificationType",
    "NotificationDelivery",
    "NotificationStatus",
]
