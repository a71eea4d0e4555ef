from typing import Any, Dict, List
from uuid import UUID
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.approval_request import ApprovalRequest
from app.models.lesson import Lesson
from app.models.notification import Notification, NotificationType, NotificationDelivery, NotificationStatus
from app.models.package import StudentPackage
from app.models.user import User, APPROVER_ROLES

logger = logging.getLogger(__name__)


class NotificationService:
    """Emits in-app notifications; delivery is handled elsewhere.

    Rows are added to the caller's session and flushed. Committing is left
    to the caller so a notification never outlives a rolled-back change.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def notify_package_expired(self, package: StudentPackage) -> Notification:
        """Tell the student one of their packages has expired"""
        name = package.course_title or "Unnamed package"
        return await self._emit(
            package.student_id,
            NotificationType.PACKAGE_EXPIRED,
            {
                "package_id": str(package.id),
                "content": (
                    f'Your package "{name}" has expired. '
                    "Please contact your tutor to purchase a new package."
                ),
                "action_link": "/s-portal/packages",
            },
        )

    async def notify_approval_requested(self, request: ApprovalRequest) -> List[Notification]:
        """Tell every tutor/admin there is a request waiting for them"""
        result = await self.db.execute(select(User.id).where(User.role.in_(APPROVER_ROLES)))
        approver_ids = result.scalars().all()

        notifications = []
        for approver_id in approver_ids:
            notifications.append(await self._emit(
                approver_id,
                NotificationType.APPROVAL_REQUESTED,
                {
                    "approval_request_id": str(request.id),
                    "request_type": request.type.value,
                    "student_name": request.student_name,
                    "content": f"{request.student_name} sent a {request.type.value.replace('_', ' ')} request.",
                    "action_link": "/t-portal/approvals",
                },
            ))
        return notifications

    async def notify_approval_resolved(self, request: ApprovalRequest) -> Notification:
        """Tell the student how their request was resolved"""
        return await self._emit(
            request.student_id,
            NotificationType.APPROVAL_RESOLVED,
            {
                "approval_request_id": str(request.id),
                "request_type": request.type.value,
                "status": request.status.value,
                "content": f"Your {request.type.value.replace('_', ' ')} request was {request.status.value}.",
            },
        )

    async def notify_booking_confirmed(self, lesson: Lesson) -> Notification:
        return await self._emit(
            lesson.student_id,
            NotificationType.BOOKING_CONFIRMED,
            {
                "lesson_id": str(lesson.id),
                "title": lesson.title,
                "date": lesson.date.isoformat(),
                "start_time": lesson.start_time,
            },
        )

    async def _emit(self, user_id: UUID, notification_type: NotificationType, payload: Dict[str, Any]) -> Notification:
        notification = Notification(
            user_id=user_id,
            type=notification_type,
            payload=payload,
            delivery=NotificationDelivery.INAPP,
            status=NotificationStatus.PENDING,
        )
        self.db.add(notification)
        await self.db.flush()
        logger.info(f"Queued {notification_type.value} notification for user {user_id}")
        return notification
